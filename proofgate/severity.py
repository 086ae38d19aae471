"""Severity ordering helpers."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Literal

Severity = Literal["critical", "high", "medium", "low", "info"]

SEVERITY_ORDER: dict[str, int] = {
    "critical": 4,
    "high": 3,
    "medium": 2,
    "low": 1,
    "info": 0,
}

SEVERITY_LEVELS: tuple[str, ...] = ("info", "low", "medium", "high", "critical")


def severity_rank(severity: str) -> int:
    """Return the numeric rank of a severity name."""
    try:
        return SEVERITY_ORDER[severity]
    except KeyError:
        choices = ", ".join(SEVERITY_LEVELS)
        raise ValueError(f"Unknown severity '{severity}'. Expected one of: {choices}") from None


def is_severity(value: object) -> bool:
    return isinstance(value, str) and value in SEVERITY_ORDER


def compare_severity(a: str, b: str) -> int:
    """Positive when ``a`` is more severe than ``b``."""
    return severity_rank(a) - severity_rank(b)


def severity_meets_threshold(severity: str, threshold: str) -> bool:
    return severity_rank(severity) >= severity_rank(threshold)


def lower_severity(severity: str) -> str:
    index = severity_rank(severity)
    return SEVERITY_LEVELS[index - 1] if index > 0 else severity


def higher_severity(severity: str) -> str:
    index = severity_rank(severity)
    return SEVERITY_LEVELS[index + 1] if index < len(SEVERITY_LEVELS) - 1 else severity


def max_severity(severities: Iterable[str]) -> str | None:
    """Return the most severe item, or None for an empty iterable."""
    best: str | None = None
    for severity in severities:
        if best is None or severity_rank(severity) > severity_rank(best):
            best = severity
    return best
