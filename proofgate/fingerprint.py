"""Deterministic identities for findings and routes.

Fingerprints are the only join key between two independent scans, so every
function here is pure: no timestamps, salts or unordered iteration.
"""

from __future__ import annotations

import hashlib


def normalize_path(path: str) -> str:
    """Return an OS-independent, forward-slash relative path."""
    normalized = path.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def fingerprint(
    rule_id: str,
    file: str,
    symbol: str | None = None,
    start_line: int | None = None,
    route: str | None = None,
) -> str:
    """Hash the stable subject of a finding into 16 hex chars."""
    data = "::".join(
        [
            rule_id,
            normalize_path(file),
            symbol or "",
            route or "",
            "" if start_line is None else str(start_line),
        ]
    )
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]


def finding_id(
    rule_id: str,
    file: str,
    symbol: str | None = None,
    start_line: int | None = None,
) -> str:
    digest = fingerprint(rule_id, file, symbol=symbol, start_line=start_line)
    return f"{rule_id.lower()}-{digest[:8]}"


def route_id(path: str, method: str, file: str) -> str:
    """Stable 12-char route identity derived from method, URL path and file."""
    normalized = f"{method}:{path}:{normalize_path(file)}".lower()
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:12]


def hash_content(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
