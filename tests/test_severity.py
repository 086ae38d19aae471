from __future__ import annotations

import pytest

from proofgate.severity import (
    compare_severity,
    higher_severity,
    is_severity,
    lower_severity,
    max_severity,
    severity_meets_threshold,
    severity_rank,
)


def test_ordering_runs_from_info_to_critical() -> None:
    assert severity_rank("info") < severity_rank("low") < severity_rank("medium")
    assert severity_rank("medium") < severity_rank("high") < severity_rank("critical")
    assert compare_severity("high", "medium") > 0
    assert compare_severity("low", "low") == 0


def test_threshold_is_inclusive() -> None:
    assert severity_meets_threshold("high", "high")
    assert severity_meets_threshold("critical", "high")
    assert not severity_meets_threshold("medium", "high")


def test_lower_and_higher_clamp_at_the_ends() -> None:
    assert lower_severity("high") == "medium"
    assert lower_severity("info") == "info"
    assert higher_severity("medium") == "high"
    assert higher_severity("critical") == "critical"


def test_max_severity() -> None:
    assert max_severity(["low", "critical", "medium"]) == "critical"
    assert max_severity([]) is None


def test_unknown_severity_is_rejected() -> None:
    assert not is_severity("severe")
    assert not is_severity(3)
    with pytest.raises(ValueError, match="Unknown severity"):
        severity_rank("severe")
