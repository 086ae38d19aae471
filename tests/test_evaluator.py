"""Policy evaluation scenarios and properties."""

from __future__ import annotations

import json
import random
from datetime import UTC, datetime

from proofgate.config import PolicyConfig, get_profile, merge_configs
from proofgate.evaluator import apply_overrides, evaluate, merge_status
from proofgate.severity import SEVERITY_LEVELS
from proofgate.waivers import Waiver, WaiverMatch
from tests.helpers_artifacts import make_artifact, make_finding

NOW = datetime(2024, 6, 1, tzinfo=UTC)


def test_high_confident_finding_fails_the_gate() -> None:
    report = evaluate(make_artifact([make_finding("F1")]), config=_high_policy())

    assert report.status == "fail"
    assert report.exit_code == 1
    fail_reasons = [reason for reason in report.reasons if reason.status == "fail"]
    assert len(fail_reasons) == 1
    assert fail_reasons[0].code == "severity_threshold"
    assert fail_reasons[0].fingerprints == ("F1",)


def test_downgrade_override_lets_the_gate_pass() -> None:
    config = _high_policy(
        overrides=[{"rule_id": "VC-AUTH-*", "action": "downgrade", "severity": "low"}]
    )
    report = evaluate(make_artifact([make_finding("F1")]), config=config)

    assert report.active_findings[0].effective_severity == "low"
    assert report.status == "pass"
    assert report.exit_code == 0
    assert [reason.code for reason in report.reasons] == ["no_issues"]


def test_low_confidence_finding_does_not_fail() -> None:
    report = evaluate(make_artifact([make_finding("F1", confidence=0.3)]), config=_high_policy())
    assert report.status == "pass"


def test_critical_uses_its_own_confidence_floor() -> None:
    finding = make_finding("F1", severity="critical", confidence=0.55)
    report = evaluate(make_artifact([finding]), config=get_profile("startup"))
    assert report.status == "fail"


def test_warn_reason_is_only_added_while_passing() -> None:
    findings = [make_finding("F1"), make_finding("F2", severity="medium")]
    report = evaluate(make_artifact(findings), config=get_profile("strict"))
    assert report.status == "fail"
    assert [reason.code for reason in report.reasons] == ["severity_threshold"]

    report = evaluate(
        make_artifact([make_finding("F2", severity="medium")]), config=get_profile("strict")
    )
    assert report.status == "warn"
    assert report.exit_code == 0


def test_override_actions() -> None:
    config = _high_policy(
        overrides=[
            {"category": "validation", "action": "ignore"},
            {"rule_id": "VC-RATE-001", "action": "fail"},
            {"rule_id": "VC-AUTH-001", "path_pattern": "app/internal/**", "action": "warn-only"},
        ]
    )
    ignored = make_finding("F1", rule_id="VC-VAL-001", category="validation")
    forced = make_finding("F2", rule_id="VC-RATE-001", severity="info", category="abuse")
    internal = make_finding("F3", file="app/internal/route.ts")

    report = evaluate(make_artifact([ignored, forced, internal]), config=config)
    codes = [reason.code for reason in report.reasons]
    assert codes == ["override_fail"]
    assert report.summary.ignored == 1
    assert report.summary.total == 2
    payload = report.to_dict()
    assert [item["fingerprint"] for item in payload["activeFindings"]] == ["F2", "F3"]


def test_upgrade_without_severity_moves_one_step() -> None:
    config = _high_policy(overrides=[{"rule_id": "VC-AUTH-001", "action": "upgrade"}])
    processed = apply_overrides(make_finding("F1", severity="medium"), config.overrides)
    assert processed.effective_severity == "high"


def test_count_thresholds_fail() -> None:
    config = merge_configs(get_profile("startup"), {"thresholds": {"max_findings": 1}})
    findings = [make_finding("F1", severity="low"), make_finding("F2", severity="low")]
    report = evaluate(make_artifact(findings), config=config)
    assert report.status == "fail"
    assert report.reasons[0].code == "count_threshold"
    assert report.reasons[0].details == {"count": 2, "max": 1}


def test_waived_findings_are_excluded_from_thresholds() -> None:
    waiver = Waiver(
        id="w1",
        match=WaiverMatch(fingerprint="F1"),
        reason="accepted",
        created_by="sec",
        created_at="2024-01-01T00:00:00Z",
    )
    report = evaluate(
        make_artifact([make_finding("F1")]), config=_high_policy(), waivers=[waiver], now=NOW
    )
    assert report.status == "pass"
    assert report.summary.waived == 1
    assert report.to_dict()["waivedFindings"][0]["waiver"]["id"] == "w1"


def test_waivers_apply_to_both_sides_of_the_baseline_diff() -> None:
    artifact = make_artifact([make_finding("F1"), make_finding("F2")])
    waiver = Waiver(
        id="w1",
        match=WaiverMatch(fingerprint="F1"),
        reason="accepted",
        created_by="sec",
        created_at="2024-01-01T00:00:00Z",
    )

    report = evaluate(artifact, artifact, get_profile("strict"), waivers=[waiver], now=NOW)

    assert report.regression is not None
    assert report.regression.new_findings == ()
    assert report.regression.resolved_findings == ()
    assert report.regression.persisting_count == 1
    assert report.regression.net_change == 0

    config = merge_configs(get_profile("startup"), {"regression": {"fail_on_net_increase": True}})
    current = make_artifact(
        [make_finding("F1"), make_finding("F2"), make_finding("F3", severity="low")]
    )
    report = evaluate(current, artifact, config, waivers=[waiver], now=NOW)

    assert report.regression is not None
    assert report.regression.net_change == 1
    assert report.status == "fail"
    assert "net_increase" in [reason.code for reason in report.reasons]


def test_severity_regression_against_baseline_fails_when_configured() -> None:
    baseline = make_artifact([make_finding("F1", severity="medium")])
    current = make_artifact([make_finding("F1", severity="high")])
    config = merge_configs(
        get_profile("startup"), {"regression": {"fail_on_severity_regression": True}}
    )

    report = evaluate(current, baseline, config)

    assert report.regression is not None
    regression = report.regression.severity_regressions
    assert len(regression) == 1
    assert (regression[0].fingerprint, regression[0].previous_severity) == ("F1", "medium")
    assert regression[0].current_severity == "high"
    assert report.status == "fail"
    assert "severity_regression" in [reason.code for reason in report.reasons]


def test_new_high_finding_against_baseline_fails_by_default() -> None:
    baseline = make_artifact([])
    current = make_artifact([make_finding("F9", severity="high", confidence=0.2)])
    report = evaluate(current, baseline, get_profile("startup"))
    assert report.status == "fail"
    reason = next(item for item in report.reasons if item.code == "new_high_critical")
    assert reason.fingerprints == ("F9",)


def test_new_low_finding_only_warns() -> None:
    report = evaluate(
        make_artifact(
            [make_finding("F9", severity="low", rule_id="VC-CFG-001", category="config")]
        ),
        make_artifact([]),
        get_profile("startup"),
    )
    assert report.status == "warn"
    assert [reason.code for reason in report.reasons] == ["no_issues", "new_findings"]


def test_report_json_is_byte_identical_across_runs_and_input_orders() -> None:
    findings = [make_finding(f"F{index}", line=index + 1) for index in range(8)]
    shuffled = list(findings)
    random.Random(3).shuffle(shuffled)
    first = evaluate(make_artifact(findings), make_artifact(findings[:4]), now=NOW)
    second = evaluate(make_artifact(shuffled), make_artifact(findings[:4][::-1]), now=NOW)
    assert json.dumps(first.to_dict(), sort_keys=True) == json.dumps(
        second.to_dict(), sort_keys=True
    )


def test_raising_fail_threshold_never_adds_failures() -> None:
    rng = random.Random(42)
    for _ in range(60):
        findings = [
            make_finding(
                f"F{index}",
                severity=rng.choice(SEVERITY_LEVELS),
                confidence=round(rng.random(), 2),
            )
            for index in range(rng.randint(1, 10))
        ]
        previous_failing: set[str] | None = None
        for level in SEVERITY_LEVELS:
            mapping = {"thresholds": {"fail_on_severity": level}}
            config = merge_configs(get_profile("startup"), mapping)
            report = evaluate(make_artifact(findings), config=config)
            failing = {
                fp
                for reason in report.reasons
                if reason.status == "fail"
                for fp in reason.fingerprints
            }
            if previous_failing is not None:
                assert failing <= previous_failing
            previous_failing = failing


def test_merge_status_prefers_the_worse_outcome() -> None:
    assert merge_status("pass", "warn") == "warn"
    assert merge_status("fail", "warn") == "fail"
    assert merge_status("pass", "pass") == "pass"


def _high_policy(overrides: list[dict] | None = None) -> PolicyConfig:
    mapping: dict = {"thresholds": {"fail_on_severity": "high", "min_confidence_for_fail": 0.7}}
    if overrides is not None:
        mapping["overrides"] = overrides
    return merge_configs(get_profile("startup"), mapping)
