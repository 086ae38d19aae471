"""Policy evaluator: waivers, overrides, thresholds and regression policy."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from proofgate.artifact import sort_findings
from proofgate.config import Override, PolicyConfig, RegressionPolicy, Thresholds, get_profile
from proofgate.models import CATEGORIES, Finding, ScanArtifact
from proofgate.regression import (
    RegressionSummary,
    compute_regression,
    has_net_increase,
    has_new_high_critical,
    has_protection_regressions,
    has_semantic_regressions,
    has_severity_regressions,
    new_high_critical_ids,
)
from proofgate.severity import (
    SEVERITY_LEVELS,
    higher_severity,
    lower_severity,
    severity_meets_threshold,
)
from proofgate.waivers import (
    WaivedFinding,
    Waiver,
    apply_waivers,
    match_path_pattern,
    match_rule_id,
)

POLICY_REPORT_VERSION = "0.1"
STATUS_ORDER = {"pass": 0, "warn": 1, "fail": 2}


@dataclass(frozen=True, slots=True)
class PolicyReason:
    status: str
    code: str
    message: str
    finding_ids: tuple[str, ...] = ()
    fingerprints: tuple[str, ...] = ()
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status,
            "code": self.code,
            "message": self.message,
        }
        if self.finding_ids:
            payload["findingIds"] = list(self.finding_ids)
        if self.fingerprints:
            payload["fingerprints"] = list(self.fingerprints)
        if self.details is not None:
            payload["details"] = self.details
        return payload


@dataclass(frozen=True, slots=True)
class SummaryCounts:
    total: int
    by_severity: dict[str, int]
    by_category: dict[str, int]
    waived: int
    ignored: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "bySeverity": dict(self.by_severity),
            "byCategory": dict(self.by_category),
            "waived": self.waived,
            "ignored": self.ignored,
        }


@dataclass(frozen=True, slots=True)
class ProcessedFinding:
    """An active finding with its override applied."""

    finding: Finding
    effective_severity: str
    ignored: bool = False
    override: Override | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.finding.id,
            "fingerprint": self.finding.fingerprint,
            "ruleId": self.finding.rule_id,
            "severity": self.effective_severity,
            "confidence": self.finding.confidence,
            "title": self.finding.title,
            "category": self.finding.category,
            "evidencePaths": self.finding.evidence_paths,
        }
        if self.effective_severity != self.finding.severity:
            payload["originalSeverity"] = self.finding.severity
        return payload


@dataclass(frozen=True, slots=True)
class PolicyReport:
    status: str
    exit_code: int
    profile_name: str | None
    thresholds: Thresholds
    overrides: tuple[Override, ...]
    regression_policy: RegressionPolicy
    summary: SummaryCounts
    reasons: tuple[PolicyReason, ...]
    active_findings: tuple[ProcessedFinding, ...]
    waived_findings: tuple[WaivedFinding, ...]
    regression: RegressionSummary | None = None
    artifact_info: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "policyVersion": POLICY_REPORT_VERSION,
            "profileName": self.profile_name,
            "status": self.status,
            "thresholds": self.thresholds.to_dict(),
            "overrides": [item.to_dict() for item in self.overrides],
            "regressionPolicy": self.regression_policy.to_dict(),
            "summary": self.summary.to_dict(),
            "reasons": [reason.to_dict() for reason in self.reasons],
            "waivedFindings": [item.to_dict() for item in self.waived_findings],
            "activeFindings": [item.to_dict() for item in self.active_findings if not item.ignored],
            "exitCode": self.exit_code,
            "artifact": dict(self.artifact_info),
        }
        if self.regression is not None:
            payload["regression"] = self.regression.to_dict()
        return payload


def merge_status(a: str, b: str) -> str:
    """Combine two statuses; fail dominates warn dominates pass."""
    return a if STATUS_ORDER[a] >= STATUS_ORDER[b] else b


def evaluate(
    artifact: ScanArtifact,
    baseline: ScanArtifact | None = None,
    config: PolicyConfig | None = None,
    *,
    waivers: Sequence[Waiver] = (),
    now: datetime | None = None,
    artifact_path: str | None = None,
) -> PolicyReport:
    """Evaluate an artifact against a policy and return the final report."""
    policy = config or get_profile("startup")
    findings = sort_findings(artifact.findings)

    waived = apply_waivers(findings, waivers, now=now)
    processed = [apply_overrides(finding, policy.overrides) for finding in waived.active_findings]
    summary = compute_summary_counts(processed, len(waived.waived_findings))

    status, reasons = evaluate_thresholds(processed, policy.thresholds)

    regression: RegressionSummary | None = None
    if baseline is not None:
        ordered_baseline = replace(baseline, findings=tuple(sort_findings(baseline.findings)))
        baseline_waived = apply_waivers(ordered_baseline.findings, waivers, now=now)
        regression = compute_regression(
            artifact,
            ordered_baseline,
            current_findings=waived.active_findings,
            baseline_findings=baseline_waived.active_findings,
        )
        regression_status, regression_reasons = evaluate_regression(regression, policy.regression)
        status = merge_status(status, regression_status)
        reasons.extend(regression_reasons)

    artifact_info: dict[str, Any] = {"generatedAt": artifact.generated_at}
    if artifact_path is not None:
        artifact_info["path"] = artifact_path
    if artifact.repo_name is not None:
        artifact_info["repoName"] = artifact.repo_name

    return PolicyReport(
        status=status,
        exit_code=1 if status == "fail" else 0,
        profile_name=policy.profile,
        thresholds=policy.thresholds,
        overrides=policy.overrides,
        regression_policy=policy.regression,
        summary=summary,
        reasons=tuple(reasons),
        active_findings=tuple(processed),
        waived_findings=tuple(waived.waived_findings),
        regression=regression,
        artifact_info=artifact_info,
    )


def apply_overrides(finding: Finding, overrides: Sequence[Override]) -> ProcessedFinding:
    """Apply the first matching override, if any."""
    for override in overrides:
        if not override_matches(override, finding):
            continue
        if override.action == "ignore":
            return ProcessedFinding(finding, finding.severity, ignored=True, override=override)
        if override.action == "downgrade":
            severity = override.severity or lower_severity(finding.severity)
            return ProcessedFinding(finding, severity, override=override)
        if override.action == "upgrade":
            severity = override.severity or higher_severity(finding.severity)
            return ProcessedFinding(finding, severity, override=override)
        return ProcessedFinding(finding, finding.severity, override=override)
    return ProcessedFinding(finding, finding.severity)


def override_matches(override: Override, finding: Finding) -> bool:
    if override.rule_id:
        matched = match_rule_id(finding.rule_id, override.rule_id)
    elif override.category:
        matched = finding.category == override.category
    else:
        matched = False
    if matched and override.path_pattern:
        matched = match_path_pattern(finding.evidence_paths, override.path_pattern)
    return matched


def compute_summary_counts(
    processed: Sequence[ProcessedFinding],
    waived_count: int,
) -> SummaryCounts:
    by_severity = {level: 0 for level in reversed(SEVERITY_LEVELS)}
    by_category = {category: 0 for category in CATEGORIES}
    active = [item for item in processed if not item.ignored]
    for item in active:
        by_severity[item.effective_severity] += 1
        by_category[item.finding.category] += 1
    return SummaryCounts(
        total=len(active),
        by_severity=by_severity,
        by_category=by_category,
        waived=waived_count,
        ignored=len(processed) - len(active),
    )


def evaluate_thresholds(
    processed: Sequence[ProcessedFinding],
    thresholds: Thresholds,
) -> tuple[str, list[PolicyReason]]:
    active = [item for item in processed if not item.ignored]
    reasons: list[PolicyReason] = []
    status = "pass"

    critical_count = sum(1 for item in active if item.effective_severity == "critical")
    high_count = sum(1 for item in active if item.effective_severity == "high")
    counts = (
        ("Total findings", len(active), thresholds.max_findings),
        ("Critical findings", critical_count, thresholds.max_critical),
        ("High severity findings", high_count, thresholds.max_high),
    )
    for label, count, maximum in counts:
        if maximum > 0 and count > maximum:
            status = "fail"
            reasons.append(
                PolicyReason(
                    status="fail",
                    code="count_threshold",
                    message=f"{label} ({count}) exceeds maximum ({maximum})",
                    details={"count": count, "max": maximum},
                )
            )

    forced_fail: list[Finding] = []
    failing: list[Finding] = []
    warning: list[Finding] = []
    for item in active:
        action = item.override.action if item.override is not None else None
        if action == "fail":
            forced_fail.append(item.finding)
            continue
        if action == "warn-only":
            warning.append(item.finding)
            continue

        severity = item.effective_severity
        confidence = item.finding.confidence
        if severity == "critical":
            confidence_for_fail = thresholds.min_confidence_critical
        else:
            confidence_for_fail = thresholds.min_confidence_for_fail
        meets_fail = (
            severity_meets_threshold(severity, thresholds.fail_on_severity)
            and confidence >= confidence_for_fail
        )
        meets_warn = (
            severity_meets_threshold(severity, thresholds.warn_on_severity)
            and confidence >= thresholds.min_confidence_for_warn
        )
        if meets_fail:
            failing.append(item.finding)
        elif meets_warn:
            warning.append(item.finding)

    if forced_fail:
        status = "fail"
        message = f"{len(forced_fail)} finding(s) forced to fail by override"
        reasons.append(_finding_reason("fail", "override_fail", message, forced_fail))
    if failing:
        status = "fail"
        message = f"{len(failing)} finding(s) meet fail criteria"
        reasons.append(_finding_reason("fail", "severity_threshold", message, failing))
    if warning and status == "pass":
        status = "warn"
        message = f"{len(warning)} finding(s) meet warn criteria"
        reasons.append(_finding_reason("warn", "severity_threshold", message, warning))
    if status == "pass":
        reasons.append(
            PolicyReason(
                status="pass",
                code="no_issues",
                message="No findings meet fail or warn criteria",
            )
        )
    return status, reasons


def evaluate_regression(
    summary: RegressionSummary,
    policy: RegressionPolicy,
) -> tuple[str, list[PolicyReason]]:
    reasons: list[PolicyReason] = []
    status = "pass"

    if policy.fail_on_new_high_critical and has_new_high_critical(summary):
        status = "fail"
        ids = new_high_critical_ids(summary)
        id_set = set(ids)
        fingerprints = [
            item.fingerprint for item in summary.new_findings if item.finding_id in id_set
        ]
        reasons.append(
            PolicyReason(
                status="fail",
                code="new_high_critical",
                message=f"{len(ids)} new high/critical finding(s) detected",
                finding_ids=tuple(ids),
                fingerprints=tuple(fingerprints),
            )
        )

    if policy.fail_on_severity_regression and has_severity_regressions(summary):
        status = "fail"
        reasons.append(
            PolicyReason(
                status="fail",
                code="severity_regression",
                message=f"{len(summary.severity_regressions)} severity regression(s) detected",
                fingerprints=tuple(item.fingerprint for item in summary.severity_regressions),
                details={
                    "regressions": [
                        {
                            "fingerprint": item.fingerprint,
                            "ruleId": item.rule_id,
                            "from": item.previous_severity,
                            "to": item.current_severity,
                        }
                        for item in summary.severity_regressions
                    ]
                },
            )
        )

    if policy.fail_on_net_increase and has_net_increase(summary):
        status = "fail"
        reasons.append(
            PolicyReason(
                status="fail",
                code="net_increase",
                message=f"Net increase of {summary.net_change} finding(s)",
                details={"netChange": summary.net_change},
            )
        )

    if policy.warn_on_new_findings and summary.new_findings and status == "pass":
        status = "warn"
        reasons.append(
            PolicyReason(
                status="warn",
                code="new_findings",
                message=f"{len(summary.new_findings)} new finding(s) detected",
                finding_ids=tuple(item.finding_id for item in summary.new_findings),
                fingerprints=tuple(item.fingerprint for item in summary.new_findings),
            )
        )

    if has_protection_regressions(summary):
        details = {
            "regressions": [
                {"route": item.route_id, "protectionType": item.protection_type}
                for item in summary.protection_regressions
            ]
        }
        count = len(summary.protection_regressions)
        if policy.fail_on_protection_removed:
            status = "fail"
            reasons.append(
                PolicyReason(
                    status="fail",
                    code="protection_removed",
                    message=f"{count} route(s) lost protection coverage",
                    details=details,
                )
            )
        elif policy.warn_on_protection_removed and status == "pass":
            status = "warn"
            reasons.append(
                PolicyReason(
                    status="warn",
                    code="protection_removed",
                    message=f"{count} route(s) may have lost protection",
                    details=details,
                )
            )

    if policy.fail_on_semantic_regression and has_semantic_regressions(summary):
        status = "fail"
        reasons.append(
            PolicyReason(
                status="fail",
                code="semantic_regression",
                message=f"{len(summary.semantic_regressions)} semantic regression(s) detected",
                details={
                    "regressions": [
                        {
                            "type": item.type,
                            "severity": item.severity,
                            "description": item.description,
                        }
                        for item in summary.semantic_regressions
                    ]
                },
            )
        )

    return status, reasons


def _finding_reason(
    status: str,
    code: str,
    message: str,
    findings: Sequence[Finding],
) -> PolicyReason:
    return PolicyReason(
        status=status,
        code=code,
        message=message,
        finding_ids=tuple(item.id for item in findings),
        fingerprints=tuple(item.fingerprint for item in findings),
    )
