"""Regression engine: fingerprint diff of a current scan against a baseline.

On top of the raw new/resolved/persisting split it adds a semantic layer that
looks for lost protections, spreading findings and escalating rule families.
The route grouping used there is a best-effort key built from the first
evidence file and an HTTP method parsed out of the finding title; it is not a
join against discovered routes.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from proofgate.models import Finding, ScanArtifact
from proofgate.severity import compare_severity, max_severity, severity_rank

HIGH_CRITICAL = ("high", "critical")
COVERAGE_GROWTH_FACTOR = 1.1
_METHOD_RE = re.compile(r"\b(GET|POST|PUT|PATCH|DELETE|HEAD|OPTIONS)\b")

PROTECTION_RULE_TYPES = {
    "VC-LIFE-001": "auth",
    "VC-LIFE-002": "validation",
    "VC-LIFE-003": "rate-limit",
}
PROTECTION_PREFIX_TYPES = (
    ("VC-AUTHZ", "auth"),
    ("VC-AUTH", "auth"),
    ("VC-VAL", "validation"),
    ("VC-MW", "middleware"),
    ("VC-MID", "middleware"),
    ("VC-RATE", "rate-limit"),
)
PROTECTION_CATEGORY_TYPES = {
    "auth": "auth",
    "authorization": "auth",
    "validation": "validation",
    "middleware": "middleware",
}


@dataclass(frozen=True, slots=True)
class NewFinding:
    finding_id: str
    fingerprint: str
    severity: str
    rule_id: str
    title: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "findingId": self.finding_id,
            "fingerprint": self.fingerprint,
            "severity": self.severity,
            "ruleId": self.rule_id,
            "title": self.title,
        }


@dataclass(frozen=True, slots=True)
class ResolvedFinding:
    fingerprint: str
    severity: str
    rule_id: str
    title: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "severity": self.severity,
            "ruleId": self.rule_id,
            "title": self.title,
        }


@dataclass(frozen=True, slots=True)
class SeverityRegression:
    fingerprint: str
    rule_id: str
    previous_severity: str
    current_severity: str
    title: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "ruleId": self.rule_id,
            "previousSeverity": self.previous_severity,
            "currentSeverity": self.current_severity,
            "title": self.title,
        }


@dataclass(frozen=True, slots=True)
class ProtectionRegression:
    route_id: str
    file: str
    method: str
    protection_type: str
    description: str
    related_fingerprints: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "routeId": self.route_id,
            "file": self.file,
            "method": self.method,
            "protectionType": self.protection_type,
            "description": self.description,
            "relatedFingerprints": list(self.related_fingerprints),
        }


@dataclass(frozen=True, slots=True)
class SemanticRegression:
    type: str
    severity: str
    description: str
    affected_id: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity,
            "description": self.description,
            "affectedId": self.affected_id,
            "details": dict(self.details),
        }


@dataclass(frozen=True, slots=True)
class RegressionSummary:
    baseline_id: str
    baseline_generated_at: str
    new_findings: tuple[NewFinding, ...] = ()
    resolved_findings: tuple[ResolvedFinding, ...] = ()
    persisting_count: int = 0
    severity_regressions: tuple[SeverityRegression, ...] = ()
    net_change: int = 0
    protection_regressions: tuple[ProtectionRegression, ...] = ()
    semantic_regressions: tuple[SemanticRegression, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "baselineId": self.baseline_id,
            "baselineGeneratedAt": self.baseline_generated_at,
            "newFindings": [item.to_dict() for item in self.new_findings],
            "resolvedFindings": [item.to_dict() for item in self.resolved_findings],
            "persistingCount": self.persisting_count,
            "severityRegressions": [item.to_dict() for item in self.severity_regressions],
            "netChange": self.net_change,
            "protectionRegressions": [item.to_dict() for item in self.protection_regressions],
            "semanticRegressions": [item.to_dict() for item in self.semantic_regressions],
        }


def compute_regression(
    current: ScanArtifact,
    baseline: ScanArtifact,
    *,
    current_findings: Sequence[Finding] | None = None,
    baseline_findings: Sequence[Finding] | None = None,
) -> RegressionSummary:
    """Diff ``current`` against ``baseline`` by fingerprint.

    ``current_findings`` and ``baseline_findings`` replace each artifact's
    findings when the caller has already filtered them (for example after
    waivers). Both sides must be filtered the same way.
    """
    findings = list(current.findings if current_findings is None else current_findings)
    previous_findings = list(
        baseline.findings if baseline_findings is None else baseline_findings
    )
    current_index = _index(findings)
    baseline_index = _index(previous_findings)

    new_findings: list[NewFinding] = []
    severity_regressions: list[SeverityRegression] = []
    persisting = 0
    for fp, finding in current_index.items():
        previous = baseline_index.get(fp)
        if previous is None:
            new_findings.append(
                NewFinding(
                    finding_id=finding.id,
                    fingerprint=fp,
                    severity=finding.severity,
                    rule_id=finding.rule_id,
                    title=finding.title,
                )
            )
            continue
        persisting += 1
        if compare_severity(finding.severity, previous.severity) > 0:
            severity_regressions.append(
                SeverityRegression(
                    fingerprint=fp,
                    rule_id=finding.rule_id,
                    previous_severity=previous.severity,
                    current_severity=finding.severity,
                    title=finding.title,
                )
            )

    resolved = [
        ResolvedFinding(
            fingerprint=fp, severity=item.severity, rule_id=item.rule_id, title=item.title
        )
        for fp, item in baseline_index.items()
        if fp not in current_index
    ]

    return RegressionSummary(
        baseline_id=baseline.repo_name or "unknown",
        baseline_generated_at=baseline.generated_at,
        new_findings=tuple(new_findings),
        resolved_findings=tuple(resolved),
        persisting_count=persisting,
        severity_regressions=tuple(severity_regressions),
        net_change=len(findings) - len(previous_findings),
        protection_regressions=tuple(detect_protection_regressions(findings, previous_findings)),
        semantic_regressions=tuple(detect_semantic_regressions(findings, previous_findings)),
    )


def protection_type_for(finding: Finding) -> str | None:
    """Map a finding to the protection it reports missing, if any."""
    exact = PROTECTION_RULE_TYPES.get(finding.rule_id)
    if exact is not None:
        return exact
    for prefix, protection in PROTECTION_PREFIX_TYPES:
        if finding.rule_id == prefix or finding.rule_id.startswith(prefix + "-"):
            return protection
    return PROTECTION_CATEGORY_TYPES.get(finding.category)


def infer_route_key(finding: Finding) -> str:
    return f"{finding.primary_file}:{infer_method(finding)}"


def infer_method(finding: Finding) -> str:
    match = _METHOD_RE.search(finding.title)
    return match.group(1) if match else "ANY"


def rule_family(rule_id: str) -> str:
    """``VC-AUTH-001`` belongs to family ``VC-AUTH``."""
    head, sep, _ = rule_id.rpartition("-")
    return head if sep else rule_id


def detect_protection_regressions(
    current: Iterable[Finding],
    baseline: Iterable[Finding],
) -> list[ProtectionRegression]:
    baseline_list = list(baseline)
    baseline_fingerprints = {item.fingerprint for item in baseline_list}
    baseline_route_rules = {(infer_route_key(item), item.rule_id) for item in baseline_list}

    found: dict[tuple[str, str], ProtectionRegression] = {}
    for finding in current:
        protection = protection_type_for(finding)
        if protection is None or finding.fingerprint in baseline_fingerprints:
            continue
        route_key = infer_route_key(finding)
        if (route_key, finding.rule_id) in baseline_route_rules:
            continue
        key = (route_key, protection)
        existing = found.get(key)
        if existing is not None:
            if finding.fingerprint not in existing.related_fingerprints:
                found[key] = ProtectionRegression(
                    route_id=existing.route_id,
                    file=existing.file,
                    method=existing.method,
                    protection_type=existing.protection_type,
                    description=existing.description,
                    related_fingerprints=existing.related_fingerprints + (finding.fingerprint,),
                )
            continue
        found[key] = ProtectionRegression(
            route_id=route_key,
            file=finding.primary_file,
            method=infer_method(finding),
            protection_type=protection,
            description=f"{protection} protection regressed: {finding.title}",
            related_fingerprints=(finding.fingerprint,),
        )
    return list(found.values())


def detect_semantic_regressions(
    current: Iterable[Finding],
    baseline: Iterable[Finding],
) -> list[SemanticRegression]:
    current_list = list(current)
    baseline_list = list(baseline)
    by_fingerprint = {item.fingerprint: item for item in current_list}
    regressions: list[SemanticRegression] = []

    for protection in detect_protection_regressions(current_list, baseline_list):
        severities = [
            by_fingerprint[fp].severity
            for fp in protection.related_fingerprints
            if fp in by_fingerprint
        ]
        worst = max_severity(["high", *severities]) or "high"
        regressions.append(
            SemanticRegression(
                type="protection_removed",
                severity=worst,
                description=protection.description,
                affected_id=protection.route_id,
                details={
                    "protectionType": protection.protection_type,
                    "file": protection.file,
                    "method": protection.method,
                },
            )
        )

    current_routes = {infer_route_key(item) for item in current_list}
    baseline_routes = {infer_route_key(item) for item in baseline_list}
    if baseline_routes and len(current_routes) > len(baseline_routes) * COVERAGE_GROWTH_FACTOR:
        added = len(current_routes) - len(baseline_routes)
        regressions.append(
            SemanticRegression(
                type="coverage_decreased",
                severity="medium",
                description=(
                    f"{added} new routes have security findings "
                    f"({len(baseline_routes)} -> {len(current_routes)} routes with findings)"
                ),
                affected_id="routes",
                details={
                    "baselineRoutes": len(baseline_routes),
                    "currentRoutes": len(current_routes),
                    "newRoutes": sorted(current_routes - baseline_routes),
                },
            )
        )

    current_families = _family_max(current_list)
    baseline_families = _family_max(baseline_list)
    for family, current_max in current_families.items():
        previous_max = baseline_families.get(family)
        if previous_max is None:
            continue
        escalated = severity_rank(current_max) > severity_rank(previous_max)
        if escalated and severity_rank(current_max) >= severity_rank("high"):
            regressions.append(
                SemanticRegression(
                    type="severity_group_increase",
                    severity=current_max,
                    description=f"{family} findings escalated from {previous_max} to {current_max}",
                    affected_id=family,
                    details={"previousMax": previous_max, "currentMax": current_max},
                )
            )
    return regressions


def has_new_high_critical(summary: RegressionSummary) -> bool:
    return any(item.severity in HIGH_CRITICAL for item in summary.new_findings)


def new_high_critical_ids(summary: RegressionSummary) -> list[str]:
    return [item.finding_id for item in summary.new_findings if item.severity in HIGH_CRITICAL]


def has_severity_regressions(summary: RegressionSummary) -> bool:
    return bool(summary.severity_regressions)


def has_net_increase(summary: RegressionSummary) -> bool:
    return summary.net_change > 0


def has_protection_regressions(summary: RegressionSummary) -> bool:
    return bool(summary.protection_regressions)


def has_semantic_regressions(summary: RegressionSummary) -> bool:
    return bool(summary.semantic_regressions)


def _index(findings: Iterable[Finding]) -> dict[str, Finding]:
    # Later duplicates win; dict order stays first-seen for determinism.
    index: dict[str, Finding] = {}
    for finding in findings:
        index[finding.fingerprint] = finding
    return index


def _family_max(findings: Iterable[Finding]) -> dict[str, str]:
    families: dict[str, str] = {}
    for finding in findings:
        family = rule_family(finding.rule_id)
        previous = families.get(family)
        if previous is None or severity_rank(finding.severity) > severity_rank(previous):
            families[family] = finding.severity
    return families
