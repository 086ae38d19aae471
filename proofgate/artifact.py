"""Scan artifact loading and validation.

This is the boundary with the rule packs and route discovery: raw JSON is
validated once here and turned into immutable models. Nothing deeper in the
core inspects raw artifact shapes.
"""

from __future__ import annotations

import json
import math
import re
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from proofgate.fingerprint import normalize_path, route_id
from proofgate.models import (
    CATEGORIES,
    EvidenceItem,
    Finding,
    LegacyRouteFacts,
    MiddlewareInfo,
    Remediation,
    Route,
    RouteFacts,
    ScanArtifact,
    VersionedRouteFacts,
)
from proofgate.severity import SEVERITY_LEVELS, is_severity

SUPPORTED_ARTIFACT_VERSIONS = ("0.1", "0.2", "0.3")
RULE_ID_RE = re.compile(r"^[A-Z][A-Z0-9]*(?:-[A-Z0-9]+)+$")


class ArtifactValidationError(ValueError):
    """Raised when an artifact is malformed; carries every issue found."""

    def __init__(self, issues: list[str]) -> None:
        self.issues = list(issues)
        super().__init__("Invalid artifact: " + "; ".join(self.issues))


def load_artifact(path: Path) -> ScanArtifact:
    """Read and validate an artifact JSON file."""
    if not path.exists():
        raise ArtifactValidationError([f"{path}: file not found"])
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise ArtifactValidationError([f"{path}: unreadable ({exc})"]) from exc
    except json.JSONDecodeError as exc:
        message = f"{path}: invalid JSON ({exc.msg} at line {exc.lineno})"
        raise ArtifactValidationError([message]) from exc
    return validate_artifact(data)


def validate_artifact(data: Any) -> ScanArtifact:
    """Validate a decoded artifact mapping; raise with all issues on failure."""
    issues: list[str] = []
    if not isinstance(data, dict):
        raise ArtifactValidationError(["<root>: expected an object"])

    version = data.get("artifactVersion")
    if version not in SUPPORTED_ARTIFACT_VERSIONS:
        supported = ", ".join(SUPPORTED_ARTIFACT_VERSIONS)
        issues.append(f"artifactVersion: unsupported version {version!r} (supported: {supported})")

    generated_at = data.get("generatedAt")
    if not isinstance(generated_at, str):
        issues.append("generatedAt: expected a string")
        generated_at = ""

    tool = data.get("tool", {})
    if not isinstance(tool, dict):
        issues.append("tool: expected an object")
        tool = {}
    repo = data.get("repo")
    repo_name = repo.get("name") if isinstance(repo, dict) else None

    raw_findings = data.get("findings")
    findings: list[Finding] = []
    if not isinstance(raw_findings, list):
        issues.append("findings: expected a list")
    else:
        for index, raw in enumerate(raw_findings):
            finding = _parse_finding(raw, f"findings.{index}", issues)
            if finding is not None:
                findings.append(finding)

    route_facts = _parse_route_facts(data, issues)

    if issues:
        raise ArtifactValidationError(issues)

    return ScanArtifact(
        artifact_version=str(version),
        generated_at=generated_at,
        findings=tuple(findings),
        tool_name=str(tool.get("name", "unknown")),
        tool_version=str(tool.get("version", "")),
        repo_name=repo_name if isinstance(repo_name, str) else None,
        route_facts=route_facts,
    )


def sort_findings(findings: Iterable[Finding]) -> list[Finding]:
    """Order findings independently of how they were produced."""
    return sorted(
        findings,
        key=lambda item: (item.fingerprint, item.primary_file, item.primary_line, item.rule_id),
    )


def compute_summary(findings: Iterable[Finding]) -> dict[str, Any]:
    by_severity = {level: 0 for level in reversed(SEVERITY_LEVELS)}
    by_category = {category: 0 for category in CATEGORIES}
    total = 0
    for finding in findings:
        total += 1
        by_severity[finding.severity] += 1
        by_category[finding.category] += 1
    return {"totalFindings": total, "bySeverity": by_severity, "byCategory": by_category}


def artifact_to_dict(artifact: ScanArtifact) -> dict[str, Any]:
    findings = list(artifact.findings)
    payload: dict[str, Any] = {
        "artifactVersion": artifact.artifact_version,
        "generatedAt": artifact.generated_at,
        "tool": {"name": artifact.tool_name, "version": artifact.tool_version},
        "summary": compute_summary(findings),
        "findings": [finding.to_dict() for finding in findings],
    }
    if artifact.repo_name is not None:
        payload["repo"] = {"name": artifact.repo_name}
    facts = artifact.route_facts
    if facts.routes or facts.middleware:
        routes = [route.to_dict() for route in facts.routes]
        middleware = [item.to_dict() for item in facts.middleware]
        if isinstance(facts, VersionedRouteFacts):
            payload["routeMap"] = {"routes": routes, "middleware": middleware}
        else:
            payload["routeMap"] = routes
            payload["middlewareMap"] = middleware
    return payload


def _parse_finding(raw: Any, where: str, issues: list[str]) -> Finding | None:
    if not isinstance(raw, dict):
        issues.append(f"{where}: expected an object")
        return None

    start = len(issues)
    finding_id = _req_str(raw, "id", where, issues)
    fingerprint = _req_str(raw, "fingerprint", where, issues)
    rule_id = _req_str(raw, "ruleId", where, issues)
    if rule_id and not RULE_ID_RE.match(rule_id):
        issues.append(f"{where}.ruleId: {rule_id!r} is not a namespaced rule code")
    title = _req_str(raw, "title", where, issues)

    severity = raw.get("severity")
    if not is_severity(severity):
        issues.append(f"{where}.severity: expected one of {', '.join(SEVERITY_LEVELS)}")

    confidence = raw.get("confidence")
    if (
        isinstance(confidence, bool)
        or not isinstance(confidence, (int, float))
        or math.isnan(confidence)
        or not 0.0 <= confidence <= 1.0
    ):
        issues.append(f"{where}.confidence: expected a number between 0 and 1")

    category = raw.get("category")
    if category not in CATEGORIES:
        issues.append(f"{where}.category: unknown category {category!r}")

    description = raw.get("description", "")
    if not isinstance(description, str):
        issues.append(f"{where}.description: expected a string")

    evidence: list[EvidenceItem] = []
    raw_evidence = raw.get("evidence")
    if not isinstance(raw_evidence, list) or not raw_evidence:
        issues.append(f"{where}.evidence: expected a non-empty list")
    else:
        for index, item in enumerate(raw_evidence):
            parsed = _parse_evidence(item, f"{where}.evidence.{index}", issues)
            if parsed is not None:
                evidence.append(parsed)

    remediation = _parse_remediation(raw.get("remediation"), f"{where}.remediation", issues)

    correlation = raw.get("correlationData")
    if correlation is not None and not isinstance(correlation, dict):
        issues.append(f"{where}.correlationData: expected an object")

    if len(issues) > start or remediation is None:
        return None

    return Finding(
        id=finding_id,
        fingerprint=fingerprint,
        rule_id=rule_id,
        severity=severity,
        confidence=float(confidence),
        category=category,
        title=title,
        description=description,
        evidence=tuple(evidence),
        remediation=remediation,
        correlation_data=dict(correlation) if isinstance(correlation, dict) else None,
    )


def _parse_evidence(raw: Any, where: str, issues: list[str]) -> EvidenceItem | None:
    if not isinstance(raw, dict):
        issues.append(f"{where}: expected an object")
        return None
    start = len(issues)
    file = _req_str(raw, "file", where, issues)
    label = _req_str(raw, "label", where, issues)
    start_line = _positive_int(raw.get("startLine"), f"{where}.startLine", issues)
    end_line = _positive_int(raw.get("endLine", start_line), f"{where}.endLine", issues)
    snippet = raw.get("snippet")
    if snippet is not None and not isinstance(snippet, str):
        issues.append(f"{where}.snippet: expected a string")
    if len(issues) > start:
        return None
    return EvidenceItem(
        file=normalize_path(file),
        start_line=start_line,
        end_line=end_line,
        label=label,
        snippet=snippet,
    )


def _parse_remediation(raw: Any, where: str, issues: list[str]) -> Remediation | None:
    if not isinstance(raw, dict):
        issues.append(f"{where}: expected an object")
        return None
    fix = raw.get("recommendedFix")
    if not isinstance(fix, str):
        issues.append(f"{where}.recommendedFix: expected a string")
        return None
    patch = raw.get("patch")
    return Remediation(recommended_fix=fix, patch=patch if isinstance(patch, str) else None)


def _parse_route_facts(data: dict[str, Any], issues: list[str]) -> RouteFacts:
    raw_routes = data.get("routeMap")
    raw_middleware = data.get("middlewareMap")

    if isinstance(raw_routes, dict):
        routes = _parse_routes(raw_routes.get("routes", []), "routeMap.routes", issues)
        middleware = _parse_middleware(
            raw_routes.get("middleware", raw_middleware or []), "routeMap.middleware", issues
        )
        return VersionedRouteFacts(routes=routes, middleware=middleware)

    routes = _parse_routes(raw_routes or [], "routeMap", issues)
    middleware = _parse_middleware(raw_middleware or [], "middlewareMap", issues)
    return LegacyRouteFacts(routes=routes, middleware=middleware)


def _parse_routes(raw: Any, where: str, issues: list[str]) -> tuple[Route, ...]:
    if not isinstance(raw, list):
        issues.append(f"{where}: expected a list")
        return ()
    routes: list[Route] = []
    for index, item in enumerate(raw):
        item_where = f"{where}.{index}"
        if not isinstance(item, dict):
            issues.append(f"{item_where}: expected an object")
            continue
        start = len(issues)
        method = _req_str(item, "method", item_where, issues).upper()
        path = _req_str(item, "path", item_where, issues)
        file = normalize_path(_req_str(item, "file", item_where, issues))
        raw_start = item.get("startLine", item.get("line", 1))
        start_line = _positive_int(raw_start, f"{item_where}.startLine", issues)
        end_line = _positive_int(item.get("endLine", start_line), f"{item_where}.endLine", issues)
        if len(issues) > start:
            continue
        handler = item.get("handler")
        raw_id = item.get("routeId")
        routes.append(
            Route(
                route_id=raw_id if isinstance(raw_id, str) and raw_id
                else route_id(path, method, file),
                method=method,
                path=path,
                file=file,
                start_line=start_line,
                end_line=end_line,
                handler=handler if isinstance(handler, str) else None,
            )
        )
    return tuple(routes)


def _parse_middleware(raw: Any, where: str, issues: list[str]) -> tuple[MiddlewareInfo, ...]:
    if not isinstance(raw, list):
        issues.append(f"{where}: expected a list")
        return ()
    entries: list[MiddlewareInfo] = []
    for index, item in enumerate(raw):
        item_where = f"{where}.{index}"
        if not isinstance(item, dict):
            issues.append(f"{item_where}: expected an object")
            continue
        file = item.get("file")
        if not isinstance(file, str):
            issues.append(f"{item_where}.file: expected a string")
            continue
        matchers = item.get("matchers", item.get("appliesTo", []))
        if not isinstance(matchers, list) or not all(isinstance(m, str) for m in matchers):
            issues.append(f"{item_where}.matchers: expected a list of strings")
            continue
        line = item.get("startLine", item.get("line", 1))
        entries.append(
            MiddlewareInfo(
                file=normalize_path(file),
                matchers=tuple(matchers),
                start_line=line if isinstance(line, int) and line > 0 else 1,
                protects_api=bool(item.get("protectsApi", False)),
            )
        )
    return tuple(entries)


def _req_str(raw: dict[str, Any], key: str, where: str, issues: list[str]) -> str:
    value = raw.get(key)
    if not isinstance(value, str):
        issues.append(f"{where}.{key}: expected a string")
        return ""
    return value


def _positive_int(value: Any, where: str, issues: list[str]) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        issues.append(f"{where}: expected a positive integer")
        return 1
    return value
