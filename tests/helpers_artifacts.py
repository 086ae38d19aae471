"""Builders for findings, artifacts and fixture repositories used in tests."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from proofgate.fingerprint import fingerprint as compute_fingerprint
from proofgate.models import EvidenceItem, Finding, Remediation, ScanArtifact


def make_finding(
    fingerprint: str = "F1",
    *,
    rule_id: str = "VC-AUTH-001",
    severity: str = "high",
    confidence: float = 0.9,
    category: str = "auth",
    title: str = "Missing auth on POST /api/users",
    file: str = "app/api/users/route.ts",
    line: int = 10,
    finding_id: str | None = None,
) -> Finding:
    return Finding(
        id=finding_id or f"{rule_id.lower()}-{fingerprint.lower()}",
        fingerprint=fingerprint,
        rule_id=rule_id,
        severity=severity,
        confidence=confidence,
        category=category,
        title=title,
        evidence=(EvidenceItem(file=file, start_line=line, end_line=line, label="handler"),),
        remediation=Remediation(recommended_fix="Add an auth check."),
    )


def make_artifact(
    findings: list[Finding] | tuple[Finding, ...] = (),
    *,
    generated_at: str = "2024-05-01T00:00:00Z",
    repo_name: str | None = "acme/web",
) -> ScanArtifact:
    return ScanArtifact(
        artifact_version="0.3",
        generated_at=generated_at,
        findings=tuple(findings),
        tool_name="proofgate",
        tool_version="0.1.0",
        repo_name=repo_name,
    )


def finding_payload(
    *,
    rule_id: str = "VC-AUTH-001",
    file: str = "app/api/users/route.ts",
    line: int = 10,
    severity: str = "high",
    confidence: float = 0.9,
    category: str = "auth",
    title: str = "Missing auth on POST /api/users",
    fingerprint: str | None = None,
) -> dict[str, Any]:
    digest = fingerprint or compute_fingerprint(rule_id, file, start_line=line)
    return {
        "id": f"{rule_id.lower()}-{digest[:8]}",
        "fingerprint": digest,
        "ruleId": rule_id,
        "severity": severity,
        "confidence": confidence,
        "category": category,
        "title": title,
        "description": "State-changing handler has no auth check.",
        "evidence": [
            {
                "file": file,
                "startLine": line,
                "endLine": line + 4,
                "label": "Handler without auth",
                "snippet": "export async function POST(req) {",
            }
        ],
        "remediation": {"recommendedFix": "Call the session helper before writing."},
    }


def artifact_payload(
    findings: list[dict[str, Any]] | None = None,
    *,
    version: str = "0.3",
    generated_at: str = "2024-05-01T00:00:00Z",
) -> dict[str, Any]:
    return {
        "artifactVersion": version,
        "generatedAt": generated_at,
        "tool": {"name": "proofgate", "version": "0.1.0"},
        "repo": {"name": "acme/web"},
        "findings": findings if findings is not None else [finding_payload()],
    }


def write_json(path: Path, payload: dict[str, Any]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return path


def write_tree(root: Path, files: dict[str, str]) -> Path:
    """Write a fixture source tree; keys are repo-relative paths."""
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return root
