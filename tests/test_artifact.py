"""Artifact loading, validation and ordering."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from proofgate.artifact import (
    ArtifactValidationError,
    artifact_to_dict,
    compute_summary,
    load_artifact,
    sort_findings,
    validate_artifact,
)
from proofgate.models import LegacyRouteFacts, VersionedRouteFacts
from tests.helpers_artifacts import artifact_payload, finding_payload, make_finding, write_json


def test_valid_artifact_round_trips_into_models(tmp_path: Path) -> None:
    path = write_json(tmp_path / "scan.json", artifact_payload())
    artifact = load_artifact(path)

    assert artifact.artifact_version == "0.3"
    assert artifact.repo_name == "acme/web"
    assert len(artifact.findings) == 1
    finding = artifact.findings[0]
    assert finding.rule_id == "VC-AUTH-001"
    assert finding.primary_file == "app/api/users/route.ts"
    assert finding.primary_line == 10
    assert finding.remediation.recommended_fix.startswith("Call the session helper")


def test_validation_collects_every_issue() -> None:
    bad = finding_payload()
    bad["severity"] = "severe"
    bad["confidence"] = 1.5
    bad["category"] = "weather"
    bad["evidence"] = []
    data = artifact_payload([bad], version="9.9")

    with pytest.raises(ArtifactValidationError) as excinfo:
        validate_artifact(data)

    issues = excinfo.value.issues
    assert any(issue.startswith("artifactVersion") for issue in issues)
    assert any("findings.0.severity" in issue for issue in issues)
    assert any("findings.0.confidence" in issue for issue in issues)
    assert any("findings.0.category" in issue for issue in issues)
    assert any("findings.0.evidence" in issue for issue in issues)


def test_missing_required_fields_and_bad_rule_code_are_rejected() -> None:
    bad = finding_payload()
    del bad["fingerprint"]
    bad["ruleId"] = "auth-check"
    with pytest.raises(ArtifactValidationError) as excinfo:
        validate_artifact(artifact_payload([bad]))
    assert any("fingerprint" in issue for issue in excinfo.value.issues)
    assert any("ruleId" in issue for issue in excinfo.value.issues)


def test_boolean_confidence_is_not_a_number() -> None:
    bad = finding_payload()
    bad["confidence"] = True
    with pytest.raises(ArtifactValidationError):
        validate_artifact(artifact_payload([bad]))


def test_invalid_json_and_missing_file_are_input_errors(tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(ArtifactValidationError, match="invalid JSON"):
        load_artifact(broken)
    with pytest.raises(ArtifactValidationError, match="file not found"):
        load_artifact(tmp_path / "absent.json")


def test_array_route_map_is_legacy_and_object_form_is_versioned() -> None:
    legacy = artifact_payload(version="0.2")
    legacy["routeMap"] = [
        {"method": "post", "path": "/api/users", "file": "app/api/users/route.ts", "line": 4}
    ]
    legacy["middlewareMap"] = [{"file": "middleware.ts", "appliesTo": ["/api/:path*"]}]
    facts = validate_artifact(legacy).route_facts
    assert isinstance(facts, LegacyRouteFacts)
    assert facts.routes[0].method == "POST"
    assert facts.routes[0].start_line == 4
    assert len(facts.routes[0].route_id) == 12
    assert facts.middleware[0].matchers == ("/api/:path*",)

    versioned = artifact_payload()
    versioned["routeMap"] = {
        "routes": [
            {
                "routeId": "r1",
                "method": "GET",
                "path": "/api/health",
                "file": "app/api/health/route.ts",
                "startLine": 1,
                "endLine": 3,
            }
        ],
        "middleware": [{"file": "middleware.ts", "matchers": ["/api/:path*"]}],
    }
    facts = validate_artifact(versioned).route_facts
    assert isinstance(facts, VersionedRouteFacts)
    assert facts.routes[0].route_id == "r1"
    assert facts.middleware[0].file == "middleware.ts"


def test_sort_findings_is_independent_of_input_order() -> None:
    findings = [
        make_finding("c3", file="b.ts"),
        make_finding("a1", file="z.ts"),
        make_finding("b2", file="a.ts"),
    ]
    forward = sort_findings(findings)
    backward = sort_findings(reversed(findings))
    assert [item.fingerprint for item in forward] == ["a1", "b2", "c3"]
    assert forward == backward


def test_summary_counts_and_serialized_form() -> None:
    path_payload = artifact_payload(
        [
            finding_payload(severity="high"),
            finding_payload(rule_id="VC-VAL-001", line=30, severity="low", category="validation"),
        ]
    )
    artifact = validate_artifact(path_payload)
    summary = compute_summary(artifact.findings)
    assert summary["totalFindings"] == 2
    assert summary["bySeverity"]["high"] == 1
    assert summary["byCategory"]["validation"] == 1

    payload = artifact_to_dict(artifact)
    rule_ids = {item["ruleId"] for item in json.loads(json.dumps(payload))["findings"]}
    assert rule_ids == {"VC-AUTH-001", "VC-VAL-001"}
    assert validate_artifact(payload).findings == artifact.findings
