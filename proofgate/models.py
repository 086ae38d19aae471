"""Core data model shared by the proof builder and the policy engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

CATEGORIES: tuple[str, ...] = (
    "auth",
    "validation",
    "middleware",
    "secrets",
    "injection",
    "privacy",
    "config",
    "network",
    "crypto",
    "uploads",
    "hallucinations",
    "abuse",
    "correlation",
    "authorization",
    "lifecycle",
    "supply-chain",
    "other",
)

HTTP_METHODS: tuple[str, ...] = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")


@dataclass(frozen=True, slots=True)
class EvidenceItem:
    """One piece of located evidence for a finding."""

    file: str
    start_line: int
    end_line: int
    label: str
    snippet: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "file": self.file,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "label": self.label,
        }
        if self.snippet is not None:
            payload["snippet"] = self.snippet
        return payload


@dataclass(frozen=True, slots=True)
class Remediation:
    recommended_fix: str
    patch: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"recommendedFix": self.recommended_fix}
        if self.patch is not None:
            payload["patch"] = self.patch
        return payload


@dataclass(frozen=True, slots=True)
class Finding:
    """A single detected issue. Immutable once produced by a scan."""

    id: str
    fingerprint: str
    rule_id: str
    severity: str
    confidence: float
    category: str
    title: str
    evidence: tuple[EvidenceItem, ...]
    remediation: Remediation
    description: str = ""
    correlation_data: dict[str, Any] | None = None

    @property
    def evidence_paths(self) -> list[str]:
        return [item.file for item in self.evidence]

    @property
    def primary_file(self) -> str:
        return self.evidence[0].file if self.evidence else ""

    @property
    def primary_line(self) -> int:
        return self.evidence[0].start_line if self.evidence else 0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "fingerprint": self.fingerprint,
            "ruleId": self.rule_id,
            "severity": self.severity,
            "confidence": self.confidence,
            "category": self.category,
            "title": self.title,
            "description": self.description,
            "evidence": [item.to_dict() for item in self.evidence],
            "remediation": self.remediation.to_dict(),
        }
        if self.correlation_data is not None:
            payload["correlationData"] = dict(self.correlation_data)
        return payload


@dataclass(frozen=True, slots=True)
class Route:
    """One request-handling entry point."""

    route_id: str
    method: str
    path: str
    file: str
    start_line: int
    end_line: int
    handler: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "routeId": self.route_id,
            "method": self.method,
            "path": self.path,
            "file": self.file,
            "startLine": self.start_line,
            "endLine": self.end_line,
            "handler": self.handler,
        }


@dataclass(frozen=True, slots=True)
class MiddlewareInfo:
    file: str
    matchers: tuple[str, ...]
    start_line: int = 1
    protects_api: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "matchers": list(self.matchers),
            "startLine": self.start_line,
            "protectsApi": self.protects_api,
        }


@dataclass(frozen=True, slots=True)
class ProofStep:
    """Audit-trail record explaining why a proof flag was set."""

    file: str
    line: int
    snippet: str
    label: str

    def to_dict(self) -> dict[str, Any]:
        return {"file": self.file, "line": self.line, "snippet": self.snippet, "label": self.label}


@dataclass(frozen=True, slots=True)
class ProofTrace:
    route_id: str
    auth_proven: bool = False
    validation_proven: bool = False
    middleware_covered: bool = False
    steps: tuple[ProofStep, ...] = ()

    @property
    def summary(self) -> str:
        parts = [
            f"auth {'proven' if self.auth_proven else 'not proven'}",
            f"validation {'proven' if self.validation_proven else 'not proven'}",
            f"middleware {'covered' if self.middleware_covered else 'not covered'}",
        ]
        return ", ".join(parts)

    def nodes(self) -> list[dict[str, Any]]:
        nodes: list[dict[str, Any]] = [{"kind": "route", "label": self.route_id}]
        for step in self.steps:
            nodes.append(
                {
                    "kind": _node_kind(step.label),
                    "label": step.label,
                    "file": step.file,
                    "line": step.line,
                }
            )
        return nodes

    def to_dict(self) -> dict[str, Any]:
        return {
            "routeId": self.route_id,
            "authProven": self.auth_proven,
            "validationProven": self.validation_proven,
            "middlewareCovered": self.middleware_covered,
            "steps": [step.to_dict() for step in self.steps],
            "summary": self.summary,
            "nodes": self.nodes(),
        }


@dataclass(frozen=True, slots=True)
class LegacyRouteFacts:
    """Route and middleware facts from the array form of older artifacts."""

    routes: tuple[Route, ...] = ()
    middleware: tuple[MiddlewareInfo, ...] = ()
    kind: str = field(default="legacy", init=False)


@dataclass(frozen=True, slots=True)
class VersionedRouteFacts:
    """Route and middleware facts from the keyed ``routeMap`` object."""

    routes: tuple[Route, ...] = ()
    middleware: tuple[MiddlewareInfo, ...] = ()
    kind: str = field(default="versioned", init=False)


RouteFacts = LegacyRouteFacts | VersionedRouteFacts


@dataclass(frozen=True, slots=True)
class ScanArtifact:
    """Findings plus structural facts produced by one scan."""

    artifact_version: str
    generated_at: str
    findings: tuple[Finding, ...]
    tool_name: str = "proofgate"
    tool_version: str = ""
    repo_name: str | None = None
    route_facts: RouteFacts = field(default_factory=LegacyRouteFacts)


def _node_kind(label: str) -> str:
    lowered = label.lower()
    if "middleware" in lowered:
        return "middleware"
    if "imported module" in lowered:
        return "function"
    return "handler"
