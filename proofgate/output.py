"""Output rendering."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

import click

from proofgate import __version__
from proofgate.evaluator import PolicyReport
from proofgate.models import MiddlewareInfo, ProofTrace, Route
from proofgate.proof_trace import CoverageMetrics
from proofgate.severity import SEVERITY_LEVELS

_STATUS_COLORS = {"pass": "green", "warn": "yellow", "fail": "red"}
_SEVERITY_COLORS = {
    "critical": "red",
    "high": "red",
    "medium": "yellow",
    "low": "cyan",
    "info": "white",
}


def render_human(report: PolicyReport, *, limit: int = 10) -> str:
    """Render a compact colorized policy summary."""
    color = _STATUS_COLORS.get(report.status, "white")
    profile = report.profile_name or "custom"
    lines: list[str] = [
        click.style(
            f"Policy status: {report.status.upper()} (profile: {profile})",
            fg=color,
            bold=True,
        )
    ]

    summary = report.summary
    by_severity = ", ".join(
        f"{level}={summary.by_severity.get(level, 0)}"
        for level in reversed(SEVERITY_LEVELS)
        if summary.by_severity.get(level, 0)
    )
    lines.append(
        f"Findings: {summary.total} active, {summary.waived} waived, {summary.ignored} ignored"
        + (f" ({by_severity})" if by_severity else "")
    )

    if report.reasons:
        lines.append(click.style("Reasons:", bold=True))
        for reason in report.reasons:
            tag = click.style(reason.status.upper(), fg=_STATUS_COLORS.get(reason.status))
            lines.append(f"- [{tag}] {reason.code}: {reason.message}")

    visible = [item for item in report.active_findings if not item.ignored]
    if visible:
        lines.append(click.style("Active findings:", bold=True))
        for index, item in enumerate(visible[:limit], start=1):
            finding = item.finding
            severity = click.style(
                item.effective_severity, fg=_SEVERITY_COLORS.get(item.effective_severity)
            )
            lines.append(f"{index}. [{finding.rule_id}] {severity} {finding.title}")
            lines.append(f"   evidence: {finding.primary_file}:{finding.primary_line}")
            lines.append(f"   fingerprint: {finding.fingerprint}")
        if len(visible) > limit:
            lines.append(f"   ... and {len(visible) - limit} more")

    if report.waived_findings:
        lines.append(click.style("Waived findings:", bold=True))
        for waived in report.waived_findings:
            suffix = " (expired)" if waived.expired else ""
            lines.append(
                f"- {waived.finding.fingerprint} [{waived.finding.rule_id}] "
                f"waiver {waived.waiver.id}{suffix}: {waived.waiver.reason}"
            )

    regression = report.regression
    if regression is not None:
        lines.append(click.style("Regression vs baseline:", bold=True))
        lines.append(
            f"- new: {len(regression.new_findings)}, "
            f"resolved: {len(regression.resolved_findings)}, "
            f"persisting: {regression.persisting_count}, "
            f"net change: {regression.net_change:+d}"
        )
        for item in regression.severity_regressions:
            lines.append(
                f"- {item.fingerprint} [{item.rule_id}] "
                f"{item.previous_severity} -> {item.current_severity}"
            )
        for semantic in regression.semantic_regressions:
            lines.append(f"- {semantic.type}: {semantic.description}")

    lines.append(f"Exit code: {report.exit_code}")
    return "\n".join(lines)


def render_json(report: PolicyReport) -> str:
    """Render the policy report as stable JSON."""
    return json.dumps(build_report_payload(report), sort_keys=True, indent=2)


def build_report_payload(report: PolicyReport) -> dict[str, Any]:
    payload = report.to_dict()
    payload["tool"] = {"name": "proofgate", "version": __version__}
    return payload


def render_traces_human(
    traces: Mapping[str, ProofTrace],
    routes: Sequence[Route],
    coverage: CoverageMetrics,
) -> str:
    lines: list[str] = [click.style(f"Routes traced: {len(routes)}", bold=True)]
    for route in routes:
        trace = traces.get(route.route_id)
        if trace is None:
            continue
        lines.append(
            f"{route.method} {route.path} ({route.file}:{route.start_line}) "
            f"auth={_mark(trace.auth_proven)} "
            f"validation={_mark(trace.validation_proven)} "
            f"middleware={_mark(trace.middleware_covered)}"
        )
        for step in trace.steps:
            lines.append(f"   {step.label}: {step.file}:{step.line}")
            lines.append(f"      {step.snippet}")

    lines.append(click.style("Coverage:", bold=True))
    lines.append(f"- auth: {_percent(coverage.auth_coverage)}")
    lines.append(f"- validation: {_percent(coverage.validation_coverage)}")
    lines.append(f"- middleware: {_percent(coverage.middleware_coverage)}")
    return "\n".join(lines)


def render_traces_json(
    traces: Mapping[str, ProofTrace],
    routes: Sequence[Route],
    coverage: CoverageMetrics,
    middleware: Sequence[MiddlewareInfo] = (),
) -> str:
    payload = {
        "routes": [route.to_dict() for route in routes],
        "middleware": [item.to_dict() for item in middleware],
        "proofTraces": {route_id: trace.to_dict() for route_id, trace in traces.items()},
        "coverage": coverage.to_dict(),
    }
    return json.dumps(payload, sort_keys=True, indent=2)


def _mark(value: bool) -> str:
    return click.style("yes", fg="green") if value else click.style("no", fg="red")


def _percent(value: float) -> str:
    return f"{round(value * 100)}%"
