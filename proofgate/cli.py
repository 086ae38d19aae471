"""CLI entrypoint for proofgate."""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Annotated, NoReturn

import typer

from proofgate import __version__
from proofgate.artifact import ArtifactValidationError, load_artifact
from proofgate.config import (
    PROFILE_DESCRIPTIONS,
    PROFILE_NAMES,
    PolicyConfig,
    PolicyConfigError,
    default_config_template,
    get_profile,
    load_policy_config,
)
from proofgate.evaluator import PolicyReport, evaluate
from proofgate.fingerprint import hash_content
from proofgate.models import ScanArtifact
from proofgate.output import (
    render_human,
    render_json,
    render_traces_human,
    render_traces_json,
)
from proofgate.proof_trace import (
    build_all_proof_traces,
    calculate_coverage,
    discover_middleware,
    discover_routes,
)
from proofgate.source import CancelToken, ParseCache, ScanCancelledError
from proofgate.waivers import (
    DEFAULT_WAIVERS_FILENAME,
    Waiver,
    WaiverFileError,
    add_waiver,
    create_waiver,
    dump_waivers,
    is_waiver_expired,
    load_waivers,
    remove_waiver,
)

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="proofgate",
    no_args_is_help=True,
    help="Gate merges on security scan findings with deterministic policy decisions.",
)

ERROR_EXIT_CODE = 2


def version_callback(value: bool) -> None:
    """Print version and exit when --version is provided."""
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option("--version", help="Show version and exit.", callback=version_callback),
    ] = False,
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Log diagnostics to stderr.")
    ] = False,
) -> None:
    """Root command callback."""
    _ = version
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            stream=sys.stderr,
            format="%(levelname)s %(name)s: %(message)s",
        )


@app.command("evaluate")
def evaluate_command(
    artifact_path: Annotated[Path, typer.Argument(help="Scan artifact JSON file.")],
    baseline: Annotated[
        Path | None, typer.Option(help="Baseline artifact for regression checks.")
    ] = None,
    profile: Annotated[
        str | None, typer.Option(help="Policy profile: startup|strict|compliance-lite.")
    ] = None,
    repo: Annotated[Path, typer.Option(help="Repository path for config discovery.")] = Path("."),
    config_file: Annotated[
        Path | None,
        typer.Option("--config", help="Path to policy config (TOML or JSON)."),
    ] = None,
    waivers_file: Annotated[
        Path | None, typer.Option("--waivers", help="Path to waivers JSON file.")
    ] = None,
    format: Annotated[str, typer.Option(help="Output format: human|json.")] = "human",
    out: Annotated[Path | None, typer.Option(help="Also write the JSON report here.")] = None,
) -> None:
    """Evaluate a scan artifact against policy and exit with its status."""
    output_format = _output_format(format)
    policy = _load_policy_or_exit(repo, config_file, profile)
    waivers = _load_waivers_or_exit(_waivers_path(repo, waivers_file, policy))
    report = _evaluate(artifact_path, baseline, policy, waivers)

    rendered_json = render_json(report)
    if out is not None:
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(rendered_json + "\n", encoding="utf-8")
        logger.debug("Wrote policy report to %s", out)

    if output_format == "json":
        typer.echo(rendered_json)
    else:
        typer.echo(render_human(report))
    raise typer.Exit(code=report.exit_code)


@app.command("trace")
def trace_command(
    repo: Annotated[Path, typer.Argument(help="Repository root to scan.")] = Path("."),
    format: Annotated[str, typer.Option(help="Output format: human|json.")] = "human",
    workers: Annotated[
        int | None, typer.Option(min=1, help="Worker threads (default: CPU count).")
    ] = None,
) -> None:
    """Discover routes and print their proof traces and coverage."""
    output_format = _output_format(format)
    repo_root = repo.resolve()
    if not repo_root.is_dir():
        _fail(f"Repository path is not a directory: {repo_root}")

    token = CancelToken()
    try:
        typer.echo(_trace_output(repo_root, output_format, workers, token))
    except KeyboardInterrupt:
        token.cancel()
        _fail("Trace cancelled")
    except ScanCancelledError as exc:
        _fail(str(exc))


@app.command("profiles")
def profiles_command(
    format: Annotated[str, typer.Option(help="Output format: human|json.")] = "human",
) -> None:
    """List built-in policy profiles."""
    output_format = _output_format(format)
    if output_format == "json":
        payload = {
            "profiles": [
                {
                    "name": name,
                    "description": PROFILE_DESCRIPTIONS[name],
                    "config": get_profile(name).to_dict(),
                }
                for name in PROFILE_NAMES
            ]
        }
        typer.echo(json.dumps(payload, sort_keys=True))
        return

    lines = ["Available profiles:"]
    for name in PROFILE_NAMES:
        thresholds = get_profile(name).thresholds
        lines.append(f"- {name}: {PROFILE_DESCRIPTIONS[name]}")
        lines.append(
            f"  fail on >= {thresholds.fail_on_severity}, "
            f"warn on >= {thresholds.warn_on_severity}"
        )
    typer.echo("\n".join(lines))


@app.command("config-init")
def config_init_command(
    out: Annotated[Path, typer.Option(help="Output path for starter config TOML.")] = Path(
        ".proofgate.toml"
    ),
    force: Annotated[
        bool,
        typer.Option("--force", help="Overwrite if file already exists."),
    ] = False,
) -> None:
    """Create a starter policy config file."""
    out_path = out.resolve()
    if out_path.exists() and not force:
        _fail(f"Refusing to overwrite existing file: {out_path}. Use --force to overwrite.")
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(default_config_template(), encoding="utf-8")
    typer.echo(f"Wrote starter config: {out_path}")


@app.command("config-validate")
def config_validate_command(
    repo: Annotated[Path, typer.Option(help="Repository path.")] = Path("."),
    config_file: Annotated[
        Path | None,
        typer.Option("--config", help="Path to policy config to validate."),
    ] = None,
    profile: Annotated[str | None, typer.Option(help="Policy profile override.")] = None,
    format: Annotated[str, typer.Option(help="Output format: human|json.")] = "human",
) -> None:
    """Validate a policy config and show the resolved policy."""
    output_format = _output_format(format)
    policy = _load_policy_or_exit(repo, config_file, profile)
    if output_format == "json":
        typer.echo(json.dumps({"ok": True, "config": policy.to_dict()}, sort_keys=True))
        return

    thresholds = policy.thresholds
    typer.echo(
        "\n".join(
            [
                "Config is valid.",
                f"- source: {policy.source or 'defaults'}",
                f"- profile: {policy.profile}",
                f"- fail_on_severity: {thresholds.fail_on_severity}",
                f"- warn_on_severity: {thresholds.warn_on_severity}",
                f"- overrides: {len(policy.overrides)}",
                f"- waivers_path: {policy.waivers_path or DEFAULT_WAIVERS_FILENAME}",
            ]
        )
    )


@app.command("waivers-list")
def waivers_list_command(
    repo: Annotated[Path, typer.Option(help="Repository path.")] = Path("."),
    waivers_file: Annotated[
        Path | None, typer.Option("--waivers", help="Path to waivers JSON file.")
    ] = None,
    format: Annotated[str, typer.Option(help="Output format: human|json.")] = "human",
) -> None:
    """List waivers and whether each has expired."""
    output_format = _output_format(format)
    path = _waivers_path(repo, waivers_file, None)
    waivers = _load_waivers_or_exit(path)
    now = datetime.now(UTC)

    if output_format == "json":
        payload = {
            "path": str(path),
            "waivers": [
                {**waiver.to_dict(), "expired": is_waiver_expired(waiver, now)}
                for waiver in waivers
            ],
        }
        typer.echo(json.dumps(payload, sort_keys=True))
        return

    if not waivers:
        typer.echo(f"No waivers in {path}")
        return
    lines = [f"Waivers in {path}:"]
    for waiver in waivers:
        match = waiver.match
        target = match.fingerprint or match.rule_id or "?"
        if match.path_pattern:
            target += f" @ {match.path_pattern}"
        status = " [expired]" if is_waiver_expired(waiver, now) else ""
        expires = f", expires {waiver.expires_at}" if waiver.expires_at else ""
        lines.append(f"- {waiver.id}{status}: {target} ({waiver.reason}{expires})")
    typer.echo("\n".join(lines))


@app.command("waivers-add")
def waivers_add_command(
    reason: Annotated[str, typer.Option(help="Why the finding is accepted.")],
    created_by: Annotated[str, typer.Option("--created-by", help="Who approved the waiver.")],
    fingerprint: Annotated[str | None, typer.Option(help="Finding fingerprint to waive.")] = None,
    rule_id: Annotated[
        str | None, typer.Option("--rule-id", help="Rule id, trailing * allowed.")
    ] = None,
    path_pattern: Annotated[
        str | None, typer.Option("--path-pattern", help="Glob limiting a rule-id waiver.")
    ] = None,
    expires: Annotated[str | None, typer.Option(help="ISO-8601 expiry date or time.")] = None,
    ticket: Annotated[str | None, typer.Option(help="Tracking ticket reference.")] = None,
    repo: Annotated[Path, typer.Option(help="Repository path.")] = Path("."),
    waivers_file: Annotated[
        Path | None, typer.Option("--waivers", help="Path to waivers JSON file.")
    ] = None,
) -> None:
    """Add a waiver to the waivers file."""
    path = _waivers_path(repo, waivers_file, None)
    waivers = _load_waivers_or_exit(path)
    try:
        waiver = create_waiver(
            reason=reason,
            created_by=created_by,
            fingerprint=fingerprint,
            rule_id=rule_id,
            path_pattern=path_pattern,
            expires_at=expires,
            ticket_ref=ticket,
        )
        updated = add_waiver(waivers, waiver)
    except WaiverFileError as exc:
        _fail(str(exc))
    _write_waivers(path, updated)
    typer.echo(f"Added waiver {waiver.id} to {path}")


@app.command("waivers-remove")
def waivers_remove_command(
    waiver_id: Annotated[str, typer.Argument(help="Id of the waiver to remove.")],
    repo: Annotated[Path, typer.Option(help="Repository path.")] = Path("."),
    waivers_file: Annotated[
        Path | None, typer.Option("--waivers", help="Path to waivers JSON file.")
    ] = None,
) -> None:
    """Remove a waiver by id."""
    path = _waivers_path(repo, waivers_file, None)
    waivers = _load_waivers_or_exit(path)
    updated = remove_waiver(waivers, waiver_id)
    if len(updated) == len(waivers):
        _fail(f"No waiver with id {waiver_id} in {path}")
    _write_waivers(path, updated)
    typer.echo(f"Removed waiver {waiver_id} from {path}")


@app.command("verify-determinism")
def verify_determinism_command(
    artifact_path: Annotated[Path, typer.Argument(help="Scan artifact JSON file.")],
    runs: Annotated[int, typer.Option(min=2, help="Number of repeated runs.")] = 3,
    baseline: Annotated[Path | None, typer.Option(help="Baseline artifact.")] = None,
    profile: Annotated[str | None, typer.Option(help="Policy profile.")] = None,
    config_file: Annotated[
        Path | None,
        typer.Option("--config", help="Path to policy config (TOML or JSON)."),
    ] = None,
    waivers_file: Annotated[
        Path | None, typer.Option("--waivers", help="Path to waivers JSON file.")
    ] = None,
    repo: Annotated[
        Path | None, typer.Option(help="Also trace this repository on every run.")
    ] = None,
    format: Annotated[str, typer.Option(help="Output format: human|json.")] = "human",
) -> None:
    """Run evaluation repeatedly and compare output hashes."""
    output_format = _output_format(format)
    config_repo = repo or Path(".")
    policy = _load_policy_or_exit(config_repo, config_file, profile)
    waivers = _load_waivers_or_exit(_waivers_path(config_repo, waivers_file, policy))
    now = datetime.now(UTC)

    report_hashes: list[str] = []
    trace_hashes: list[str] = []
    for _ in range(runs):
        report = _evaluate(artifact_path, baseline, policy, waivers, now=now)
        report_hashes.append(hash_content(render_json(report)))
        if repo is not None:
            trace_json = _trace_output(repo.resolve(), "json", None, CancelToken())
            trace_hashes.append(hash_content(trace_json))

    deterministic = len(set(report_hashes)) == 1 and len(set(trace_hashes)) <= 1
    if output_format == "json":
        payload = {
            "deterministic": deterministic,
            "runs": runs,
            "reportHashes": report_hashes,
            "traceHashes": trace_hashes,
        }
        typer.echo(json.dumps(payload, sort_keys=True))
    else:
        verdict = "deterministic" if deterministic else "NOT deterministic"
        lines = [f"Output is {verdict} across {runs} runs."]
        for index, digest in enumerate(report_hashes, start=1):
            lines.append(f"- report run {index}: {digest}")
        for index, digest in enumerate(trace_hashes, start=1):
            lines.append(f"- trace run {index}: {digest}")
        typer.echo("\n".join(lines))
    if not deterministic:
        raise typer.Exit(code=1)


def main() -> None:
    """Console script entrypoint."""
    app()


def _fail(message: str) -> NoReturn:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=ERROR_EXIT_CODE)


def _output_format(value: str) -> str:
    output_format = value.lower()
    if output_format not in {"human", "json"}:
        raise typer.BadParameter("format must be one of: human, json", param_hint="--format")
    return output_format


def _load_policy_or_exit(
    repo: Path, config_file: Path | None, profile: str | None
) -> PolicyConfig:
    try:
        return load_policy_config(repo, config_path=config_file, profile=profile)
    except PolicyConfigError as exc:
        _fail(str(exc))


def _load_artifact_or_exit(path: Path) -> ScanArtifact:
    try:
        return load_artifact(path)
    except ArtifactValidationError as exc:
        _fail("\n".join(exc.issues) or str(exc))


def _waivers_path(repo: Path, explicit: Path | None, policy: PolicyConfig | None) -> Path:
    if explicit is not None:
        return explicit
    if policy is None:
        policy = _load_policy_or_exit(repo, None, None)
    if policy.waivers_path:
        return repo / policy.waivers_path
    return repo / DEFAULT_WAIVERS_FILENAME


def _load_waivers_or_exit(path: Path) -> list[Waiver]:
    try:
        return load_waivers(path)
    except WaiverFileError as exc:
        _fail(str(exc))


def _write_waivers(path: Path, waivers: list[Waiver]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_waivers(waivers), encoding="utf-8")


def _evaluate(
    artifact_path: Path,
    baseline_path: Path | None,
    policy: PolicyConfig,
    waivers: list[Waiver],
    now: datetime | None = None,
) -> PolicyReport:
    artifact = _load_artifact_or_exit(artifact_path)
    baseline = _load_artifact_or_exit(baseline_path) if baseline_path is not None else None
    return evaluate(
        artifact,
        baseline,
        policy,
        waivers=waivers,
        now=now,
        artifact_path=str(artifact_path),
    )


def _trace_output(
    repo_root: Path,
    output_format: str,
    workers: int | None,
    token: CancelToken,
) -> str:
    cache = ParseCache(repo_root, cancel=token)
    routes = discover_routes(cache)
    middleware = discover_middleware(cache)
    traces = build_all_proof_traces(
        routes, cache, middleware, max_workers=workers, cancel=token
    )
    coverage = calculate_coverage(routes, traces, middleware)
    logger.debug(
        "Traced %d routes with %d parses under %s", len(routes), cache.parse_count, repo_root
    )
    if output_format == "json":
        return render_traces_json(traces, routes, coverage, middleware)
    return render_traces_human(traces, routes, coverage)
