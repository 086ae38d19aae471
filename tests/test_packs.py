"""Rule-pack runner."""

from __future__ import annotations

from pathlib import Path

import pytest

from proofgate.fingerprint import fingerprint
from proofgate.models import EvidenceItem, Finding, Remediation
from proofgate.packs import assign_identity, run_rule_packs
from proofgate.source import CancelToken, ParseCache, ParsedSource, ScanCancelledError, walk
from tests.helpers_artifacts import write_tree


class ConsoleLogPack:
    """Flags every console.log call."""

    pack_id = "console"

    def scan(self, parsed: ParsedSource) -> list[Finding]:
        findings = []
        for node in walk(parsed.root):
            if node.type != "call_expression":
                continue
            if parsed.node_text(node.child_by_field_name("function")) != "console.log":
                continue
            line = parsed.line_of(node)
            findings.append(
                Finding(
                    id="",
                    fingerprint="",
                    rule_id="VC-LOG-001",
                    severity="low",
                    confidence=0.8,
                    category="privacy",
                    title="console.log in server code",
                    evidence=(
                        EvidenceItem(
                            file=parsed.rel_path, start_line=line, end_line=line, label="call"
                        ),
                    ),
                    remediation=Remediation(recommended_fix="Use the logger."),
                )
            )
        return findings


class ExplodingPack:
    pack_id = "exploding"

    def scan(self, parsed: ParsedSource) -> list[Finding]:
        raise RuntimeError(f"cannot scan {parsed.rel_path}")


def test_runner_assigns_identity_sorts_and_survives_pack_crashes(tmp_path: Path) -> None:
    files = {
        "app/a.ts": "console.log(1);\nconsole.log(2);\n",
        "app/b.ts": "export const x = 1;\nconsole.log(x);\n",
        "notes.md": "console.log(3)\n",
    }
    write_tree(tmp_path, files)
    paths = [tmp_path / name for name in files]

    serial = run_rule_packs(
        [ExplodingPack(), ConsoleLogPack()], paths, ParseCache(tmp_path), max_workers=1
    )
    parallel = run_rule_packs(
        [ConsoleLogPack(), ExplodingPack()], reversed(paths), ParseCache(tmp_path), max_workers=4
    )

    assert serial == parallel
    assert len(serial) == 3
    assert [item.fingerprint for item in serial] == sorted(item.fingerprint for item in serial)
    first = next(item for item in serial if item.primary_file == "app/b.ts")
    assert first.fingerprint == fingerprint("VC-LOG-001", "app/b.ts", start_line=2)
    assert first.id == f"vc-log-001-{first.fingerprint[:8]}"


def test_existing_identity_is_kept_and_symbol_is_used() -> None:
    kept = _finding(fingerprint_value="abc", finding_id="given")
    with_symbol = _finding(correlation={"symbol": "POST"})

    result = assign_identity([kept, with_symbol])

    assert result[0] is kept
    assert result[1].fingerprint == fingerprint(
        "VC-LOG-001", "app/a.ts", symbol="POST", start_line=4
    )


def test_no_packs_or_no_paths_is_empty(tmp_path: Path) -> None:
    assert run_rule_packs([], [tmp_path / "a.ts"], ParseCache(tmp_path)) == []
    assert run_rule_packs([ConsoleLogPack()], [], ParseCache(tmp_path)) == []


def test_cancelled_runner_raises(tmp_path: Path) -> None:
    write_tree(tmp_path, {"a.ts": "console.log(1);\n"})
    token = CancelToken()
    token.cancel()
    with pytest.raises(ScanCancelledError):
        run_rule_packs([ConsoleLogPack()], [tmp_path / "a.ts"], ParseCache(tmp_path), cancel=token)


def _finding(
    *,
    fingerprint_value: str = "",
    finding_id: str = "",
    correlation: dict | None = None,
) -> Finding:
    return Finding(
        id=finding_id,
        fingerprint=fingerprint_value,
        rule_id="VC-LOG-001",
        severity="low",
        confidence=0.5,
        category="privacy",
        title="t",
        evidence=(EvidenceItem(file="app/a.ts", start_line=4, end_line=4, label="x"),),
        remediation=Remediation(recommended_fix="fix"),
        correlation_data=correlation,
    )
