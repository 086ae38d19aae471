"""Rule-pack runner.

Rule packs are independent detectors over parsed source. This module only
schedules them over a shared parse cache and normalizes what they emit.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from pathlib import Path
from typing import Protocol

from proofgate.artifact import sort_findings
from proofgate.fingerprint import fingerprint
from proofgate.models import Finding
from proofgate.source import CancelToken, ParseCache, ParsedSource

logger = logging.getLogger(__name__)


class RulePack(Protocol):
    """Protocol for source-scanning rule packs."""

    pack_id: str

    def scan(self, parsed: ParsedSource) -> list[Finding]:
        """Scan one parsed file and return raw findings."""


def run_rule_packs(
    packs: Sequence[RulePack],
    paths: Iterable[Path],
    cache: ParseCache,
    *,
    max_workers: int | None = None,
    cancel: CancelToken | None = None,
) -> list[Finding]:
    """Run every pack over every parseable file and return sorted findings."""
    path_list = list(paths)
    if not packs or not path_list:
        return []
    token = cancel or cache.cancel
    workers = max_workers or min(len(path_list), os.cpu_count() or 1)

    def task(path: Path) -> list[Finding]:
        if token is not None:
            token.raise_if_cancelled()
        parsed = cache.parse(path)
        if parsed is None:
            return []
        found: list[Finding] = []
        for pack in packs:
            try:
                found.extend(pack.scan(parsed))
            except Exception:
                logger.warning(
                    "Rule pack %s failed on %s", pack.pack_id, parsed.rel_path, exc_info=True
                )
        return found

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="proofgate-pack")
    try:
        futures: list[Future[list[Finding]]] = [executor.submit(task, path) for path in path_list]
        findings = [finding for future in futures for finding in future.result()]
    except BaseException:
        executor.shutdown(wait=True, cancel_futures=True)
        raise
    executor.shutdown(wait=True)
    return sort_findings(assign_identity(findings))


def assign_identity(findings: Iterable[Finding]) -> list[Finding]:
    """Fill in missing fingerprints and ids from each finding's stable subject."""
    output: list[Finding] = []
    for finding in findings:
        if finding.fingerprint and finding.id:
            output.append(finding)
            continue
        symbol = None
        if finding.correlation_data is not None:
            raw_symbol = finding.correlation_data.get("symbol")
            symbol = raw_symbol if isinstance(raw_symbol, str) else None
        start_line = finding.primary_line or None
        digest = finding.fingerprint or fingerprint(
            finding.rule_id, finding.primary_file, symbol=symbol, start_line=start_line
        )
        output.append(
            replace(
                finding,
                fingerprint=digest,
                id=finding.id or f"{finding.rule_id.lower()}-{digest[:8]}",
            )
        )
    return output
