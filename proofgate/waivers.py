"""Waivers: time-boxed suppression rules applied before policy evaluation."""

from __future__ import annotations

import fnmatch
import json
import secrets
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from proofgate.models import Finding

WAIVERS_FILE_VERSION = "0.1"
DEFAULT_WAIVERS_FILENAME = "proofgate-waivers.json"


class WaiverFileError(ValueError):
    """Raised when a waivers file cannot be read or is malformed."""


@dataclass(frozen=True, slots=True)
class WaiverMatch:
    fingerprint: str | None = None
    rule_id: str | None = None
    path_pattern: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.fingerprint is not None:
            payload["fingerprint"] = self.fingerprint
        if self.rule_id is not None:
            payload["ruleId"] = self.rule_id
        if self.path_pattern is not None:
            payload["pathPattern"] = self.path_pattern
        return payload


@dataclass(frozen=True, slots=True)
class Waiver:
    id: str
    match: WaiverMatch
    reason: str
    created_by: str
    created_at: str
    expires_at: str | None = None
    ticket_ref: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "match": self.match.to_dict(),
            "reason": self.reason,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
        }
        if self.expires_at is not None:
            payload["expiresAt"] = self.expires_at
        if self.ticket_ref is not None:
            payload["ticketRef"] = self.ticket_ref
        return payload


@dataclass(frozen=True, slots=True)
class WaivedFinding:
    finding: Finding
    waiver: Waiver
    expired: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "finding": {
                "id": self.finding.id,
                "fingerprint": self.finding.fingerprint,
                "ruleId": self.finding.rule_id,
                "severity": self.finding.severity,
                "title": self.finding.title,
            },
            "waiver": self.waiver.to_dict(),
            "expired": self.expired,
        }


@dataclass(slots=True)
class WaiverResult:
    active_findings: list[Finding] = field(default_factory=list)
    waived_findings: list[WaivedFinding] = field(default_factory=list)


def match_rule_id(rule_id: str, pattern: str) -> bool:
    """Exact match, or prefix match when the pattern ends with ``*``."""
    if pattern.endswith("*"):
        return rule_id.startswith(pattern[:-1])
    return rule_id == pattern


def match_path_pattern(paths: Iterable[str], pattern: str) -> bool:
    root_pattern = pattern[3:] if pattern.startswith("**/") else None
    for path in paths:
        if fnmatch.fnmatch(path, pattern):
            return True
        if root_pattern is not None and fnmatch.fnmatch(path, root_pattern):
            return True
    return False


def is_waiver_expired(waiver: Waiver, now: datetime | None = None) -> bool:
    if waiver.expires_at is None:
        return False
    current = now or datetime.now(UTC)
    return parse_timestamp(waiver.expires_at) < _aware(current)


def match_waiver(waiver: Waiver, finding: Finding) -> bool:
    """Structural match, ignoring expiry."""
    match = waiver.match
    if match.fingerprint and match.fingerprint == finding.fingerprint:
        return True
    if not match.rule_id or not match_rule_id(finding.rule_id, match.rule_id):
        return False
    if match.path_pattern:
        return match_path_pattern(finding.evidence_paths, match.path_pattern)
    return True


def find_matching_waiver(
    finding: Finding,
    waivers: Sequence[Waiver],
    now: datetime | None = None,
    include_expired: bool = False,
) -> tuple[Waiver, bool] | None:
    """Return ``(waiver, expired)`` for the first usable match, or None.

    Expired waivers are skipped unless ``include_expired`` is set, so an
    expired entry never shadows a valid one further down the list.
    """
    current = now or datetime.now(UTC)
    for waiver in waivers:
        if not match_waiver(waiver, finding):
            continue
        expired = is_waiver_expired(waiver, current)
        if expired and not include_expired:
            continue
        return waiver, expired
    return None


def apply_waivers(
    findings: Iterable[Finding],
    waivers: Sequence[Waiver],
    now: datetime | None = None,
    include_expired: bool = False,
) -> WaiverResult:
    """Split findings into active and waived, preserving input order."""
    current = now or datetime.now(UTC)
    result = WaiverResult()
    for finding in findings:
        matched = find_matching_waiver(finding, waivers, current, include_expired)
        if matched is None:
            result.active_findings.append(finding)
            continue
        waiver, expired = matched
        result.waived_findings.append(
            WaivedFinding(finding=finding, waiver=waiver, expired=expired)
        )
    return result


def parse_waivers_file(data: Any) -> list[Waiver]:
    if not isinstance(data, dict):
        raise WaiverFileError("Waivers file must be a JSON object")
    version = data.get("version", WAIVERS_FILE_VERSION)
    if version != WAIVERS_FILE_VERSION:
        raise WaiverFileError(f"Unsupported waivers file version: {version!r}")
    raw_waivers = data.get("waivers")
    if not isinstance(raw_waivers, list):
        raise WaiverFileError("waivers must be a list")
    waivers = [_parse_waiver(item, index) for index, item in enumerate(raw_waivers)]
    seen: set[str] = set()
    for waiver in waivers:
        if waiver.id in seen:
            raise WaiverFileError(f"Duplicate waiver id: {waiver.id}")
        seen.add(waiver.id)
    return waivers


def load_waivers(path: Path) -> list[Waiver]:
    """Load a waivers file; a missing file means no waivers."""
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise WaiverFileError(f"Could not read waivers file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise WaiverFileError(f"Invalid JSON in {path}: {exc.msg} (line {exc.lineno})") from exc
    return parse_waivers_file(data)


def dump_waivers(waivers: Iterable[Waiver]) -> str:
    payload = {"version": WAIVERS_FILE_VERSION, "waivers": [waiver.to_dict() for waiver in waivers]}
    return json.dumps(payload, indent=2) + "\n"


def generate_waiver_id(now: datetime | None = None) -> str:
    current = now or datetime.now(UTC)
    stamp = _base36(int(_aware(current).timestamp() * 1000))
    return f"w-{stamp}-{secrets.token_hex(3)}"


def create_waiver(
    *,
    reason: str,
    created_by: str,
    fingerprint: str | None = None,
    rule_id: str | None = None,
    path_pattern: str | None = None,
    expires_at: str | None = None,
    ticket_ref: str | None = None,
    now: datetime | None = None,
) -> Waiver:
    if not fingerprint and not rule_id:
        raise WaiverFileError("A waiver must match a fingerprint or a rule id")
    if expires_at is not None:
        parse_timestamp(expires_at)
    current = _aware(now or datetime.now(UTC))
    return Waiver(
        id=generate_waiver_id(current),
        match=WaiverMatch(fingerprint=fingerprint, rule_id=rule_id, path_pattern=path_pattern),
        reason=reason,
        created_by=created_by,
        created_at=current.isoformat().replace("+00:00", "Z"),
        expires_at=expires_at,
        ticket_ref=ticket_ref,
    )


def add_waiver(waivers: Sequence[Waiver], waiver: Waiver) -> list[Waiver]:
    if any(existing.id == waiver.id for existing in waivers):
        raise WaiverFileError(f"Duplicate waiver id: {waiver.id}")
    return [*waivers, waiver]


def remove_waiver(waivers: Sequence[Waiver], waiver_id: str) -> list[Waiver]:
    return [waiver for waiver in waivers if waiver.id != waiver_id]


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 date or datetime; naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise WaiverFileError(f"Invalid timestamp: {value!r}") from exc
    return _aware(parsed)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _parse_waiver(raw: Any, index: int) -> Waiver:
    where = f"waivers[{index}]"
    if not isinstance(raw, dict):
        raise WaiverFileError(f"{where} must be an object")
    raw_match = raw.get("match")
    if not isinstance(raw_match, dict):
        raise WaiverFileError(f"{where}.match must be an object")
    match = WaiverMatch(
        fingerprint=_optional_str(raw_match.get("fingerprint"), f"{where}.match.fingerprint"),
        rule_id=_optional_str(raw_match.get("ruleId"), f"{where}.match.ruleId"),
        path_pattern=_optional_str(raw_match.get("pathPattern"), f"{where}.match.pathPattern"),
    )
    if not match.fingerprint and not match.rule_id:
        raise WaiverFileError(f"{where}.match must specify fingerprint or ruleId")

    expires_at = _optional_str(raw.get("expiresAt"), f"{where}.expiresAt")
    if expires_at is not None:
        parse_timestamp(expires_at)

    return Waiver(
        id=_required_str(raw.get("id"), f"{where}.id"),
        match=match,
        reason=_required_str(raw.get("reason"), f"{where}.reason"),
        created_by=_required_str(raw.get("createdBy"), f"{where}.createdBy"),
        created_at=_required_str(raw.get("createdAt"), f"{where}.createdAt"),
        expires_at=expires_at,
        ticket_ref=_optional_str(raw.get("ticketRef"), f"{where}.ticketRef"),
    )


def _required_str(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value:
        raise WaiverFileError(f"{field_name} must be a non-empty string")
    return value


def _optional_str(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise WaiverFileError(f"{field_name} must be a string")
    return value


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    output = []
    while number:
        number, remainder = divmod(number, 36)
        output.append(digits[remainder])
    return "".join(reversed(output))
