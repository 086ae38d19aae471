"""Policy configuration: profiles, thresholds, overrides and regression policy."""

from __future__ import annotations

import json
import math
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from proofgate.models import CATEGORIES
from proofgate.severity import SEVERITY_LEVELS

CONFIG_FILENAMES = (".proofgate.toml", "proofgate.toml")
PYPROJECT_FILENAME = "pyproject.toml"
PYPROJECT_TOOL_KEYS = ("proofgate",)

OVERRIDE_ACTIONS = ("ignore", "downgrade", "upgrade", "warn-only", "fail")
DEFAULT_PROFILE = "startup"
PROFILE_NAMES = ("startup", "strict", "compliance-lite")
PROFILE_DESCRIPTIONS = {
    "startup": "Balanced for early-stage projects. Fails on critical, warns on high.",
    "strict": "Production-ready. Fails on high/critical, warns on medium.",
    "compliance-lite": "Compliance-focused. Stricter count limits, higher confidence thresholds.",
}


class PolicyConfigError(ValueError):
    """Raised when a policy configuration is rejected before evaluation."""


@dataclass(frozen=True, slots=True)
class Thresholds:
    fail_on_severity: str = "high"
    warn_on_severity: str = "medium"
    min_confidence_for_fail: float = 0.7
    min_confidence_for_warn: float = 0.5
    min_confidence_critical: float = 0.5
    max_findings: int = 0
    max_critical: int = 0
    max_high: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "failOnSeverity": self.fail_on_severity,
            "warnOnSeverity": self.warn_on_severity,
            "minConfidenceForFail": self.min_confidence_for_fail,
            "minConfidenceForWarn": self.min_confidence_for_warn,
            "minConfidenceCritical": self.min_confidence_critical,
            "maxFindings": self.max_findings,
            "maxCritical": self.max_critical,
            "maxHigh": self.max_high,
        }


@dataclass(frozen=True, slots=True)
class Override:
    """Per-rule or per-category policy adjustment. First match wins."""

    action: str
    rule_id: str | None = None
    category: str | None = None
    path_pattern: str | None = None
    severity: str | None = None
    comment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"action": self.action}
        for key, value in (
            ("ruleId", self.rule_id),
            ("category", self.category),
            ("pathPattern", self.path_pattern),
            ("severity", self.severity),
            ("comment", self.comment),
        ):
            if value is not None:
                payload[key] = value
        return payload


@dataclass(frozen=True, slots=True)
class RegressionPolicy:
    fail_on_new_high_critical: bool = True
    fail_on_severity_regression: bool = False
    fail_on_net_increase: bool = False
    warn_on_new_findings: bool = True
    fail_on_protection_removed: bool = False
    warn_on_protection_removed: bool = True
    fail_on_semantic_regression: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "failOnNewHighCritical": self.fail_on_new_high_critical,
            "failOnSeverityRegression": self.fail_on_severity_regression,
            "failOnNetIncrease": self.fail_on_net_increase,
            "warnOnNewFindings": self.warn_on_new_findings,
            "failOnProtectionRemoved": self.fail_on_protection_removed,
            "warnOnProtectionRemoved": self.warn_on_protection_removed,
            "failOnSemanticRegression": self.fail_on_semantic_regression,
        }


@dataclass(frozen=True, slots=True)
class PolicyConfig:
    """Resolved policy: a profile with user settings merged on top."""

    profile: str | None = DEFAULT_PROFILE
    thresholds: Thresholds = field(default_factory=Thresholds)
    overrides: tuple[Override, ...] = ()
    regression: RegressionPolicy = field(default_factory=RegressionPolicy)
    waivers_path: str | None = None
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile": self.profile,
            "thresholds": self.thresholds.to_dict(),
            "overrides": [item.to_dict() for item in self.overrides],
            "regression": self.regression.to_dict(),
            "waiversPath": self.waivers_path,
            "source": self.source,
        }


_PROFILES: dict[str, PolicyConfig] = {
    "startup": PolicyConfig(
        profile="startup",
        thresholds=Thresholds(
            fail_on_severity="critical",
            warn_on_severity="high",
            min_confidence_for_fail=0.7,
            min_confidence_for_warn=0.5,
            min_confidence_critical=0.5,
        ),
        regression=RegressionPolicy(
            fail_on_new_high_critical=True,
            fail_on_severity_regression=False,
            fail_on_net_increase=False,
            warn_on_new_findings=True,
        ),
    ),
    "strict": PolicyConfig(
        profile="strict",
        thresholds=Thresholds(
            fail_on_severity="high",
            warn_on_severity="medium",
            min_confidence_for_fail=0.6,
            min_confidence_for_warn=0.4,
            min_confidence_critical=0.4,
        ),
        regression=RegressionPolicy(
            fail_on_new_high_critical=True,
            fail_on_severity_regression=True,
            fail_on_net_increase=False,
            warn_on_new_findings=True,
        ),
    ),
    "compliance-lite": PolicyConfig(
        profile="compliance-lite",
        thresholds=Thresholds(
            fail_on_severity="high",
            warn_on_severity="medium",
            min_confidence_for_fail=0.8,
            min_confidence_for_warn=0.6,
            min_confidence_critical=0.6,
            max_findings=50,
            max_critical=0,
            max_high=5,
        ),
        regression=RegressionPolicy(
            fail_on_new_high_critical=True,
            fail_on_severity_regression=True,
            fail_on_net_increase=True,
            warn_on_new_findings=True,
        ),
    ),
}

_THRESHOLD_KEYS = {
    "fail_on_severity": "failOnSeverity",
    "warn_on_severity": "warnOnSeverity",
    "min_confidence_for_fail": "minConfidenceForFail",
    "min_confidence_for_warn": "minConfidenceForWarn",
    "min_confidence_critical": "minConfidenceCritical",
    "max_findings": "maxFindings",
    "max_critical": "maxCritical",
    "max_high": "maxHigh",
}
_REGRESSION_KEYS = {
    "fail_on_new_high_critical": "failOnNewHighCritical",
    "fail_on_severity_regression": "failOnSeverityRegression",
    "fail_on_net_increase": "failOnNetIncrease",
    "warn_on_new_findings": "warnOnNewFindings",
    "fail_on_protection_removed": "failOnProtectionRemoved",
    "warn_on_protection_removed": "warnOnProtectionRemoved",
    "fail_on_semantic_regression": "failOnSemanticRegression",
}
_OVERRIDE_KEYS = {
    "action": "action",
    "rule_id": "ruleId",
    "category": "category",
    "path_pattern": "pathPattern",
    "severity": "severity",
    "comment": "comment",
}
_TOP_LEVEL_KEYS = {
    "profile": "profile",
    "thresholds": "thresholds",
    "overrides": "overrides",
    "regression": "regression",
    "waivers_path": "waiversPath",
}


def get_profile(name: str) -> PolicyConfig:
    try:
        return _PROFILES[name]
    except KeyError:
        choices = ", ".join(PROFILE_NAMES)
        raise PolicyConfigError(f"Unknown profile '{name}'. Expected one of: {choices}") from None


def merge_configs(
    profile: PolicyConfig,
    mapping: dict[str, Any],
    *,
    source: str | None = None,
) -> PolicyConfig:
    """Merge a user mapping onto a profile, validating everything it touches.

    Thresholds and regression keys replace the profile's values one by one;
    user overrides are appended after the profile's own overrides.
    """
    try:
        return _merge(profile, mapping, source)
    except PolicyConfigError:
        raise
    except ValueError as exc:
        raise PolicyConfigError(str(exc)) from exc


def load_policy_config(
    repo: Path,
    config_path: Path | None = None,
    profile: str | None = None,
) -> PolicyConfig:
    """Resolve policy config from an explicit file or repository-local files.

    ``profile`` (e.g. from the command line) wins over a profile named in the
    file; the file's thresholds and overrides still apply on top of it.
    """
    repo = repo.resolve()
    mapping: dict[str, Any] = {}
    source: str | None = None

    if config_path is not None:
        resolved = config_path if config_path.is_absolute() else (repo / config_path)
        if not resolved.exists():
            raise PolicyConfigError(f"Config file does not exist: {resolved}")
        mapping = _extract_config_mapping(_load_file(resolved), source_path=resolved)
        source = str(resolved)
    else:
        for filename in CONFIG_FILENAMES:
            resolved = repo / filename
            if resolved.exists():
                mapping = _extract_config_mapping(_load_file(resolved), source_path=resolved)
                source = str(resolved)
                break
        else:
            pyproject_path = repo / PYPROJECT_FILENAME
            if pyproject_path.exists():
                mapping = _extract_config_mapping(
                    _load_file(pyproject_path), source_path=pyproject_path
                )
                if mapping:
                    source = str(pyproject_path)

    mapping = _normalize_keys(mapping, _TOP_LEVEL_KEYS, "config")
    base_name = profile or _as_optional_str(mapping.get("profile"), "profile") or DEFAULT_PROFILE
    if profile is not None:
        mapping = {**mapping, "profile": profile}
    return merge_configs(get_profile(base_name), mapping, source=source)


def default_config_template() -> str:
    """Return a starter config users can customize."""
    return "\n".join(
        [
            '# Profile presets: "startup", "strict", "compliance-lite"',
            'profile = "startup"',
            'waivers_path = "proofgate-waivers.json"',
            "",
            "[thresholds]",
            'fail_on_severity = "critical"',
            'warn_on_severity = "high"',
            "min_confidence_for_fail = 0.7",
            "min_confidence_for_warn = 0.5",
            "min_confidence_critical = 0.5",
            "# 0 disables a count limit",
            "max_findings = 0",
            "max_critical = 0",
            "max_high = 0",
            "",
            "[regression]",
            "fail_on_new_high_critical = true",
            "fail_on_severity_regression = false",
            "fail_on_net_increase = false",
            "warn_on_new_findings = true",
            "fail_on_protection_removed = false",
            "warn_on_protection_removed = true",
            "fail_on_semantic_regression = false",
            "",
            "# Overrides are checked in order; the first match wins.",
            "# [[overrides]]",
            '# rule_id = "VC-AUTH-*"',
            '# path_pattern = "app/api/internal/**"',
            '# action = "downgrade"',
            '# severity = "low"',
            '# comment = "internal endpoints sit behind the VPN"',
            "",
        ]
    )


def _merge(profile: PolicyConfig, mapping: dict[str, Any], source: str | None) -> PolicyConfig:
    mapping = _normalize_keys(mapping, _TOP_LEVEL_KEYS, "config")
    name = _as_optional_str(mapping.get("profile"), "profile")
    if name is not None and name != profile.profile:
        profile = get_profile(name)

    thresholds_raw = _normalize_keys(
        _as_table(mapping.get("thresholds"), "thresholds"), _THRESHOLD_KEYS, "thresholds"
    )
    regression_raw = _normalize_keys(
        _as_table(mapping.get("regression"), "regression"), _REGRESSION_KEYS, "regression"
    )
    overrides_raw = _as_table_list(mapping.get("overrides"), "overrides")

    thresholds = replace(profile.thresholds, **_parse_thresholds(thresholds_raw))
    regression = replace(
        profile.regression,
        **{key: _as_bool(value, f"regression.{key}") for key, value in regression_raw.items()},
    )
    overrides = profile.overrides + tuple(
        _parse_override(item, f"overrides[{index}]") for index, item in enumerate(overrides_raw)
    )

    return PolicyConfig(
        profile=name or profile.profile,
        thresholds=thresholds,
        overrides=overrides,
        regression=regression,
        waivers_path=(
            _as_optional_str(mapping.get("waivers_path"), "waivers_path") or profile.waivers_path
        ),
        source=source or profile.source,
    )


def _parse_thresholds(raw: dict[str, Any]) -> dict[str, Any]:
    parsed: dict[str, Any] = {}
    for key, value in raw.items():
        field_name = f"thresholds.{key}"
        if key in {"fail_on_severity", "warn_on_severity"}:
            parsed[key] = _as_choice(value, set(SEVERITY_LEVELS), field_name)
        elif key.startswith("min_confidence"):
            parsed[key] = _as_confidence(value, field_name)
        else:
            count = _as_int(value, field_name)
            if count < 0:
                raise PolicyConfigError(f"{field_name} must be >= 0")
            parsed[key] = count
    return parsed


def _parse_override(raw: dict[str, Any], field_name: str) -> Override:
    item = _normalize_keys(raw, _OVERRIDE_KEYS, field_name)
    action = _as_choice(item.get("action"), set(OVERRIDE_ACTIONS), f"{field_name}.action")
    rule_id = _as_optional_str(item.get("rule_id"), f"{field_name}.rule_id")
    category = _as_optional_str(item.get("category"), f"{field_name}.category")
    if category is not None and category not in CATEGORIES:
        raise PolicyConfigError(f"{field_name}.category: unknown category '{category}'")
    if not rule_id and not category:
        raise PolicyConfigError(f"{field_name} must specify rule_id or category")
    severity = item.get("severity")
    if severity is not None:
        severity = _as_choice(severity, set(SEVERITY_LEVELS), f"{field_name}.severity")
    return Override(
        action=action,
        rule_id=rule_id,
        category=category,
        path_pattern=_as_optional_str(item.get("path_pattern"), f"{field_name}.path_pattern"),
        severity=severity,
        comment=_as_optional_str(item.get("comment"), f"{field_name}.comment"),
    )


def _normalize_keys(raw: dict[str, Any], keys: dict[str, str], field_name: str) -> dict[str, Any]:
    """Accept snake_case or camelCase keys; reject anything else."""
    by_camel = {camel: snake for snake, camel in keys.items()}
    normalized: dict[str, Any] = {}
    for key, value in raw.items():
        snake = key if key in keys else by_camel.get(key)
        if snake is None:
            raise PolicyConfigError(f"{field_name}: unknown key '{key}'")
        normalized[snake] = value
    return normalized


def _load_file(path: Path) -> dict[str, Any]:
    if path.suffix == ".json":
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            message = f"Invalid JSON in {path}: {exc.msg} (line {exc.lineno})"
            raise PolicyConfigError(message) from exc
    else:
        try:
            with path.open("rb") as file_obj:
                loaded = tomllib.load(file_obj)
        except tomllib.TOMLDecodeError as exc:
            raise PolicyConfigError(f"Invalid TOML in {path}: {exc}") from exc
    if not isinstance(loaded, dict):
        return {}
    return loaded


def _extract_config_mapping(loaded: dict[str, Any], *, source_path: Path) -> dict[str, Any]:
    if source_path.name == PYPROJECT_FILENAME:
        section = _find_pyproject_tool_section(loaded)
        return section if section is not None else {}

    tool_section = _find_pyproject_tool_section(loaded)
    if tool_section is not None:
        return tool_section

    # {"policy": {...}, "waiversPath": ...} nests the policy one level down.
    policy = loaded.get("policy")
    if isinstance(policy, dict):
        flattened = dict(policy)
        for key in ("waiversPath", "waivers_path"):
            if key in loaded:
                flattened[key] = loaded[key]
        return flattened
    return loaded


def _find_pyproject_tool_section(loaded: dict[str, Any]) -> dict[str, Any] | None:
    tool = loaded.get("tool")
    if not isinstance(tool, dict):
        return None
    for key in PYPROJECT_TOOL_KEYS:
        section = tool.get(key)
        if isinstance(section, dict):
            return section
    return None


def _as_table(value: Any, field_name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise PolicyConfigError(f"{field_name} must be a table/object")
    return value


def _as_table_list(value: Any, field_name: str) -> list[dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise PolicyConfigError(f"{field_name} must be a list of tables")
    output: list[dict[str, Any]] = []
    for item in value:
        if not isinstance(item, dict):
            raise PolicyConfigError(f"{field_name} must be a list of tables")
        output.append(item)
    return output


def _as_optional_str(value: Any, field_name: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise PolicyConfigError(f"{field_name} must be a string")
    return value


def _as_choice(raw: Any, allowed: set[str], field_name: str) -> str:
    value = str(raw).lower()
    if value not in allowed:
        choices = ", ".join(sorted(allowed))
        raise PolicyConfigError(f"{field_name} must be one of: {choices}")
    return value


def _as_int(raw: Any, field_name: str) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise PolicyConfigError(f"{field_name} must be an integer")
    return raw


def _as_bool(raw: Any, field_name: str) -> bool:
    if not isinstance(raw, bool):
        raise PolicyConfigError(f"{field_name} must be a boolean")
    return raw


def _as_confidence(raw: Any, field_name: str) -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise PolicyConfigError(f"{field_name} must be a number")
    value = float(raw)
    if math.isnan(value) or not 0.0 <= value <= 1.0:
        raise PolicyConfigError(f"{field_name} must be between 0 and 1")
    return value
