"""Pattern tables for auth and validation call shapes.

Everything here works on plain strings so the heuristics can be tested
without touching the filesystem or the parser.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

AUTH_CHECK_PATTERNS: tuple[str, ...] = (
    "getServerSession",
    "getSession",
    "auth",
    "requireAuth",
    "withAuth",
    "verifyJwt",
    "verifyToken",
    "authenticate",
    "isAuthenticated",
    "checkAuth",
    "validateSession",
    "getToken",
    "verifyAuth",
)

BARE_AUTH = "auth"

HEADER_CHECK_RE = re.compile(r"request\.headers|req\.headers|headers\.get", re.IGNORECASE)
UNAUTHORIZED_RE = re.compile(r"401|403|unauthorized|unauthenticated", re.IGNORECASE)

ZOD_CALLEE_RE = re.compile(r"\.(?:safeParse|parse)(?:Async)?$")
VALIDATE_CALLEE_RE = re.compile(r"\.validate(?:Sync)?$")
JOI_TEXT_RE = re.compile(r"joi", re.IGNORECASE)
YUP_TEXT_RE = re.compile(r"yup|schema", re.IGNORECASE)
NON_SCHEMA_RECEIVERS = frozenset({"JSON", "Date", "URL", "qs", "querystring", "path"})


def has_auth_pattern(text: str) -> bool:
    return any(pattern in text for pattern in AUTH_CHECK_PATTERNS)


def is_auth_callee(callee: str) -> bool:
    # Bare "auth" must be a whole member name; "author" is not an auth check.
    if BARE_AUTH in callee.split("."):
        return True
    return any(pattern in callee for pattern in AUTH_CHECK_PATTERNS if pattern != BARE_AUTH)


def auth_callee(callees: Iterable[str]) -> str | None:
    """First callee that looks like an auth check, in the given order."""
    for callee in callees:
        if is_auth_callee(callee):
            return callee
    return None


def is_header_auth_check(function_text: str) -> bool:
    """Manual header inspection paired with an unauthorized response."""
    return bool(HEADER_CHECK_RE.search(function_text) and UNAUTHORIZED_RE.search(function_text))


def contains_auth_check(function_text: str, callees: Iterable[str]) -> bool:
    if has_auth_pattern(function_text) and auth_callee(callees) is not None:
        return True
    return is_header_auth_check(function_text)


def validation_library(callee: str, function_text: str) -> str | None:
    """Classify a call as a schema-validation call, or None."""
    receiver, _, _ = callee.rpartition(".")
    if receiver.strip() in NON_SCHEMA_RECEIVERS:
        return None
    if ZOD_CALLEE_RE.search(callee):
        return "zod"
    if VALIDATE_CALLEE_RE.search(callee):
        if JOI_TEXT_RE.search(callee) or JOI_TEXT_RE.search(function_text):
            return "joi"
        if YUP_TEXT_RE.search(function_text):
            return "yup"
    return None


def validation_method(library: str, callee: str) -> str:
    if library == "zod":
        return "safeParse" if "safeParse" in callee else "parse"
    return "validate"


def is_name_referenced(name: str, text: str) -> bool:
    if not name:
        return False
    return re.search(rf"(?<![\w$]){re.escape(name)}(?![\w$])", text) is not None


def truncate_snippet(text: str, max_length: int = 100) -> str:
    cleaned = " ".join(text.split())
    if len(cleaned) <= max_length:
        return cleaned
    return cleaned[: max_length - 3] + "..."
