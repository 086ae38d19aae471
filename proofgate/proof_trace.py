"""Cross-file proof traces for route handlers.

A trace answers two questions per route: is an auth check reachable from the
handler, and is request input validated with a result that is actually used?
Both are answered by scanning the handler, then its relative imports, then
their imports, never deeper than ``MAX_TRACE_DEPTH``. Middleware coverage is
decided separately from the route path and the middleware matchers.

The search is conservative: "not proven" is a normal outcome and anything that
cannot be parsed or resolved simply contributes no evidence.
"""

from __future__ import annotations

import json
import logging
import math
import os
import re
from collections.abc import Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

import tree_sitter

from proofgate.fingerprint import route_id
from proofgate.models import MiddlewareInfo, ProofStep, ProofTrace, Route
from proofgate.patterns import (
    contains_auth_check,
    is_auth_callee,
    is_name_referenced,
    truncate_snippet,
    validation_library,
    validation_method,
)
from proofgate.source import (
    CancelToken,
    ParseCache,
    ParsedSource,
    call_expressions,
    callee_text,
    find_route_handlers,
    local_imports,
    resolve_import,
    string_literals,
    top_level_functions,
    walk,
)

logger = logging.getLogger(__name__)

MAX_TRACE_DEPTH = 2
STATE_CHANGING_METHODS = ("POST", "PUT", "PATCH", "DELETE")
BODY_METHODS = ("POST", "PUT", "PATCH")
SKIP_DIRS = frozenset({"node_modules", ".git", ".next", "dist", "build", "coverage"})
ROUTE_FILE_NAMES = frozenset({"route.ts", "route.tsx", "route.js", "route.jsx"})
MIDDLEWARE_FILES = (
    "middleware.ts",
    "middleware.js",
    "src/middleware.ts",
    "src/middleware.js",
)

_ASSIGNING_PARENTS = frozenset({"variable_declarator", "pair", "assignment_expression"})
_PATTERN_NAME_TYPES = frozenset({"identifier", "shorthand_property_identifier_pattern"})


@dataclass(frozen=True, slots=True)
class ValidationUsage:
    library: str
    method: str
    line: int
    snippet: str
    result_assigned: bool
    result_used: bool


@dataclass(frozen=True, slots=True)
class CoverageMetrics:
    auth_coverage: float
    validation_coverage: float
    middleware_coverage: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "authCoverage": self.auth_coverage,
            "validationCoverage": self.validation_coverage,
            "middlewareCoverage": self.middleware_coverage,
        }


@dataclass(slots=True)
class _TraceState:
    need_auth: bool = True
    need_validation: bool = True
    steps: list[ProofStep] = field(default_factory=list)
    visited: dict[Path, int] = field(default_factory=dict)

    @property
    def done(self) -> bool:
        return not (self.need_auth or self.need_validation)


def build_proof_trace(
    route: Route,
    cache: ParseCache,
    middleware: Sequence[MiddlewareInfo] = (),
) -> ProofTrace:
    """Build the proof trace for one route."""
    parsed = cache.parse(route.file)
    if parsed is None:
        logger.debug("No parse for %s; empty trace for %s", route.file, route.route_id)
        return ProofTrace(route_id=route.route_id)

    handler = next(
        (item for item in find_route_handlers(parsed) if item.method == route.method), None
    )
    if handler is None:
        logger.debug("No %s handler in %s; empty trace", route.method, route.file)
        return ProofTrace(route_id=route.route_id)

    state = _TraceState(visited={parsed.path: 0})
    _check_function(parsed, handler.node, state, "handler", fallback_line=handler.start_line)

    for item in local_imports(parsed):
        if state.done:
            break
        target = resolve_import(parsed.path, item.specifier, cache.repo_root)
        if target is None:
            logger.debug("Unresolved import %r in %s", item.specifier, parsed.rel_path)
            continue
        _trace_module(target, 1, cache, state)

    covering = _covering_middleware(route.path, middleware)
    if covering is not None:
        state.steps.append(
            ProofStep(
                file=covering.file,
                line=covering.start_line,
                snippet=truncate_snippet(f"matcher: {json.dumps(list(covering.matchers))}"),
                label="Covered by middleware",
            )
        )

    return ProofTrace(
        route_id=route.route_id,
        auth_proven=not state.need_auth,
        validation_proven=not state.need_validation,
        middleware_covered=covering is not None,
        steps=tuple(state.steps),
    )


def build_all_proof_traces(
    routes: Sequence[Route],
    cache: ParseCache,
    middleware: Sequence[MiddlewareInfo] = (),
    *,
    max_workers: int | None = None,
    cancel: CancelToken | None = None,
) -> dict[str, ProofTrace]:
    """Trace every route on a bounded pool; result order follows ``routes``."""
    if not routes:
        return {}
    token = cancel or cache.cancel
    workers = max_workers or min(len(routes), os.cpu_count() or 1)

    def task(route: Route) -> ProofTrace:
        if token is not None:
            token.raise_if_cancelled()
        return build_proof_trace(route, cache, middleware)

    executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="proofgate-trace")
    try:
        futures: list[Future[ProofTrace]] = [executor.submit(task, route) for route in routes]
        traces = {route.route_id: future.result() for route, future in zip(routes, futures)}
    except BaseException:
        executor.shutdown(wait=True, cancel_futures=True)
        raise
    executor.shutdown(wait=True)
    return traces


def find_validation_usage(
    parsed: ParsedSource, function_node: tree_sitter.Node
) -> list[ValidationUsage]:
    """Schema-validation calls inside ``function_node``, in source order."""
    function_text = parsed.node_text(function_node)
    usages: list[ValidationUsage] = []
    for call in call_expressions(function_node):
        callee = callee_text(parsed, call)
        library = validation_library(callee, function_text)
        if library is None:
            continue

        outer = call
        parent = call.parent
        if parent is not None and parent.type == "await_expression":
            outer = parent
            parent = parent.parent

        assigned = _is_assigned(outer, parent)
        if library == "zod":
            names = _assigned_names(parsed, parent) if assigned else []
            rest = parsed.text_after(outer, function_node)
            used = any(is_name_referenced(name, rest) for name in names)
        else:
            used = assigned

        usages.append(
            ValidationUsage(
                library=library,
                method=validation_method(library, callee),
                line=parsed.line_of(call),
                snippet=truncate_snippet(parsed.node_text(call)),
                result_assigned=assigned,
                result_used=used,
            )
        )
    return usages


def matcher_to_regex(matcher: str) -> re.Pattern[str]:
    """Compile a middleware matcher into an anchored path-prefix regex.

    Raises ``re.error`` for patterns that cannot be compiled.
    """
    pattern = re.sub(r"/:[A-Za-z_]\w*\*", "(?:/.*)?", matcher)
    pattern = re.sub(r"/:[A-Za-z_]\w*\+", "/.+", pattern)
    pattern = re.sub(r":[A-Za-z_]\w*", "[^/]+", pattern)
    pattern = re.sub(r"(?<![.)\]])\*", ".*", pattern)
    pattern = re.sub(r"\((?!\?)", "(?:", pattern)
    return re.compile("^" + pattern)


def is_route_covered_by_middleware(route_path: str, matchers: Iterable[str]) -> bool:
    for matcher in matchers:
        try:
            regex = matcher_to_regex(matcher)
        except re.error as exc:
            logger.debug("Malformed matcher %r (%s); using prefix comparison", matcher, exc)
            if route_path.startswith(matcher.removesuffix("/:path*")):
                return True
            continue
        if regex.match(route_path):
            return True
    return False


def file_path_to_route_path(file_path: str) -> str:
    """Map an App Router file path to its URL path.

    ``app/api/users/[id]/route.ts`` becomes ``/api/users/[id]``.
    """
    normalized = file_path.replace("\\", "/")
    index = normalized.find("/app/")
    if index == -1:
        if normalized.startswith("app/"):
            return _extract_route_path(normalized[4:])
        return "/"
    return _extract_route_path(normalized[index + 5 :])


def discover_routes(cache: ParseCache) -> list[Route]:
    routes: list[Route] = []
    for path in _route_files(cache.repo_root):
        parsed = cache.parse(path)
        if parsed is None:
            continue
        url_path = file_path_to_route_path(parsed.rel_path)
        for handler in find_route_handlers(parsed):
            routes.append(
                Route(
                    route_id=route_id(url_path, handler.method, parsed.rel_path),
                    method=handler.method,
                    path=url_path,
                    file=parsed.rel_path,
                    start_line=handler.start_line,
                    end_line=handler.end_line,
                    handler=handler.export_name,
                )
            )
    return routes


def discover_middleware(cache: ParseCache) -> list[MiddlewareInfo]:
    for name in MIDDLEWARE_FILES:
        path = cache.repo_root / name
        if not path.is_file():
            continue
        parsed = cache.parse(path)
        if parsed is None:
            continue
        matchers: list[str] = []
        for node in walk(parsed.root):
            if node.type != "pair":
                continue
            if parsed.node_text(node.child_by_field_name("key")).strip("'\"") == "matcher":
                matchers.extend(string_literals(parsed, node.child_by_field_name("value")))
        start_line = 1
        for node in walk(parsed.root):
            if node.type != "variable_declarator":
                continue
            if parsed.node_text(node.child_by_field_name("name")) == "config":
                start_line = parsed.line_of(node)
                break
        protects_api = any(
            "/api" in item or "/(api)" in item or item == "/(.*)" for item in matchers
        )
        return [
            MiddlewareInfo(
                file=parsed.rel_path,
                matchers=tuple(matchers),
                start_line=start_line,
                protects_api=protects_api,
            )
        ]
    return []


def calculate_coverage(
    routes: Sequence[Route],
    traces: dict[str, ProofTrace],
    middleware: Sequence[MiddlewareInfo],
) -> CoverageMetrics:
    state_changing = [route for route in routes if route.method in STATE_CHANGING_METHODS]
    auth_count = 0
    for route in state_changing:
        trace = traces.get(route.route_id)
        if trace is not None and (trace.auth_proven or trace.middleware_covered):
            auth_count += 1

    body_routes = [route for route in routes if route.method in BODY_METHODS]
    validation_count = sum(
        1
        for route in body_routes
        if (trace := traces.get(route.route_id)) is not None and trace.validation_proven
    )

    matchers = [matcher for item in middleware for matcher in item.matchers]
    middleware_count = sum(
        1 for route in routes if is_route_covered_by_middleware(route.path, matchers)
    )

    return CoverageMetrics(
        auth_coverage=_ratio(auth_count, len(state_changing)),
        validation_coverage=_ratio(validation_count, len(body_routes)),
        middleware_coverage=_ratio(middleware_count, len(routes)),
    )


def _trace_module(path: Path, depth: int, cache: ParseCache, state: _TraceState) -> None:
    if depth > MAX_TRACE_DEPTH or state.done:
        return
    seen_at = state.visited.get(path)
    if seen_at is not None and seen_at <= depth:
        return
    state.visited[path] = depth

    parsed = cache.parse(path)
    if parsed is None:
        return

    for function_node in top_level_functions(parsed):
        if state.done:
            return
        _check_function(parsed, function_node, state, f"imported module (depth {depth})")

    for item in local_imports(parsed):
        if state.done:
            return
        target = resolve_import(parsed.path, item.specifier, cache.repo_root)
        if target is None:
            logger.debug("Unresolved import %r in %s", item.specifier, parsed.rel_path)
            continue
        _trace_module(target, depth + 1, cache, state)


def _check_function(
    parsed: ParsedSource,
    function_node: tree_sitter.Node,
    state: _TraceState,
    where: str,
    fallback_line: int | None = None,
) -> None:
    function_text = parsed.node_text(function_node)

    if state.need_auth:
        calls = call_expressions(function_node)
        callees = [callee_text(parsed, call) for call in calls]
        if contains_auth_check(function_text, callees):
            state.need_auth = False
            matched = next(
                (call for call, callee in zip(calls, callees) if is_auth_callee(callee)), None
            )
            if matched is not None:
                line, snippet = parsed.line_of(matched), parsed.node_text(matched)
            else:
                line, snippet = fallback_line or parsed.line_of(function_node), function_text
            state.steps.append(
                ProofStep(
                    file=parsed.rel_path,
                    line=line,
                    snippet=truncate_snippet(snippet),
                    label=f"Auth check found in {where}",
                )
            )

    if state.need_validation:
        usages = find_validation_usage(parsed, function_node)
        used = next((usage for usage in usages if usage.result_used), None)
        if used is not None:
            state.need_validation = False
            state.steps.append(
                ProofStep(
                    file=parsed.rel_path,
                    line=used.line,
                    snippet=used.snippet,
                    label=f"Validation found in {where}",
                )
            )


def _is_assigned(outer: tree_sitter.Node, parent: tree_sitter.Node | None) -> bool:
    if parent is None or parent.type not in _ASSIGNING_PARENTS:
        return False
    if parent.type == "variable_declarator":
        value = parent.child_by_field_name("value")
    elif parent.type == "pair":
        value = parent.child_by_field_name("value")
    else:
        value = parent.child_by_field_name("right")
    return value is not None and value.id == outer.id


def _assigned_names(parsed: ParsedSource, parent: tree_sitter.Node | None) -> list[str]:
    if parent is None:
        return []
    if parent.type == "variable_declarator":
        target = parent.child_by_field_name("name")
    elif parent.type == "assignment_expression":
        target = parent.child_by_field_name("left")
    else:
        return []
    if target is None:
        return []
    if target.type == "identifier":
        return [parsed.node_text(target)]
    return [parsed.node_text(item) for item in walk(target) if item.type in _PATTERN_NAME_TYPES]


def _covering_middleware(
    route_path: str, middleware: Sequence[MiddlewareInfo]
) -> MiddlewareInfo | None:
    for item in middleware:
        if is_route_covered_by_middleware(route_path, item.matchers):
            return item
    return None


def _route_files(repo_root: Path) -> list[Path]:
    found: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(repo_root):
        dirnames[:] = sorted(name for name in dirnames if name not in SKIP_DIRS)
        for filename in sorted(filenames):
            if filename not in ROUTE_FILE_NAMES:
                continue
            path = Path(dirpath) / filename
            if "app" in PurePosixPath(path.relative_to(repo_root).as_posix()).parts[:-1]:
                found.append(path)
    return found


def _extract_route_path(route_part: str) -> str:
    without_route = re.sub(r"/?route\.(ts|tsx|js|jsx)$", "", route_part)
    if without_route == "":
        return "/"
    if without_route == "api":
        return "/api"
    return "/" + without_route


def _ratio(count: int, total: int) -> float:
    if total == 0:
        return 1.0
    return math.floor(count / total * 100 + 0.5) / 100
