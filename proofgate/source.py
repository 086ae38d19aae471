"""Parsed-source cache and tree helpers for TypeScript/JavaScript files."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from functools import cache
from pathlib import Path

import tree_sitter
import tree_sitter_typescript

from proofgate.fingerprint import normalize_path
from proofgate.models import HTTP_METHODS

logger = logging.getLogger(__name__)

SOURCE_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")
IMPORT_EXTENSIONS = (".ts", ".tsx", ".js", ".jsx")
FUNCTION_TYPES = frozenset(
    {"function_declaration", "arrow_function", "function_expression", "function"}
)


class ScanCancelledError(RuntimeError):
    """Raised when the caller cancels a scan in flight."""


class CancelToken:
    """Caller-owned cancellation signal shared by the cache and worker pools."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ScanCancelledError("Scan cancelled")


@dataclass(slots=True)
class ParsedSource:
    """One parsed file. Read-only once handed out by the cache."""

    path: Path
    rel_path: str
    text: str
    tree: tree_sitter.Tree
    source: bytes = field(repr=False, default=b"")

    @property
    def root(self) -> tree_sitter.Node:
        return self.tree.root_node

    def line_of(self, node: tree_sitter.Node) -> int:
        return node.start_point[0] + 1

    def end_line_of(self, node: tree_sitter.Node) -> int:
        return node.end_point[0] + 1

    def node_text(self, node: tree_sitter.Node | None) -> str:
        if node is None:
            return ""
        return self.source[node.start_byte : node.end_byte].decode("utf-8", errors="replace")

    def text_after(self, node: tree_sitter.Node, scope: tree_sitter.Node) -> str:
        """Source text following ``node`` up to the end of ``scope``."""
        return self.source[node.end_byte : scope.end_byte].decode("utf-8", errors="replace")


@dataclass(frozen=True, slots=True)
class RouteHandler:
    method: str
    node: tree_sitter.Node
    export_name: str
    start_line: int
    end_line: int


@dataclass(frozen=True, slots=True)
class LocalImport:
    specifier: str
    names: tuple[str, ...]
    line: int


class ParseCache:
    """Explicit, owned parse cache with single-flight population per file.

    Many workers may ask for the same file concurrently; exactly one of them
    parses it while the rest wait on that file's lock. After population the
    cache is read-mostly and lookups only take the shared lock briefly.
    """

    def __init__(self, repo_root: Path, cancel: CancelToken | None = None) -> None:
        self.repo_root = repo_root.resolve()
        self.cancel = cancel
        self._lock = threading.Lock()
        self._key_locks: dict[Path, threading.Lock] = {}
        self._results: dict[Path, ParsedSource | None] = {}
        self._parse_count = 0

    @property
    def parse_count(self) -> int:
        with self._lock:
            return self._parse_count

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, Path):
            return False
        with self._lock:
            return self._absolute(path) in self._results

    def parse(self, path: Path | str) -> ParsedSource | None:
        """Return the parsed file, or None when it cannot be read or parsed."""
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()
        key = self._absolute(Path(path))

        with self._lock:
            if key in self._results:
                return self._results[key]
            key_lock = self._key_locks.setdefault(key, threading.Lock())

        with key_lock:
            with self._lock:
                if key in self._results:
                    return self._results[key]
            parsed = self._load(key)
            with self._lock:
                self._results[key] = parsed
                if parsed is not None:
                    self._parse_count += 1
            return parsed

    def relative(self, path: Path) -> str | None:
        try:
            return normalize_path(self._absolute(path).relative_to(self.repo_root).as_posix())
        except ValueError:
            return None

    def _absolute(self, path: Path) -> Path:
        candidate = path if path.is_absolute() else self.repo_root / path
        return candidate.resolve()

    def _load(self, path: Path) -> ParsedSource | None:
        rel_path = self.relative(path)
        if rel_path is None:
            logger.debug("Skipping %s: outside repository root", path)
            return None
        if path.suffix not in SOURCE_EXTENSIONS:
            logger.debug("Skipping %s: not a source file", rel_path)
            return None
        try:
            raw = path.read_bytes()
            text = raw.decode("utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Could not read %s: %s", rel_path, exc)
            return None

        parser = tree_sitter.Parser(_language_for(path.suffix))
        tree = parser.parse(raw)
        if tree.root_node.has_error:
            logger.debug("Parsed %s with syntax errors", rel_path)
        return ParsedSource(path=path, rel_path=rel_path, text=text, tree=tree, source=raw)


@cache
def _typescript_language() -> tree_sitter.Language:
    return tree_sitter.Language(tree_sitter_typescript.language_typescript())


@cache
def _tsx_language() -> tree_sitter.Language:
    return tree_sitter.Language(tree_sitter_typescript.language_tsx())


def _language_for(suffix: str) -> tree_sitter.Language:
    # The TSX grammar is a superset that also accepts plain JS and JSX.
    if suffix == ".ts":
        return _typescript_language()
    return _tsx_language()


def walk(node: tree_sitter.Node) -> Iterator[tree_sitter.Node]:
    """Pre-order traversal in source order."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children))


def call_expressions(node: tree_sitter.Node) -> list[tree_sitter.Node]:
    return [item for item in walk(node) if item.type == "call_expression"]


def callee_text(parsed: ParsedSource, call: tree_sitter.Node) -> str:
    return parsed.node_text(call.child_by_field_name("function"))


def find_route_handlers(parsed: ParsedSource) -> list[RouteHandler]:
    """Exported functions (or function-valued consts) named after an HTTP method."""
    handlers: list[RouteHandler] = []
    for statement in parsed.root.named_children:
        if statement.type != "export_statement":
            continue
        declaration = statement.child_by_field_name("declaration")
        if declaration is None:
            continue
        if declaration.type == "function_declaration":
            name = parsed.node_text(declaration.child_by_field_name("name"))
            if name in HTTP_METHODS:
                handlers.append(
                    RouteHandler(
                        method=name,
                        node=declaration,
                        export_name=name,
                        start_line=parsed.line_of(declaration),
                        end_line=parsed.end_line_of(declaration),
                    )
                )
            continue
        for name, value, declarator in _declared_functions(parsed, declaration):
            if name in HTTP_METHODS:
                handlers.append(
                    RouteHandler(
                        method=name,
                        node=value,
                        export_name=name,
                        start_line=parsed.line_of(declarator),
                        end_line=parsed.end_line_of(declarator),
                    )
                )
    return handlers


def top_level_functions(parsed: ParsedSource) -> list[tree_sitter.Node]:
    """Module-level function declarations and function-valued consts, exported or not."""
    functions: list[tree_sitter.Node] = []
    for statement in parsed.root.named_children:
        declaration = statement
        if statement.type == "export_statement":
            declaration = statement.child_by_field_name("declaration")
            if declaration is None:
                declaration = statement.child_by_field_name("value")
            if declaration is None:
                continue
        if declaration.type in FUNCTION_TYPES:
            functions.append(declaration)
            continue
        for _, value, _ in _declared_functions(parsed, declaration):
            functions.append(value)
    return functions


def local_imports(parsed: ParsedSource) -> list[LocalImport]:
    """Relative import declarations in source order."""
    imports: list[LocalImport] = []
    for statement in parsed.root.named_children:
        if statement.type != "import_statement":
            continue
        specifier = _string_value(parsed, statement.child_by_field_name("source"))
        if not specifier.startswith("."):
            continue
        names: list[str] = []
        for clause in statement.named_children:
            if clause.type != "import_clause":
                continue
            for item in walk(clause):
                if item.type == "import_specifier":
                    alias = item.child_by_field_name("alias")
                    names.append(parsed.node_text(alias or item.child_by_field_name("name")))
                elif item.type == "identifier" and item.parent is not None and item.parent.type in {
                    "import_clause",
                    "namespace_import",
                }:
                    names.append(parsed.node_text(item))
        imports.append(
            LocalImport(specifier=specifier, names=tuple(names), line=parsed.line_of(statement))
        )
    return imports


def resolve_import(from_file: Path, specifier: str, repo_root: Path) -> Path | None:
    """Resolve a relative specifier to a file inside ``repo_root``."""
    if not specifier.startswith("."):
        return None
    root = repo_root.resolve()
    base = (from_file.parent / specifier).resolve()
    try:
        base.relative_to(root)
    except ValueError:
        logger.debug("Import %r from %s escapes the repository", specifier, from_file)
        return None

    candidates: list[Path] = []
    if base.suffix in SOURCE_EXTENSIONS:
        candidates.append(base)
    candidates.extend(base.with_name(base.name + ext) for ext in IMPORT_EXTENSIONS)
    candidates.extend(base / f"index{ext}" for ext in IMPORT_EXTENSIONS)
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def string_literals(parsed: ParsedSource, node: tree_sitter.Node) -> list[str]:
    return [_string_value(parsed, item) for item in walk(node) if item.type == "string"]


def _declared_functions(
    parsed: ParsedSource, declaration: tree_sitter.Node
) -> Iterator[tuple[str, tree_sitter.Node, tree_sitter.Node]]:
    if declaration.type not in {"lexical_declaration", "variable_declaration"}:
        return
    for declarator in declaration.named_children:
        if declarator.type != "variable_declarator":
            continue
        value = declarator.child_by_field_name("value")
        if value is None or value.type not in FUNCTION_TYPES:
            continue
        name = parsed.node_text(declarator.child_by_field_name("name"))
        yield name, value, declarator


def _string_value(parsed: ParsedSource, node: tree_sitter.Node | None) -> str:
    text = parsed.node_text(node)
    if len(text) >= 2 and text[0] in "'\"`" and text[-1] == text[0]:
        return text[1:-1]
    return text
