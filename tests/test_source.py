"""Parse cache behaviour and tree helpers."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from proofgate.source import (
    CancelToken,
    ParseCache,
    ScanCancelledError,
    find_route_handlers,
    local_imports,
    resolve_import,
    top_level_functions,
)
from tests.helpers_artifacts import write_tree

ROUTE_TS = """\
import { z } from "zod";
import guard, { requireUser as needUser } from "../../lib/guard";
import * as audit from "./audit";

export async function POST(request: Request) {
  return Response.json({ ok: true });
}

export const GET = async () => {
  return Response.json([]);
};

export function helper() {}
"""


def test_parse_is_memoized_and_single_flight(tmp_path: Path) -> None:
    write_tree(tmp_path, {"app/api/route.ts": ROUTE_TS})
    cache = ParseCache(tmp_path)

    with ThreadPoolExecutor(max_workers=16) as executor:
        results = list(executor.map(lambda _: cache.parse("app/api/route.ts"), range(200)))

    assert cache.parse_count == 1
    assert results[0] is not None
    assert all(item is results[0] for item in results)
    assert Path("app/api/route.ts") in cache
    assert results[0].rel_path == "app/api/route.ts"


def test_unparseable_inputs_return_none(tmp_path: Path) -> None:
    write_tree(tmp_path, {"README.md": "# hi\n"})
    (tmp_path / "bad.ts").write_bytes(b"\xff\xfe\x00const")
    outside = tmp_path.parent / "outside.ts"
    outside.write_text("export const x = 1;\n", encoding="utf-8")
    cache = ParseCache(tmp_path)

    assert cache.parse("README.md") is None
    assert cache.parse("bad.ts") is None
    assert cache.parse("missing.ts") is None
    assert cache.parse(outside) is None
    assert cache.parse_count == 0


def test_cancelled_token_stops_parsing(tmp_path: Path) -> None:
    write_tree(tmp_path, {"a.ts": "export const a = 1;\n"})
    token = CancelToken()
    cache = ParseCache(tmp_path, cancel=token)
    token.cancel()
    assert token.cancelled
    with pytest.raises(ScanCancelledError):
        cache.parse("a.ts")


def test_route_handlers_cover_functions_and_arrow_consts(tmp_path: Path) -> None:
    write_tree(tmp_path, {"app/api/route.ts": ROUTE_TS})
    parsed = ParseCache(tmp_path).parse("app/api/route.ts")
    assert parsed is not None

    handlers = find_route_handlers(parsed)
    assert [(item.method, item.start_line) for item in handlers] == [("POST", 5), ("GET", 9)]
    assert handlers[0].end_line == 7
    assert len(top_level_functions(parsed)) == 3


def test_local_imports_are_relative_only_with_names(tmp_path: Path) -> None:
    write_tree(tmp_path, {"app/api/route.ts": ROUTE_TS})
    parsed = ParseCache(tmp_path).parse("app/api/route.ts")
    assert parsed is not None

    imports = local_imports(parsed)
    assert [item.specifier for item in imports] == ["../../lib/guard", "./audit"]
    assert imports[0].names == ("guard", "needUser")
    assert imports[0].line == 2
    assert imports[1].names == ("audit",)


def test_resolve_import_candidates(tmp_path: Path) -> None:
    write_tree(
        tmp_path,
        {
            "app/route.ts": "",
            "lib/guard.ts": "",
            "lib/session/index.tsx": "",
            "lib/raw.js": "",
        },
    )
    origin = tmp_path / "app" / "route.ts"
    root = tmp_path

    assert resolve_import(origin, "../lib/guard", root) == (tmp_path / "lib/guard.ts").resolve()
    assert resolve_import(origin, "../lib/raw.js", root) == (tmp_path / "lib/raw.js").resolve()
    assert resolve_import(origin, "../lib/session", root) == (
        tmp_path / "lib/session/index.tsx"
    ).resolve()
    assert resolve_import(origin, "../lib/missing", root) is None
    assert resolve_import(origin, "../../etc/passwd", root) is None
    assert resolve_import(origin, "zod", root) is None
