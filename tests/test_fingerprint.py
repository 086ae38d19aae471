"""Fingerprint and route identity tests."""

from __future__ import annotations

import random
import string

from proofgate.fingerprint import finding_id, fingerprint, hash_content, normalize_path, route_id


def test_fingerprint_is_stable_and_sixteen_hex_chars() -> None:
    first = fingerprint("VC-AUTH-001", "app/api/users/route.ts", "POST", 12)
    second = fingerprint("VC-AUTH-001", "app/api/users/route.ts", "POST", 12)
    assert first == second
    assert len(first) == 16
    assert all(char in "0123456789abcdef" for char in first)


def test_fingerprint_ignores_path_separator_style() -> None:
    assert fingerprint("VC-AUTH-001", "app\\api\\route.ts") == fingerprint(
        "VC-AUTH-001", "./app/api/route.ts"
    )


def test_missing_symbol_and_line_differ_from_present_ones() -> None:
    bare = fingerprint("VC-AUTH-001", "app/route.ts")
    assert bare != fingerprint("VC-AUTH-001", "app/route.ts", symbol="POST")
    assert bare != fingerprint("VC-AUTH-001", "app/route.ts", start_line=1)
    assert bare != fingerprint("VC-AUTH-001", "app/route.ts", route="/api")


def test_changing_any_single_field_changes_the_fingerprint() -> None:
    rng = random.Random(1337)
    for _ in range(300):
        rule = "VC-" + "".join(rng.choices(string.ascii_uppercase, k=4)) + "-001"
        file = "app/" + "".join(rng.choices(string.ascii_lowercase, k=8)) + "/route.ts"
        symbol = "".join(rng.choices(string.ascii_letters, k=6))
        line = rng.randint(1, 5000)
        base = fingerprint(rule, file, symbol, line)

        assert fingerprint(rule + "X", file, symbol, line) != base
        assert fingerprint(rule, file + "x", symbol, line) != base
        assert fingerprint(rule, file, symbol + "x", line) != base
        assert fingerprint(rule, file, symbol, line + 1) != base


def test_finding_id_uses_lowercase_rule_and_fingerprint_prefix() -> None:
    digest = fingerprint("VC-AUTH-001", "app/route.ts", start_line=3)
    assert finding_id("VC-AUTH-001", "app/route.ts", start_line=3) == f"vc-auth-001-{digest[:8]}"


def test_route_id_is_case_insensitive_and_twelve_chars() -> None:
    upper = route_id("/api/users", "POST", "app/api/users/route.ts")
    lower = route_id("/api/users", "post", "app/api/users/route.ts")
    assert upper == lower
    assert len(upper) == 12
    assert upper != route_id("/api/users", "GET", "app/api/users/route.ts")


def test_normalize_path_and_hash_content() -> None:
    assert normalize_path("./././src\\lib\\auth.ts") == "src/lib/auth.ts"
    assert len(hash_content("x")) == 64
    assert hash_content("x") == hash_content("x")
