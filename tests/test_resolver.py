from __future__ import annotations

from dataclasses import replace
from pathlib import Path

from pkcs11_harness.backends import get_backend
from pkcs11_harness.resolver import first_existing


def test_first_existing_returns_first_match_in_order() -> None:
    present = {"/b", "/c"}
    assert first_existing(["/a", "/b", "/c"], present.__contains__) == Path("/b")


def test_first_existing_returns_none_when_nothing_matches() -> None:
    assert first_existing(["/a", "/b"], lambda path: False) is None


def test_first_existing_skips_empty_candidates() -> None:
    seen: list[str] = []

    def exists(path: str) -> bool:
        seen.append(path)
        return True

    assert first_existing(["", "/x"], exists) == Path("/x")
    assert seen == ["/x"]


def test_first_existing_uses_real_filesystem_by_default(tmp_path: Path) -> None:
    module = tmp_path / "libmodule.so"
    module.write_bytes(b"")
    assert first_existing([tmp_path / "missing.so", module]) == module
    assert first_existing([tmp_path]) is None


def test_kryoptic_checkout_is_preferred(harness_config) -> None:
    config = replace(harness_config, kryoptic_dir=Path("/src/kryoptic"))
    candidates = get_backend("kryoptic").module_candidates(config)
    assert candidates[0] == "/src/kryoptic/target/debug/libkryoptic_pkcs11.so"
    assert candidates[1] == "/src/kryoptic/target/release/libkryoptic_pkcs11.so"


def test_softokn_candidates_follow_shared_ext(harness_config) -> None:
    config = replace(harness_config, shared_ext=".dylib", softokn_dir=Path("/nss"))
    candidates = get_backend("softokn").module_candidates(config)
    assert candidates[0] == "/nss/libsoftokn3.dylib"
    assert all(path.endswith("libsoftokn3.dylib") for path in candidates)
