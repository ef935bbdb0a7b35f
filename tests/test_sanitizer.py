from __future__ import annotations

import subprocess
from dataclasses import replace
from pathlib import Path

import pytest

from pkcs11_harness.exceptions import HarnessConfigurationError, MissingToolError
from pkcs11_harness.sanitizer import (
    PLAIN_SETUP,
    address_sanitizer_setup,
    build_setup,
    resolve_libasan,
    valgrind_setup,
)
from pkcs11_harness.tools import ToolLocator, ToolRunner


def _compiler_runner(stdout: str, returncode: int = 0) -> ToolRunner:
    def run(argv, **kwargs):
        assert argv[1] == "-print-file-name=libasan.so"
        return subprocess.CompletedProcess(argv, returncode, stdout, "")

    return ToolRunner(env={}, runner=run)


def test_plain_setup_leaves_commands_alone() -> None:
    assert PLAIN_SETUP.wrap(["test-wrapper", "basic-softhsm.t"]) == [
        "test-wrapper",
        "basic-softhsm.t",
    ]
    assert PLAIN_SETUP.timeout(30) == 30
    assert PLAIN_SETUP.env == {}


def test_address_setup_preloads_asan_before_shim(tmp_path: Path) -> None:
    shim = tmp_path / "fake_dlclose.so"
    shim.write_bytes(b"")
    setup = address_sanitizer_setup(
        fake_dlclose=shim,
        suppressions=Path("/src/tests/lsan.supp"),
        libasan="/usr/lib64/libasan.so.8",
    )

    preload = f"LD_PRELOAD=/usr/lib64/libasan.so.8:{shim}"
    assert setup.wrap(["test-wrapper", "tls-softokn.t"]) == [
        "env",
        preload,
        "test-wrapper",
        "tls-softokn.t",
    ]
    assert setup.env == {
        "ASAN_OPTIONS": "fast_unwind_on_malloc=0",
        "LSAN_OPTIONS": "suppressions=/src/tests/lsan.supp",
        "FAKE_DLCLOSE": str(shim),
        "CHECKER": f"env {preload}",
    }
    assert setup.timeout(30) == 90


def test_address_setup_without_libasan_preloads_only_shim(tmp_path: Path) -> None:
    shim = tmp_path / "fake_dlclose.so"
    shim.write_bytes(b"")
    setup = address_sanitizer_setup(
        fake_dlclose=shim, suppressions=tmp_path / "lsan.supp", libasan=None
    )
    assert setup.env["CHECKER"] == f"env LD_PRELOAD={shim}"


def test_address_setup_requires_shim(tmp_path: Path) -> None:
    with pytest.raises(HarnessConfigurationError, match="fake_dlclose"):
        address_sanitizer_setup(
            fake_dlclose=tmp_path / "missing.so",
            suppressions=tmp_path / "lsan.supp",
            libasan=None,
        )


def test_resolve_libasan_modes() -> None:
    assert resolve_libasan("no") is None
    assert resolve_libasan("/opt/libasan.so") == "/opt/libasan.so"
    assert (
        resolve_libasan("auto", runner=_compiler_runner("/usr/lib/gcc/libasan.so\n"))
        == "/usr/lib/gcc/libasan.so"
    )


def test_resolve_libasan_rejects_unknown_location() -> None:
    # gcc echoes the bare name back when it cannot find the library.
    with pytest.raises(HarnessConfigurationError, match="does not know"):
        resolve_libasan("auto", runner=_compiler_runner("libasan.so\n"))
    with pytest.raises(HarnessConfigurationError, match="Unable to locate"):
        resolve_libasan("auto", runner=_compiler_runner("", returncode=1))


def test_valgrind_setup() -> None:
    setup = valgrind_setup(ToolLocator(which=lambda name: f"/usr/bin/{name}"))
    assert setup.wrap(["test-wrapper", "basic-softhsm.t"]) == [
        "/usr/bin/valgrind",
        "--num-callers=30",
        "-q",
        "--keep-debuginfo=yes",
        "test-wrapper",
        "basic-softhsm.t",
    ]
    assert setup.timeout(30) == 600


def test_build_setup(harness_config, monkeypatch) -> None:
    monkeypatch.delenv("FAKE_DLCLOSE", raising=False)
    assert build_setup(harness_config) is PLAIN_SETUP

    with pytest.raises(MissingToolError):
        build_setup(
            replace(harness_config, setup="valgrind"),
            locator=ToolLocator(which=lambda name: None),
        )

    shim = harness_config.tests_build_dir / "fake_dlclose.so"
    shim.write_bytes(b"")
    setup = build_setup(replace(harness_config, setup="address", preload_libasan="no"))
    assert setup.name == "address"
    assert setup.env["FAKE_DLCLOSE"] == str(shim)
    assert setup.env["LSAN_OPTIONS"] == f"suppressions={harness_config.tests_src_dir}/lsan.supp"
