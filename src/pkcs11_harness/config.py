from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .exceptions import HarnessConfigurationError

DEFAULT_PIN = "12345678"
DEFAULT_TIMEOUT_SECONDS = 30
SETUP_NAMES = ("address", "valgrind")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_positive_int(value: str, name: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise HarnessConfigurationError(f"{name} must be an integer, got: {value}") from exc
    if parsed <= 0:
        raise HarnessConfigurationError(f"{name} must be > 0, got: {value}")
    return parsed


def _parse_bool(value: str, name: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise HarnessConfigurationError(f"{name} must be a boolean, got: {value}")


def _optional_path(value: str | None) -> Path | None:
    return Path(value) if value else None


@dataclass(frozen=True)
class HarnessConfig:
    """Runtime configuration for provisioning and running the test matrix."""

    tests_src_dir: Path
    tests_build_dir: Path
    libs_path: str = ""
    shared_ext: str = ".so"
    kryoptic_dir: Path | None = None
    softokn_dir: Path | None = None
    p11kit_client_path: str | None = None
    pin: str = DEFAULT_PIN
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    jobs: int = 1
    setup: str | None = None
    preload_libasan: str = "auto"
    verify_chain: bool = True

    def __post_init__(self) -> None:
        if not self.pin:
            raise HarnessConfigurationError("PIN must not be empty.")
        if self.jobs <= 0:
            raise HarnessConfigurationError(f"jobs must be > 0, got: {self.jobs}")
        if self.timeout_seconds <= 0:
            raise HarnessConfigurationError(
                f"timeout_seconds must be > 0, got: {self.timeout_seconds}"
            )
        if self.setup is not None and self.setup not in SETUP_NAMES:
            raise HarnessConfigurationError(
                f"Unknown test setup '{self.setup}'. Use one of: {', '.join(SETUP_NAMES)}."
            )

    @classmethod
    def from_env(cls) -> "HarnessConfig":
        src_dir = os.environ.get("TESTSSRCDIR")
        build_dir = os.environ.get("TESTBLDDIR")
        if not src_dir:
            raise HarnessConfigurationError("TESTSSRCDIR is required.")
        if not build_dir:
            raise HarnessConfigurationError("TESTBLDDIR is required.")
        if not Path(src_dir).is_dir():
            raise HarnessConfigurationError(f"TESTSSRCDIR is not a directory: {src_dir}")

        timeout_raw = os.environ.get("PKCS11_HARNESS_TIMEOUT")
        jobs_raw = os.environ.get("PKCS11_HARNESS_JOBS")
        verify_raw = os.environ.get("PKCS11_HARNESS_VERIFY")

        return cls(
            tests_src_dir=Path(src_dir),
            tests_build_dir=Path(build_dir),
            libs_path=os.environ.get("LIBSPATH", ""),
            shared_ext=os.environ.get("SHARED_EXT", ".so"),
            kryoptic_dir=_optional_path(os.environ.get("KRYOPTIC")),
            softokn_dir=_optional_path(os.environ.get("SOFTOKNPATH")),
            p11kit_client_path=os.environ.get("P11KITCLIENTPATH") or None,
            pin=os.environ.get("PKCS11_HARNESS_PIN", DEFAULT_PIN),
            timeout_seconds=(
                _parse_positive_int(timeout_raw, "PKCS11_HARNESS_TIMEOUT")
                if timeout_raw
                else DEFAULT_TIMEOUT_SECONDS
            ),
            jobs=(
                _parse_positive_int(jobs_raw, "PKCS11_HARNESS_JOBS")
                if jobs_raw
                else os.cpu_count() or 1
            ),
            setup=os.environ.get("PKCS11_HARNESS_SETUP") or None,
            preload_libasan=os.environ.get("PKCS11_HARNESS_PRELOAD_LIBASAN", "auto"),
            verify_chain=(
                _parse_bool(verify_raw, "PKCS11_HARNESS_VERIFY") if verify_raw else True
            ),
        )

    def suite_work_dir(self, suite: str) -> Path:
        return self.tests_build_dir / f"tmp.{suite}"
