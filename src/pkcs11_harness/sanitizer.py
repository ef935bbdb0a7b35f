from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from .config import HarnessConfig
from .exceptions import HarnessConfigurationError, MissingToolError, ProvisioningError
from .tools import ToolLocator, ToolRunner

ASAN_TIMEOUT_MULTIPLIER = 3
VALGRIND_TIMEOUT_MULTIPLIER = 20
VALGRIND_ARGS = ("--num-callers=30", "-q", "--keep-debuginfo=yes")

_logger = logging.getLogger("pkcs11_harness.sanitizer")


@dataclass(frozen=True)
class ExecutionSetup:
    """
    How every test process is launched: a command prefix, extra environment
    and a timeout multiplier.
    """

    name: str
    wrapper: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    timeout_multiplier: int = 1

    def wrap(self, argv: Sequence[str]) -> list[str]:
        return [*self.wrapper, *argv]

    def timeout(self, base_seconds: float) -> float:
        return base_seconds * self.timeout_multiplier


PLAIN_SETUP = ExecutionSetup(name="plain")


def resolve_libasan(
    preload_libasan: str,
    *,
    runner: ToolRunner | None = None,
    compiler: str | None = None,
) -> str | None:
    """
    Resolve the ASan runtime to preload.

    ``auto`` asks the C compiler where libasan.so lives, ``no`` disables
    the preload and anything else is taken as the path itself.
    """
    if preload_libasan == "no":
        return None
    if preload_libasan != "auto":
        return preload_libasan

    cc = compiler or os.environ.get("CC", "cc")
    try:
        result = (runner or ToolRunner()).run([cc, "-print-file-name=libasan.so"])
    except ProvisioningError as exc:
        raise HarnessConfigurationError(f"Unable to locate libasan.so: {exc}") from exc
    path = result.stdout.strip()
    if not path or not os.path.isabs(path):
        raise HarnessConfigurationError(
            f"{cc} does not know where libasan.so is (got {path!r})."
        )
    return path


def address_sanitizer_setup(
    *,
    fake_dlclose: Path,
    suppressions: Path,
    libasan: str | None,
    is_file: Callable[[str], bool] = os.path.isfile,
) -> ExecutionSetup:
    """
    ASan must be the first library loaded in processes that are not
    themselves instrumented, and fake_dlclose keeps dlopened modules mapped
    so leak reports can still be symbolized.
    """
    if not is_file(str(fake_dlclose)):
        raise HarnessConfigurationError(f"fake_dlclose shim not found: {fake_dlclose}")
    preload = ":".join(str(path) for path in (libasan, fake_dlclose) if path)
    env = {
        "ASAN_OPTIONS": "fast_unwind_on_malloc=0",
        "LSAN_OPTIONS": f"suppressions={suppressions}",
        "FAKE_DLCLOSE": str(fake_dlclose),
        "CHECKER": f"env LD_PRELOAD={preload}",
    }
    return ExecutionSetup(
        name="address",
        wrapper=("env", f"LD_PRELOAD={preload}"),
        env=env,
        timeout_multiplier=ASAN_TIMEOUT_MULTIPLIER,
    )


def valgrind_setup(locator: ToolLocator | None = None) -> ExecutionSetup:
    valgrind = (locator or ToolLocator()).require("valgrind")
    return ExecutionSetup(
        name="valgrind",
        wrapper=(valgrind, *VALGRIND_ARGS),
        timeout_multiplier=VALGRIND_TIMEOUT_MULTIPLIER,
    )


def build_setup(
    config: HarnessConfig,
    *,
    locator: ToolLocator | None = None,
    runner: ToolRunner | None = None,
) -> ExecutionSetup:
    """Build the execution setup named by ``config.setup``."""
    if config.setup is None:
        return PLAIN_SETUP
    if config.setup == "valgrind":
        try:
            return valgrind_setup(locator)
        except MissingToolError:
            _logger.warning("valgrind setup requested but valgrind is not installed.")
            raise
    fake_dlclose = Path(
        os.environ.get(
            "FAKE_DLCLOSE",
            str(config.tests_build_dir / f"fake_dlclose{config.shared_ext}"),
        )
    )
    setup = address_sanitizer_setup(
        fake_dlclose=fake_dlclose,
        suppressions=config.tests_src_dir / "lsan.supp",
        libasan=resolve_libasan(config.preload_libasan, runner=runner),
    )
    _logger.info("Using address sanitizer setup: %s", setup.env["CHECKER"])
    return setup
