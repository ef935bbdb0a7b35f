from __future__ import annotations

import logging
import os
import secrets
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .backends import Backend
from .config import HarnessConfig
from .exceptions import MissingToolError, ProvisioningError
from .resolver import first_existing
from .results import StepResult
from .tools import CertTool, CertUtil, P11Tool, Pkcs11Tool, ToolLocator, ToolRunner

SEED_FILE_SIZE = 2048
RAND64_FILE_SIZE = 64 * 1024
TOKEN_LABEL = "Test"

_logger = logging.getLogger("pkcs11_harness.provisioner")


@dataclass(frozen=True)
class ToolPaths:
    admin: str
    pkcs11_tool: str
    certtool: str


@dataclass(frozen=True)
class TokenStore:
    """An initialized, empty token and the paths derived for it."""

    backend: Backend
    module_path: Path
    work_dir: Path
    token_dir: Path
    pin: str
    pin_file: Path
    seed_file: Path
    rand64_file: Path
    config_env: tuple[str, str] | None
    tools: ToolPaths
    runner: ToolRunner

    def pkcs11_tool(self) -> Pkcs11Tool:
        return Pkcs11Tool(
            self.runner,
            self.tools.pkcs11_tool,
            str(self.module_path),
            self.pin,
            token_label=self.backend.token_label,
        )

    def certtool(self) -> CertTool:
        return CertTool(self.runner, self.tools.certtool, str(self.module_path), self.pin)


def reset_directory(path: Path) -> None:
    if path.exists():
        _logger.info("Removing previous work directory %s", path)
        shutil.rmtree(path)
    path.mkdir(parents=True)


def write_random_file(path: Path, size: int) -> Path:
    path.write_bytes(secrets.token_bytes(size))
    return path


class TokenProvisioner:
    """
    Creates a fresh token store for one backend.

    Missing tools or a missing backend module produce a skipped result and
    leave the filesystem untouched.
    """

    def __init__(
        self,
        config: HarnessConfig,
        backend: Backend,
        *,
        locator: ToolLocator | None = None,
        runner: ToolRunner | None = None,
        is_file: Callable[[str], bool] = os.path.isfile,
    ) -> None:
        self._config = config
        self._backend = backend
        self._locator = locator or ToolLocator()
        self._runner = runner or ToolRunner()
        self._is_file = is_file

    def _locate_tools(self) -> ToolPaths:
        if self._backend.init_method == "certutil":
            admin = self._locator.require("certutil")
        else:
            admin = self._locator.require("p11tool")
        return ToolPaths(
            admin=admin,
            pkcs11_tool=self._locator.require("pkcs11-tool"),
            certtool=self._locator.certtool(),
        )

    def locate_module(self) -> Path | None:
        return first_existing(self._backend.module_candidates(self._config), self._is_file)

    def prepare(self) -> StepResult[TokenStore]:
        backend = self._backend
        try:
            tools = self._locate_tools()
        except MissingToolError as exc:
            _logger.warning("Skipping %s: %s", backend.name, exc)
            return StepResult.skipped(str(exc))

        module_path = self.locate_module()
        if module_path is None:
            reason = f"Unable to find {backend.name} PKCS#11 library"
            _logger.warning("Skipping %s: %s", backend.name, reason)
            return StepResult.skipped(reason)
        _logger.info("Using %s module path %s", backend.name, module_path)

        try:
            store = self._create_store(module_path, tools)
            self._initialize_token(store)
        except ProvisioningError as exc:
            _logger.error("Token setup for %s failed: %s", backend.name, exc)
            return StepResult.failed(str(exc))
        return StepResult.ok(store, f"{backend.name} token initialized")

    def _create_store(self, module_path: Path, tools: ToolPaths) -> TokenStore:
        backend = self._backend
        work_dir = self._config.suite_work_dir(backend.name)
        try:
            reset_directory(work_dir)
            token_dir = work_dir / "tokens"
            token_dir.mkdir()

            pin_file = work_dir / "pinfile.txt"
            pin_file.write_text(f"{self._config.pin}\n", encoding="utf-8")
            seed_file = write_random_file(work_dir / "noisefile.bin", SEED_FILE_SIZE)
            rand64_file = write_random_file(work_dir / "64krandom.bin", RAND64_FILE_SIZE)
            backend.write_token_config(work_dir, token_dir)
        except OSError as exc:
            raise ProvisioningError(f"Unable to prepare {work_dir}: {exc}") from exc

        config_env: tuple[str, str] | None = None
        runner = self._runner
        config_value = backend.config_env_value(work_dir, token_dir)
        if backend.config_env and config_value is not None:
            config_env = (backend.config_env, config_value)
            runner = runner.with_env(**{backend.config_env: config_value})

        return TokenStore(
            backend=backend,
            module_path=module_path,
            work_dir=work_dir,
            token_dir=token_dir,
            pin=self._config.pin,
            pin_file=pin_file,
            seed_file=seed_file,
            rand64_file=rand64_file,
            config_env=config_env,
            tools=tools,
            runner=runner,
        )

    def _initialize_token(self, store: TokenStore) -> None:
        backend = store.backend
        if backend.init_method == "certutil":
            _logger.info("Creating NSS database in %s", store.token_dir)
            CertUtil(store.runner, store.tools.admin).create_database(
                store.token_dir, store.pin_file
            )
            return

        if backend.initialize_uri is None or backend.pin_uri is None:
            raise ProvisioningError(f"Backend {backend.name} has no token URIs configured.")
        p11tool = P11Tool(store.runner, store.tools.admin, str(store.module_path))
        _logger.info("Initializing %s token label=%s", backend.name, TOKEN_LABEL)
        p11tool.initialize(backend.initialize_uri, TOKEN_LABEL, store.pin)
        _logger.info("Setting user PIN on %s token", backend.name)
        p11tool.initialize_pin(backend.pin_uri, store.pin)
