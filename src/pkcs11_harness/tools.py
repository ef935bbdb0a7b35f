from __future__ import annotations

import logging
import os
import platform
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Sequence

from .exceptions import MissingToolError, ProvisioningError

_logger = logging.getLogger("pkcs11_harness.tools")

_PIN_ARG_RE = re.compile(r"^(--(?:so-)?pin=).+$")

Runner = Callable[..., "subprocess.CompletedProcess[str]"]


def _redact_argv(argv: Sequence[str]) -> str:
    return " ".join(_PIN_ARG_RE.sub(r"\1****", arg) for arg in argv)


@dataclass(frozen=True)
class ToolResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str


class ToolRunner:
    """
    Runs external tools with a fixed base environment.

    Secrets are merged into the environment of a single invocation only;
    neither the base environment nor ``os.environ`` is modified.
    """

    def __init__(
        self,
        env: Mapping[str, str] | None = None,
        *,
        runner: Runner = subprocess.run,
    ) -> None:
        self._env = dict(os.environ if env is None else env)
        self._runner = runner

    @property
    def env(self) -> dict[str, str]:
        return dict(self._env)

    def with_env(self, **extra: str) -> "ToolRunner":
        merged = dict(self._env)
        merged.update(extra)
        return ToolRunner(merged, runner=self._runner)

    def run(
        self,
        argv: Sequence[str],
        *,
        secrets: Mapping[str, str] | None = None,
        check: bool = True,
    ) -> ToolResult:
        env = dict(self._env)
        if secrets:
            env.update(secrets)
        printable = _redact_argv(argv)
        _logger.debug(
            "Running %s (scoped secrets: %s)",
            printable,
            ", ".join(sorted(secrets)) if secrets else "none",
        )
        try:
            proc = self._runner(
                list(argv),
                capture_output=True,
                text=True,
                env=env,
            )
        except OSError as exc:
            raise ProvisioningError(f"Failed to execute {argv[0]}: {exc}") from exc

        result = ToolResult(
            argv=tuple(argv),
            returncode=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
        )
        if check and result.returncode != 0:
            _logger.error(
                "Command failed rc=%d: %s\nstdout:\n%s\nstderr:\n%s",
                result.returncode,
                printable,
                result.stdout,
                result.stderr,
            )
            raise ProvisioningError(
                f"{Path(argv[0]).name} exited with status {result.returncode}: "
                f"{result.stderr.strip() or result.stdout.strip()}"
            )
        return result


class ToolLocator:
    """Finds external executables on PATH."""

    def __init__(
        self,
        which: Callable[[str], str | None] = shutil.which,
        system: str | None = None,
    ) -> None:
        self._which = which
        self._system = system if system is not None else platform.system()

    def find(self, *names: str) -> str | None:
        for name in names:
            found = self._which(name)
            if found:
                return found
        return None

    def require(self, *names: str) -> str:
        found = self.find(*names)
        if found is None:
            raise MissingToolError(f"Missing required tool: {' or '.join(names)}")
        return found

    def certtool(self) -> str:
        # /usr/bin/certtool on macOS is an unrelated Apple tool, GnuTLS ships
        # as gnutls-certtool there.
        if self._system == "Darwin":
            return self.require("gnutls-certtool")
        return self.require("certtool")


class P11Tool:
    """GnuTLS p11tool, used for token initialization."""

    def __init__(self, runner: ToolRunner, executable: str, module_path: str) -> None:
        self._runner = runner
        self._executable = executable
        self._module_path = module_path

    def initialize(self, token_uri: str, label: str, so_pin: str) -> ToolResult:
        return self._runner.run(
            [
                self._executable,
                f"--provider={self._module_path}",
                "--initialize",
                f"--label={label}",
                token_uri,
            ],
            secrets={"GNUTLS_SO_PIN": so_pin},
        )

    def initialize_pin(self, token_uri: str, pin: str) -> ToolResult:
        return self._runner.run(
            [
                self._executable,
                f"--provider={self._module_path}",
                "--initialize-pin",
                token_uri,
            ],
            secrets={"GNUTLS_PIN": pin},
        )


class CertUtil:
    """NSS certutil, used to create the softokn database."""

    def __init__(self, runner: ToolRunner, executable: str) -> None:
        self._runner = runner
        self._executable = executable

    def create_database(self, token_dir: Path, pin_file: Path) -> ToolResult:
        return self._runner.run(
            [self._executable, "-N", "-d", f"sql:{token_dir}", "-f", str(pin_file)]
        )


class Pkcs11Tool:
    """OpenSC pkcs11-tool bound to one module and logged in with the user PIN."""

    def __init__(
        self,
        runner: ToolRunner,
        executable: str,
        module_path: str,
        pin: str,
        token_label: str | None = None,
    ) -> None:
        self._runner = runner
        self._executable = executable
        self._module_path = module_path
        self._pin = pin
        self._token_label = token_label

    def _base_args(self) -> list[str]:
        args = [self._executable, f"--module={self._module_path}"]
        if self._token_label:
            args.append(f"--token-label={self._token_label}")
        args.extend(["--login", f"--pin={self._pin}"])
        return args

    def keypairgen(self, key_type: str, label: str, key_id: str) -> ToolResult:
        return self._runner.run(
            [
                *self._base_args(),
                "--keypairgen",
                f"--key-type={key_type}",
                f"--label={label}",
                f"--id={key_id}",
            ]
        )

    def write_object(
        self, path: Path, object_type: str, label: str, key_id: str
    ) -> ToolResult:
        return self._runner.run(
            [
                *self._base_args(),
                f"--write-object={path}",
                f"--type={object_type}",
                f"--id={key_id}",
                f"--label={label}",
            ]
        )

    def delete_object(self, object_type: str, key_id: str) -> ToolResult:
        return self._runner.run(
            [
                *self._base_args(),
                "--delete-object",
                "--type",
                object_type,
                "--id",
                key_id,
            ]
        )

    def list_objects(self) -> ToolResult:
        return self._runner.run([*self._base_args(), "--list-objects"])


class CertTool:
    """GnuTLS certtool operating on keys that live in the token."""

    def __init__(
        self,
        runner: ToolRunner,
        executable: str,
        module_path: str,
        pin: str,
    ) -> None:
        self._runner = runner
        self._executable = executable
        self._module_path = module_path
        self._pin = pin

    def generate_self_signed(
        self,
        *,
        template: Path,
        outfile: Path,
        private_key_uri: str,
        public_key_uri: str,
    ) -> ToolResult:
        return self._runner.run(
            [
                self._executable,
                "--generate-self-signed",
                f"--outfile={outfile}",
                f"--template={template}",
                f"--provider={self._module_path}",
                "--load-privkey",
                private_key_uri,
                "--load-pubkey",
                public_key_uri,
                "--outder",
            ],
            secrets={"GNUTLS_PIN": self._pin},
        )

    def generate_certificate(
        self,
        *,
        template: Path,
        outfile: Path,
        private_key_uri: str,
        public_key_uri: str,
        ca_certificate: Path,
        ca_private_key_uri: str,
    ) -> ToolResult:
        return self._runner.run(
            [
                self._executable,
                "--generate-certificate",
                f"--outfile={outfile}",
                f"--template={template}",
                f"--provider={self._module_path}",
                "--load-privkey",
                private_key_uri,
                "--load-pubkey",
                public_key_uri,
                "--outder",
                "--load-ca-certificate",
                str(ca_certificate),
                "--inder",
                f"--load-ca-privkey={ca_private_key_uri}",
            ],
            secrets={"GNUTLS_PIN": self._pin},
        )
