from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Callable, Mapping, Sequence

from .config import HarnessConfig
from .env_export import TESTVARS_NAME, load_testvars
from .matrix import TEST_MATRIX, Invocation, MatrixEntry, expand_matrix
from .results import Outcome, StepResult
from .sanitizer import PLAIN_SETUP, ExecutionSetup

TEST_WRAPPER = "test-wrapper"
SKIP_EXIT_CODE = 77
POLL_INTERVAL_SECONDS = 0.05

_logger = logging.getLogger("pkcs11_harness.runner")

Provision = Callable[[str], StepResult[Path]]
Clock = Callable[[], float]


@dataclass(frozen=True)
class InvocationResult:
    invocation: Invocation
    outcome: Outcome
    returncode: int | None = None
    started: float = 0.0
    finished: float = 0.0
    timed_out: bool = False
    detail: str = ""

    @property
    def duration(self) -> float:
        return max(self.finished - self.started, 0.0)

    def describe(self) -> str:
        text = f"{self.invocation.suite:<9} {self.invocation.test:<10} {self.outcome.value}"
        if self.timed_out:
            text += " (timeout)"
        elif self.returncode is not None:
            text += f" (rc={self.returncode}, {self.duration:.2f}s)"
        if self.detail and self.outcome is not Outcome.OK:
            text += f": {self.detail}"
        return text


@dataclass(frozen=True)
class MatrixReport:
    provisioning: dict[str, StepResult[Path]] = field(default_factory=dict)
    results: tuple[InvocationResult, ...] = ()

    def by_outcome(self, outcome: Outcome) -> list[InvocationResult]:
        return [result for result in self.results if result.outcome is outcome]

    @property
    def exit_code(self) -> int:
        if any(step.is_failed for step in self.provisioning.values()):
            return 1
        return 1 if self.by_outcome(Outcome.FAILED) else 0


class SubprocessProvisioner:
    """
    Provision a suite by running ``pkcs11-harness setup`` in a child process.

    Each PKCS#11 module is initialized once per process, so every suite
    gets a fresh interpreter. A run that exits 0 without writing testvars
    was skipped.
    """

    def __init__(
        self,
        config: HarnessConfig,
        *,
        python: str = sys.executable,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._config = config
        self._python = python
        self._env = dict(os.environ if env is None else env)

    def command(self, suite: str) -> list[str]:
        return [self._python, "-m", "pkcs11_harness.cli", "setup", suite]

    def __call__(self, suite: str) -> StepResult[Path]:
        testvars = self._config.suite_work_dir(suite) / TESTVARS_NAME
        if testvars.exists():
            testvars.unlink()
        proc = subprocess.run(
            self.command(suite),
            capture_output=True,
            text=True,
            env=self._env,
        )
        if proc.returncode != 0:
            lines = (proc.stderr or proc.stdout).strip().splitlines()
            return StepResult.failed(
                lines[-1] if lines else f"setup exited with status {proc.returncode}"
            )
        if not testvars.is_file():
            lines = proc.stdout.strip().splitlines()
            return StepResult.skipped(lines[-1] if lines else f"{suite} is unavailable")
        return StepResult.ok(testvars)


@dataclass
class _Running:
    invocation: Invocation
    process: subprocess.Popen
    log: IO[str]
    log_path: Path
    started: float
    deadline: float

    def close(self) -> str:
        """Close the output log and return its last non-empty line."""
        self.log.close()
        lines = self.log_path.read_text(encoding="utf-8", errors="replace").strip().splitlines()
        return lines[-1] if lines else ""


class MatrixRunner:
    """
    Runs the expanded test matrix one suite at a time.

    Provisioning for a suite completes before any of its tests start. Tests
    marked parallel share up to ``jobs`` slots; every other test runs alone.
    """

    def __init__(
        self,
        config: HarnessConfig,
        *,
        setup: ExecutionSetup = PLAIN_SETUP,
        provision: Provision | None = None,
        matrix: Mapping[str, MatrixEntry] = TEST_MATRIX,
        jobs: int | None = None,
        timeout_seconds: float | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._config = config
        self._setup = setup
        self._provision = provision or SubprocessProvisioner(config)
        self._matrix = matrix
        self._jobs = max(jobs if jobs is not None else config.jobs, 1)
        base_timeout = timeout_seconds if timeout_seconds is not None else config.timeout_seconds
        self._timeout = setup.timeout(base_timeout)
        self._clock = clock

    @property
    def timeout(self) -> float:
        return self._timeout

    def command(self, invocation: Invocation) -> list[str]:
        wrapper = str(self._config.tests_src_dir / TEST_WRAPPER)
        return self._setup.wrap([wrapper, invocation.script])

    def environment(self, testvars: Path | None) -> dict[str, str]:
        env = dict(os.environ)
        if testvars is not None:
            env.update(load_testvars(testvars))
        env["TEST_PATH"] = str(self._config.tests_src_dir)
        env["TESTBLDDIR"] = str(self._config.tests_build_dir)
        env.update(self._setup.env)
        return env

    def run(
        self,
        *,
        suites: Sequence[str] | None = None,
        tests: Sequence[str] | None = None,
    ) -> MatrixReport:
        invocations = expand_matrix(self._matrix, suites=suites, tests=tests)
        grouped: dict[str, list[Invocation]] = {}
        for invocation in invocations:
            grouped.setdefault(invocation.suite, []).append(invocation)

        provisioning: dict[str, StepResult[Path]] = {}
        results: list[InvocationResult] = []
        for suite, pending in grouped.items():
            _logger.info("Provisioning suite %s", suite)
            step = self._provision(suite)
            provisioning[suite] = step
            if step.is_skipped:
                _logger.warning("Suite %s skipped: %s", suite, step.detail)
                results.extend(
                    InvocationResult(item, Outcome.SKIPPED, detail=step.detail) for item in pending
                )
                continue
            if step.is_failed:
                _logger.error("Suite %s provisioning failed: %s", suite, step.detail)
                results.extend(
                    InvocationResult(item, Outcome.FAILED, detail=f"provisioning: {step.detail}")
                    for item in pending
                )
                continue
            results.extend(self.run_suite(pending, step.unwrap()))
        return MatrixReport(provisioning=provisioning, results=tuple(results))

    def run_suite(
        self, invocations: Sequence[Invocation], testvars: Path | None
    ) -> list[InvocationResult]:
        env = self.environment(testvars)
        queue = list(invocations)
        running: list[_Running] = []
        finished: list[InvocationResult] = []

        while queue or running:
            while queue and self._can_start(queue[0], running):
                invocation = queue.pop(0)
                try:
                    running.append(self._start(invocation, env))
                except OSError as exc:
                    _logger.error("Unable to start %s: %s", invocation.script, exc)
                    now = self._clock()
                    finished.append(
                        InvocationResult(
                            invocation, Outcome.FAILED, started=now, finished=now, detail=str(exc)
                        )
                    )
            time.sleep(POLL_INTERVAL_SECONDS)
            still_running: list[_Running] = []
            for item in running:
                result = self._collect(item)
                if result is None:
                    still_running.append(item)
                else:
                    finished.append(result)
            running = still_running
        return finished

    def _can_start(self, invocation: Invocation, running: list[_Running]) -> bool:
        if not running:
            return True
        if not invocation.is_parallel:
            return False
        if any(not item.invocation.is_parallel for item in running):
            return False
        return len(running) < self._jobs

    def _start(self, invocation: Invocation, env: dict[str, str]) -> _Running:
        argv = self.command(invocation)
        log_dir = self._config.suite_work_dir(invocation.suite)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / f"{invocation.test}.log"
        log = log_path.open("w", encoding="utf-8")
        _logger.debug("Starting %s: %s", invocation.script, " ".join(argv))
        started = self._clock()
        try:
            process = subprocess.Popen(
                argv,
                cwd=str(self._config.tests_build_dir),
                env=env,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError:
            log.close()
            raise
        return _Running(invocation, process, log, log_path, started, started + self._timeout)

    def _collect(self, item: _Running) -> InvocationResult | None:
        returncode = item.process.poll()
        now = self._clock()
        script = item.invocation.script
        if returncode is None:
            if now < item.deadline:
                return None
            # test-wrapper forks the test itself, so the whole group goes.
            try:
                os.killpg(item.process.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            item.process.wait()
            item.close()
            _logger.error("%s timed out after %.1fs, see %s", script, self._timeout, item.log_path)
            return InvocationResult(
                item.invocation,
                Outcome.FAILED,
                returncode=item.process.returncode,
                started=item.started,
                finished=now,
                timed_out=True,
                detail=f"killed after {self._timeout:.1f}s",
            )

        last_line = item.close()
        if returncode == 0:
            outcome = Outcome.OK
        elif returncode == SKIP_EXIT_CODE:
            outcome = Outcome.SKIPPED
        else:
            outcome = Outcome.FAILED
            _logger.error("%s failed with status %d, see %s", script, returncode, item.log_path)
        _logger.info("%s finished: %s", script, outcome.value)
        return InvocationResult(
            item.invocation,
            outcome,
            returncode=returncode,
            started=item.started,
            finished=now,
            detail=last_line,
        )
