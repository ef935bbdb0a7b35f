from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from .backends import SUITE_NAMES
from .exceptions import HarnessConfigurationError


@dataclass(frozen=True)
class MatrixEntry:
    """A conformance test and the suites it applies to."""

    name: str
    suites: tuple[str, ...]
    is_parallel: bool = True


@dataclass(frozen=True)
class Invocation:
    """One (test, suite) pair to execute as its own process."""

    test: str
    suite: str
    is_parallel: bool

    @property
    def script(self) -> str:
        return f"{self.test}-{self.suite}.t"


def _entry(
    name: str, suites: Iterable[str] = SUITE_NAMES, *, is_parallel: bool = True
) -> MatrixEntry:
    return MatrixEntry(name=name, suites=tuple(suites), is_parallel=is_parallel)


TEST_MATRIX: dict[str, MatrixEntry] = {
    entry.name: entry
    for entry in (
        _entry("basic"),
        _entry("pubkey"),
        _entry("certs"),
        _entry("ecc"),
        _entry("edwards", ["softhsm"]),
        _entry("ecdh", ["softokn"]),
        _entry("democa", is_parallel=False),
        _entry("digest"),
        _entry("fork"),
        _entry("oaepsha2", ["softokn", "kryoptic"]),
        _entry("hkdf", ["softokn"]),
        _entry("rsapss"),
        _entry("rsapssam", ["softhsm"]),
        _entry("genkey"),
        _entry("session"),
        _entry("rand"),
        _entry("readkeys"),
        _entry("tls", is_parallel=False),
        _entry("uri"),
        _entry("ecxc", ["softhsm", "kryoptic"]),
        _entry("cms", ["softokn"]),
    )
}


def validate_matrix(matrix: Mapping[str, MatrixEntry]) -> None:
    for name, entry in matrix.items():
        if name != entry.name:
            raise HarnessConfigurationError(f"Matrix key {name!r} != entry name {entry.name!r}.")
        if not entry.suites:
            raise HarnessConfigurationError(f"Test {name!r} declares no suites.")
        unknown = [suite for suite in entry.suites if suite not in SUITE_NAMES]
        if unknown:
            raise HarnessConfigurationError(
                f"Test {name!r} declares unknown suites: {', '.join(unknown)}"
            )
        if len(set(entry.suites)) != len(entry.suites):
            raise HarnessConfigurationError(f"Test {name!r} lists a suite twice.")


def expand_matrix(
    matrix: Mapping[str, MatrixEntry] = TEST_MATRIX,
    *,
    suites: Iterable[str] | None = None,
    tests: Iterable[str] | None = None,
) -> list[Invocation]:
    """
    Expand the matrix into invocations, grouped by suite.

    Only pairs the matrix declares are produced; the filters can narrow
    the set but never add to it.
    """
    validate_matrix(matrix)
    suite_filter = tuple(suites) if suites is not None else SUITE_NAMES
    unknown_suites = [suite for suite in suite_filter if suite not in SUITE_NAMES]
    if unknown_suites:
        raise HarnessConfigurationError(f"Unknown suites: {', '.join(unknown_suites)}")
    test_filter = tuple(tests) if tests is not None else tuple(matrix)
    unknown_tests = [test for test in test_filter if test not in matrix]
    if unknown_tests:
        raise HarnessConfigurationError(f"Unknown tests: {', '.join(unknown_tests)}")

    invocations: list[Invocation] = []
    for suite in suite_filter:
        for name in matrix:
            if name not in test_filter:
                continue
            entry = matrix[name]
            if suite in entry.suites:
                invocations.append(
                    Invocation(test=name, suite=suite, is_parallel=entry.is_parallel)
                )
    return invocations
