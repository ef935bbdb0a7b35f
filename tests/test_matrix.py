from __future__ import annotations

import pytest

from pkcs11_harness.exceptions import HarnessConfigurationError
from pkcs11_harness.matrix import (
    TEST_MATRIX,
    Invocation,
    MatrixEntry,
    expand_matrix,
    validate_matrix,
)


def test_builtin_matrix_is_valid() -> None:
    validate_matrix(TEST_MATRIX)
    assert len(TEST_MATRIX) == 21


def test_serial_tests() -> None:
    serial = sorted(name for name, entry in TEST_MATRIX.items() if not entry.is_parallel)
    assert serial == ["democa", "tls"]


def test_expansion_only_produces_declared_pairs() -> None:
    invocations = expand_matrix()
    for invocation in invocations:
        assert invocation.suite in TEST_MATRIX[invocation.test].suites
    expected = sum(len(entry.suites) for entry in TEST_MATRIX.values())
    assert len(invocations) == expected
    assert len(set(invocations)) == expected


@pytest.mark.parametrize(
    ("test", "suites"),
    [
        ("edwards", ("softhsm",)),
        ("ecdh", ("softokn",)),
        ("oaepsha2", ("softokn", "kryoptic")),
        ("rsapssam", ("softhsm",)),
        ("ecxc", ("softhsm", "kryoptic")),
        ("cms", ("softokn",)),
        ("basic", ("softokn", "softhsm", "kryoptic")),
    ],
)
def test_applicability(test: str, suites: tuple[str, ...]) -> None:
    produced = {item.suite for item in expand_matrix(tests=[test])}
    assert produced == set(suites)


def test_expansion_is_grouped_by_suite() -> None:
    suites = [item.suite for item in expand_matrix()]
    first_seen = list(dict.fromkeys(suites))
    assert first_seen == ["softokn", "softhsm", "kryoptic"]
    assert suites == sorted(suites, key=first_seen.index)


def test_filters_narrow_but_never_add() -> None:
    invocations = expand_matrix(suites=["softhsm"], tests=["ecdh", "edwards"])
    assert invocations == [Invocation(test="edwards", suite="softhsm", is_parallel=True)]


def test_script_name() -> None:
    assert Invocation(test="tls", suite="kryoptic", is_parallel=False).script == "tls-kryoptic.t"


def test_unknown_names_are_configuration_errors() -> None:
    with pytest.raises(HarnessConfigurationError, match="Unknown suites"):
        expand_matrix(suites=["nss"])
    with pytest.raises(HarnessConfigurationError, match="Unknown tests"):
        expand_matrix(tests=["nope"])


@pytest.mark.parametrize(
    "matrix",
    [
        {"a": MatrixEntry("b", ("softhsm",))},
        {"a": MatrixEntry("a", ())},
        {"a": MatrixEntry("a", ("opensc",))},
        {"a": MatrixEntry("a", ("softhsm", "softhsm"))},
    ],
)
def test_invalid_matrices_are_rejected(matrix) -> None:
    with pytest.raises(HarnessConfigurationError):
        validate_matrix(matrix)
