from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


@dataclass(frozen=True)
class KeyAlgorithm:
    """
    Key algorithm as understood by the token tooling.

    ``tool_key_type`` is the ``--key-type`` argument of pkcs11-tool. Keys
    without one cannot be generated on the token and must be imported.
    """

    name: str
    key_type: Literal["RSA", "EC", "EC_EDWARDS"]
    tool_key_type: str | None
    explicit_parameters: bool = False

    @property
    def generated(self) -> bool:
        return self.tool_key_type is not None


KEY_ALGORITHMS: dict[str, KeyAlgorithm] = {
    "rsa2048": KeyAlgorithm(
        name="rsa2048",
        key_type="RSA",
        tool_key_type="RSA:2048",
    ),
    "ec_p256": KeyAlgorithm(
        name="ec_p256",
        key_type="EC",
        tool_key_type="EC:secp256r1",
    ),
    "ec_p384": KeyAlgorithm(
        name="ec_p384",
        key_type="EC",
        tool_key_type="EC:secp384r1",
    ),
    "ed25519": KeyAlgorithm(
        name="ed25519",
        key_type="EC_EDWARDS",
        tool_key_type="EC:edwards25519",
    ),
    "ec_explicit": KeyAlgorithm(
        name="ec_explicit",
        key_type="EC",
        tool_key_type=None,
        explicit_parameters=True,
    ),
}


def list_key_algorithms() -> tuple[str, ...]:
    return tuple(sorted(KEY_ALGORITHMS.keys()))


def get_key_algorithm(name: str) -> KeyAlgorithm:
    normalized = name.strip().lower().replace("-", "_")
    try:
        return KEY_ALGORITHMS[normalized]
    except KeyError as exc:
        available = ", ".join(list_key_algorithms())
        raise ValueError(
            f"Unknown key algorithm '{name}'. Available algorithms: {available}"
        ) from exc
