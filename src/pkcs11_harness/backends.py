from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Literal

from .config import HarnessConfig


def _kryoptic_candidates(config: HarnessConfig) -> list[str]:
    paths: list[str] = []
    if config.kryoptic_dir is not None:
        paths.extend(
            [
                str(config.kryoptic_dir / "target/debug/libkryoptic_pkcs11.so"),
                str(config.kryoptic_dir / "target/release/libkryoptic_pkcs11.so"),
            ]
        )
    paths.extend(
        [
            "/usr/local/lib/kryoptic/libkryoptic_pkcs11.so",
            "/usr/lib64/pkcs11/libkryoptic_pkcs11.so",
            "/usr/lib/pkcs11/libkryoptic_pkcs11.so",
            "/usr/lib/x86_64-linux-gnu/kryoptic/libkryoptic_pkcs11.so",
        ]
    )
    return paths


def _softhsm_candidates(config: HarnessConfig) -> list[str]:
    return [
        "/usr/local/lib/softhsm/libsofthsm2.so",
        "/usr/lib64/pkcs11/libsofthsm2.so",
        "/usr/lib/softhsm/libsofthsm2.so",
        "/usr/lib/x86_64-linux-gnu/softhsm/libsofthsm2.so",
        "/opt/homebrew/lib/softhsm/libsofthsm2.so",
    ]


def _softokn_candidates(config: HarnessConfig) -> list[str]:
    library = f"libsoftokn3{config.shared_ext}"
    paths: list[str] = []
    if config.softokn_dir is not None:
        paths.append(str(config.softokn_dir / library))
    paths.extend(
        [
            f"/usr/lib64/{library}",
            f"/usr/lib/x86_64-linux-gnu/{library}",
            f"/usr/lib/x86_64-linux-gnu/nss/{library}",
        ]
    )
    return paths


@dataclass(frozen=True)
class Backend:
    """
    A software token implementation ("suite").

    ``initialize_uri`` and ``pin_uri`` select the token for the p11tool
    administrative and user PIN initialization calls.
    """

    name: str
    token_label: str
    init_method: Literal["p11tool", "certutil"]
    candidates: Callable[[HarnessConfig], list[str]] = field(repr=False)
    config_env: str | None = None
    initialize_uri: str | None = None
    pin_uri: str | None = None
    quirks: tuple[str, ...] = ()
    uses_init_args: bool = False
    supports_explicit_ec: bool = True
    supports_edwards: bool = False

    def module_candidates(self, config: HarnessConfig) -> list[str]:
        return self.candidates(config)

    def config_env_value(self, work_dir: Path, token_dir: Path) -> str | None:
        if self.config_env == "KRYOPTIC_CONF":
            return str(token_dir / "kryoptic.sql")
        if self.config_env == "SOFTHSM2_CONF":
            return str(work_dir / "softhsm.conf")
        if self.config_env == "NSS_LIB_PARAMS":
            return f"configDir={token_dir}"
        return None

    def write_token_config(self, work_dir: Path, token_dir: Path) -> None:
        if self.config_env != "SOFTHSM2_CONF":
            return
        (work_dir / "softhsm.conf").write_text(
            "\n".join(
                [
                    f"directories.tokendir = {token_dir}",
                    "objectstore.backend = file",
                    "log.level = DEBUG",
                    "",
                ]
            ),
            encoding="utf-8",
        )

    def init_args(self, token_dir: Path) -> str | None:
        if not self.uses_init_args:
            return None
        return f"configDir={token_dir}"


BACKENDS: dict[str, Backend] = {
    "softokn": Backend(
        name="softokn",
        token_label="NSS Certificate DB",
        init_method="certutil",
        candidates=_softokn_candidates,
        config_env="NSS_LIB_PARAMS",
        uses_init_args=True,
        supports_explicit_ec=False,
    ),
    "softhsm": Backend(
        name="softhsm",
        token_label="Test",
        init_method="p11tool",
        candidates=_softhsm_candidates,
        config_env="SOFTHSM2_CONF",
        initialize_uri="pkcs11:model=SoftHSM%20v2",
        pin_uri="pkcs11:model=SoftHSM%20v2;manufacturer=SoftHSM%20project;token=Test",
        quirks=("no-deinit", "no-operation-state"),
        supports_edwards=True,
    ),
    "kryoptic": Backend(
        name="kryoptic",
        token_label="Test",
        init_method="p11tool",
        candidates=_kryoptic_candidates,
        config_env="KRYOPTIC_CONF",
        initialize_uri="pkcs11:manufacturer=Kryoptic%20Project",
        # p11tool only matches the token with NUL-terminated manufacturer
        # and token names here.
        pin_uri="pkcs11:manufacturer=Kryoptic%20Project%00;token=Test%00",
        quirks=("no-deinit",),
    ),
}

SUITE_NAMES: tuple[str, ...] = tuple(BACKENDS.keys())


def get_backend(name: str) -> Backend:
    try:
        return BACKENDS[name]
    except KeyError as exc:
        available = ", ".join(SUITE_NAMES)
        raise ValueError(f"Unknown suite '{name}'. Available suites: {available}") from exc
