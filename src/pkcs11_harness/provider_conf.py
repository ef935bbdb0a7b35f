from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

TEMPLATE_NAME = "openssl.cnf.in"
OUTPUT_NAME = "openssl.cnf"

_QUIRKS_MARKER = "##QUIRKS"
_INIT_ARGS_KEY = "pkcs11-module-init-args"

_logger = logging.getLogger("pkcs11_harness.provider_conf")


def render_provider_config(
    template: str,
    *,
    libs_path: str,
    build_dir: str,
    work_dir: str,
    shared_ext: str,
    pin_file: str,
    quirks: Iterable[str] = (),
    init_args: str | None = None,
) -> str:
    """
    Substitute the placeholders of the provider configuration template.

    The quirks marker becomes a ``pkcs11-module-quirks`` line (or is dropped
    when there are none). ``pkcs11-module-init-args`` lines survive only
    when ``init_args`` is given, uncommented and with their value replaced.
    """
    substitutions = {
        "@libtoollibs@": libs_path,
        "@testsblddir@": build_dir,
        "@testsdir@": work_dir,
        "@SHARED_EXT@": shared_ext,
        "@PINFILE@": pin_file,
    }
    quirk_list = " ".join(quirks)

    rendered: list[str] = []
    for line in template.splitlines():
        for placeholder, value in substitutions.items():
            line = line.replace(placeholder, value)
        if _QUIRKS_MARKER in line:
            if not quirk_list:
                continue
            line = line.replace(_QUIRKS_MARKER, f"pkcs11-module-quirks = {quirk_list}")
        if _INIT_ARGS_KEY in line:
            if init_args is None:
                continue
            # the template ships the key commented out
            indent = line[: len(line) - len(line.lstrip())]
            line = f"{indent}{_INIT_ARGS_KEY} = {init_args}"
        rendered.append(line)
    return "\n".join(rendered) + "\n"


def write_provider_config(
    *,
    template_path: Path,
    output_path: Path,
    libs_path: str,
    build_dir: str,
    work_dir: str,
    shared_ext: str,
    pin_file: str,
    quirks: Iterable[str] = (),
    init_args: str | None = None,
) -> Path | None:
    if not template_path.is_file():
        _logger.warning(
            "Provider config template %s not found; OPENSSL_CONF will not be exported.",
            template_path,
        )
        return None
    output_path.write_text(
        render_provider_config(
            template_path.read_text(encoding="utf-8"),
            libs_path=libs_path,
            build_dir=build_dir,
            work_dir=work_dir,
            shared_ext=shared_ext,
            pin_file=pin_file,
            quirks=quirks,
            init_args=init_args,
        ),
        encoding="utf-8",
    )
    _logger.info("Wrote provider config %s", output_path)
    return output_path
