from __future__ import annotations

import logging
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

TESTVARS_NAME = "testvars"
UNSETVARS_NAME = "unsetvars"

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_logger = logging.getLogger("pkcs11_harness.env_export")


@dataclass(frozen=True)
class ExportBlock:
    title: str | None
    values: dict[str, str] = field(default_factory=dict)


class EnvironmentExporter:
    """
    Accumulates exported variables in named blocks and writes them as a
    shell file test processes can source.

    A variable may be exported only once across all blocks.
    """

    def __init__(self) -> None:
        self._blocks: list[ExportBlock] = []
        self._names: set[str] = set()

    def add_block(
        self, values: Mapping[str, str | None], title: str | None = None
    ) -> ExportBlock:
        accepted: dict[str, str] = {}
        for name, value in values.items():
            if value is None:
                continue
            if not _NAME_RE.match(name):
                raise ValueError(f"Invalid environment variable name: {name!r}")
            if name in self._names or name in accepted:
                raise ValueError(f"Environment variable exported twice: {name}")
            accepted[name] = str(value)
        self._names.update(accepted)
        block = ExportBlock(title=title, values=accepted)
        self._blocks.append(block)
        return block

    @property
    def blocks(self) -> tuple[ExportBlock, ...]:
        return tuple(self._blocks)

    def snapshot(self) -> dict[str, str]:
        values: dict[str, str] = {}
        for block in self._blocks:
            values.update(block.values)
        return values

    def render(self) -> str:
        chunks: list[str] = []
        for block in self._blocks:
            if not block.values:
                continue
            lines: list[str] = []
            if block.title:
                lines.append(f"# {block.title}")
            lines.extend(
                f"export {name}={shlex.quote(value)}" for name, value in block.values.items()
            )
            chunks.append("\n".join(lines))
        return "\n\n".join(chunks) + "\n"

    def render_unset(self) -> str:
        return "".join(f"unset {name}\n" for name in self.snapshot())

    def write(self, work_dir: Path) -> tuple[Path, Path]:
        testvars = work_dir / TESTVARS_NAME
        unsetvars = work_dir / UNSETVARS_NAME
        testvars.write_text(self.render(), encoding="utf-8")
        unsetvars.write_text(self.render_unset(), encoding="utf-8")
        _logger.info(
            "Exported %d test variables to %s", len(self._names), testvars
        )
        return testvars, unsetvars


def load_testvars(path: Path) -> dict[str, str]:
    """Read back a file written by EnvironmentExporter."""
    values: dict[str, str] = {}
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
        tokens = shlex.split(line, comments=True)
        if not tokens:
            continue
        if tokens[0] != "export" or len(tokens) != 2 or "=" not in tokens[1]:
            raise ValueError(f"{path}:{lineno}: expected 'export NAME=VALUE'")
        name, _sep, value = tokens[1].partition("=")
        values[name] = value
    return values
