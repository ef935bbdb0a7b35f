from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Iterable


def first_existing(
    candidates: Iterable[str | Path],
    exists: Callable[[str], bool] = os.path.isfile,
) -> Path | None:
    """
    Return the first candidate accepted by ``exists``, or None.

    Empty entries (for example a candidate built from an unset environment
    variable) are ignored.
    """
    for candidate in candidates:
        text = str(candidate)
        if not text:
            continue
        if exists(text):
            return Path(text)
    return None
