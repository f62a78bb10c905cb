"""Native engine discovery.

Resolution order:
1. explicit path (settings ``backend.engine_path``)
2. DDIENGINE_R_BINARY environment variable
3. ``R`` on PATH (``shutil.which`` honours PATHEXT on Windows)

An ``Rscript`` path is mapped to the sibling ``R`` binary, since the worker
drives an interactive session over stdin.
"""
from __future__ import annotations
from pathlib import Path
from typing import Optional, Union
import os
import re
import shutil

from loguru import logger

_RSCRIPT = re.compile(r"Rscript(\.exe)?$", re.IGNORECASE)


def to_r_binary(path: Union[str, Path]) -> str:
    text = str(path)
    return _RSCRIPT.sub(lambda m: "R" + (m.group(1) or ""), text)


def _usable(candidate: str) -> Optional[str]:
    p = Path(candidate)
    if p.is_file() and os.access(p, os.X_OK):
        return str(p)
    # bare command names go through PATH lookup
    return shutil.which(candidate)


def locate_engine(configured: Optional[Union[str, Path]] = None) -> Optional[str]:
    for source, value in (("settings", configured), ("env", os.getenv("DDIENGINE_R_BINARY"))):
        if not value:
            continue
        found = _usable(to_r_binary(value))
        if found:
            logger.debug(f"[locator] engine from {source}: {found}")
            return found
        logger.warning(f"[locator] configured engine not usable ({source}): {value}")
    found = shutil.which("R")
    if found:
        logger.debug(f"[locator] engine on PATH: {found}")
    else:
        logger.info("[locator] no native engine found on PATH")
    return found


__all__ = ["locate_engine", "to_r_binary"]
