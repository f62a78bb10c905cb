"""Engine expressions shared by both backends.

Helpers referenced here (``ddi_json``, ``normalize_codebook``,
``ddi_tree_elements``) are defined in ``ddiengine/r/utils.R``.
"""
from __future__ import annotations
from pathlib import Path
from typing import Union

from .worker_protocol import r_string

CATALOG_EXPR = "ddi_json(ddi_tree_elements())"
ENGINE_VERSION_EXPR = "R.version.string"


def load_codebook_expr(path: Union[str, Path]) -> str:
    return f"ddi_json(normalize_codebook(DDIwR::getCodebook({r_string(str(path))})))"


def lib_paths_expr(library_dir: Union[str, Path]) -> str:
    return f".libPaths(c(.libPaths(), {r_string(str(library_dir))}))"


def source_expr(script: Union[str, Path]) -> str:
    return f"source({r_string(Path(script).as_posix())})"


__all__ = ["CATALOG_EXPR", "ENGINE_VERSION_EXPR", "load_codebook_expr", "lib_paths_expr", "source_expr"]
