"""YAML settings with persisted backend preference.

File precedence: DDIENGINE_CONFIG_FILE > DDIENGINE_CONFIG_DIR/ddiengine.yml >
~/.config/ddiengine/ddiengine.yml. Values in the file are deep-merged over
DEFAULT_SETTINGS; an unreadable file falls back to the defaults.
"""
from __future__ import annotations
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import copy
import os
import yaml
from loguru import logger

from ..core.errors import ConfigError

PACKAGE_DIR = Path(__file__).resolve().parent.parent
R_SCRIPTS_DIR = PACKAGE_DIR / "r"


class BackendMode(str, Enum):
    NATIVE = "native"
    EMBEDDED = "embedded"


DEFAULT_SETTINGS: Dict[str, Any] = {
    "backend": {
        "mode": os.getenv("DDIENGINE_BACKEND_MODE", BackendMode.NATIVE.value),
        # None -> PATH lookup (see core.engine_locator)
        "engine_path": None,
        "init_timeout_s": float(os.getenv("DDIENGINE_INIT_TIMEOUT_S", "8.0")),
        # directory holding dependencies.R / utils.R; None -> packaged scripts
        "library_dir": None,
    },
    "embedded": {
        # "module:Class"; None -> rpy2-backed RInterpreter
        "interpreter": None,
        "library_archive": None,
        "library_dir": None,
        "packages": ["DDIwR"],
    },
    "cache": {
        "dir": None,
        "include_engine_identity": True,
    },
    "fallback": {
        # answer used when nobody can be asked: once | default | cancel
        "default_choice": "once",
    },
}


def default_config_dir() -> Path:
    return Path.home() / ".config" / "ddiengine"


def default_data_dir() -> Path:
    env = os.getenv("DDIENGINE_DATA_DIR")
    if env:
        return Path(env)
    return Path.home() / ".local" / "share" / "ddiengine"


class Settings:
    def __init__(self, file_path: Optional[Union[str, Path]] = None):
        if file_path:
            self.file_path = Path(file_path)
        elif os.getenv("DDIENGINE_CONFIG_FILE"):
            self.file_path = Path(os.environ["DDIENGINE_CONFIG_FILE"])
        else:
            cfg_dir = Path(os.getenv("DDIENGINE_CONFIG_DIR", str(default_config_dir())))
            self.file_path = cfg_dir / "ddiengine.yml"

    def _read_file(self) -> Dict[str, Any]:
        """Keys stored in the file only, without defaults."""
        data: Dict[str, Any] = {}
        if self.file_path.exists():
            try:
                with open(self.file_path, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                logger.warning(f"failed to load settings from {self.file_path}: {e}")
                data = {}
            if not isinstance(data, dict):
                logger.warning(f"ignoring settings file {self.file_path}: top level is not a mapping")
                data = {}
        return data

    def load(self) -> Dict[str, Any]:
        return _deep_merge(copy.deepcopy(DEFAULT_SETTINGS), self._read_file())

    def save(self, cfg: Dict[str, Any]) -> None:
        """Write `cfg` over the keys already in the file; defaults are never persisted."""
        data = _deep_merge(self._read_file(), copy.deepcopy(cfg or {}))
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.file_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)

    # ------------------------------------------------------------------
    def section(self, name: str) -> Dict[str, Any]:
        return dict(self.load().get(name) or {})

    def get_backend_mode(self) -> BackendMode:
        raw = str(self.section("backend").get("mode") or BackendMode.NATIVE.value).strip().lower()
        try:
            return BackendMode(raw)
        except ValueError:
            logger.warning(f"unknown backend.mode {raw!r}; using native")
            return BackendMode.NATIVE

    def set_backend_mode(self, mode: Union[BackendMode, str]) -> None:
        try:
            mode = BackendMode(mode)
        except ValueError as e:
            raise ConfigError(f"invalid backend mode: {mode!r}") from e
        self.save({"backend": {"mode": mode.value}})
        logger.info(f"persisted backend mode={mode.value} to {self.file_path}")

    def scripts_dir(self) -> Path:
        configured = self.section("backend").get("library_dir")
        return Path(configured) if configured else R_SCRIPTS_DIR

    def cache_dir(self) -> Path:
        configured = self.section("cache").get("dir")
        return Path(configured) if configured else default_data_dir() / "cache"

    def embedded_library_dir(self) -> Path:
        configured = self.section("embedded").get("library_dir")
        return Path(configured) if configured else default_data_dir() / "r-library"

    def asset_paths(self) -> List[Path]:
        """Files whose bytes feed the catalog cache signature."""
        paths = sorted(self.scripts_dir().glob("*.R"))
        archive = self.section("embedded").get("library_archive")
        if archive:
            paths.append(Path(archive))
        return paths


def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


__all__ = ["Settings", "BackendMode", "DEFAULT_SETTINGS", "R_SCRIPTS_DIR", "default_data_dir"]
