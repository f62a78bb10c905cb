"""Content-addressed cache for the structure catalog.

Layout (``<cache_dir>/ddi_tree_cache/v1``):
    tree.json      normalized catalog tree (NormalizedNode dict)
    elements.json  element descriptions, as returned by the engine
    meta.json      {"signature": ..., "createdAt": ...}; written last

The signature covers the application version, the bytes of the bundled
engine assets and, optionally, an engine identity string. Any change
rebuilds the catalog on next access. Persisting is best-effort.
"""
from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union
import asyncio
import datetime
import hashlib
import json
import os
import tempfile

from loguru import logger

from .errors import CacheWriteError
from .normalizer import NormalizedNode

CACHE_LAYOUT = "v1"
TREE_FILE = "tree.json"
ELEMENTS_FILE = "elements.json"
META_FILE = "meta.json"


@dataclass
class Catalog:
    tree: NormalizedNode
    elements: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"tree": self.tree.to_dict(), "elements": self.elements}


BuildFn = Callable[[], Awaitable[Catalog]]


def _iso_now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _write_json_atomic(path: Path, data: Any, indent: Optional[int] = None) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=path.name, suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=indent)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class StructureCache:
    def __init__(
        self,
        cache_dir: Union[str, Path],
        version: str,
        asset_paths: Iterable[Union[str, Path]] = (),
        engine_identity: Optional[str] = None,
    ):
        self.root = Path(cache_dir) / "ddi_tree_cache" / CACHE_LAYOUT
        self.version = str(version)
        self.asset_paths = [Path(p) for p in asset_paths]
        self.engine_identity = engine_identity

    @property
    def tree_path(self) -> Path:
        return self.root / TREE_FILE

    @property
    def elements_path(self) -> Path:
        return self.root / ELEMENTS_FILE

    @property
    def meta_path(self) -> Path:
        return self.root / META_FILE

    def compute_signature(self) -> str:
        h = hashlib.sha256()
        h.update(CACHE_LAYOUT.encode())
        h.update(b"\0version\0" + self.version.encode())
        for p in self.asset_paths:
            try:
                data = p.read_bytes()
            except OSError:
                # assets absent in this install; they do not contribute
                continue
            h.update(b"\0asset\0" + p.name.encode() + b"\0")
            h.update(data)
        if self.engine_identity:
            h.update(b"\0engine\0" + self.engine_identity.encode())
        return h.hexdigest()

    # ------------------------------------------------------------------
    def _load(self, signature: str) -> Optional[Catalog]:
        try:
            meta = json.loads(self.meta_path.read_text(encoding="utf-8"))
            if not isinstance(meta, dict) or meta.get("signature") != signature:
                return None
            tree = json.loads(self.tree_path.read_text(encoding="utf-8"))
            elements = json.loads(self.elements_path.read_text(encoding="utf-8"))
            return Catalog(tree=NormalizedNode.from_dict(tree), elements=elements)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.debug(f"[cache] miss reading {self.root}: {e}")
            return None

    def _save(self, signature: str, catalog: Catalog) -> None:
        try:
            _write_json_atomic(self.tree_path, catalog.tree.to_dict())
            _write_json_atomic(self.elements_path, catalog.elements)
            _write_json_atomic(self.meta_path, {"signature": signature, "createdAt": _iso_now()}, indent=2)
        except (OSError, TypeError, ValueError) as e:
            raise CacheWriteError(f"failed writing catalog cache to {self.root}: {e}") from e

    async def get_or_build(self, build_fn: BuildFn) -> Catalog:
        signature = self.compute_signature()
        cached = await asyncio.to_thread(self._load, signature)
        if cached is not None:
            logger.info(f"[cache] loaded catalog from {self.root}")
            return cached
        logger.info(f"[cache] signature {signature[:12]} not cached; building catalog")
        fresh = await build_fn()
        try:
            await asyncio.to_thread(self._save, signature, fresh)
            logger.info(f"[cache] saved catalog to {self.root}")
        except CacheWriteError as e:
            logger.warning(str(e))
        return fresh

    def invalidate(self) -> None:
        try:
            self.meta_path.unlink()
        except FileNotFoundError:
            pass


__all__ = ["StructureCache", "Catalog", "CACHE_LAYOUT"]
