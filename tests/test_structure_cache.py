import asyncio
import json

from ddiengine.core.normalizer import normalize_codebook
from ddiengine.core.structure_cache import Catalog, StructureCache

from payloads import catalog_payload


class Builder:
    def __init__(self, engine="native"):
        self.calls = 0
        self.engine = engine

    async def __call__(self):
        self.calls += 1
        raw = catalog_payload(self.engine)
        return Catalog(tree=normalize_codebook(raw["tree"]), elements=raw["elements"])


def test_build_once_then_served_from_disk(tmp_path):
    build = Builder()
    cache = StructureCache(tmp_path, version="1.0")
    first = asyncio.run(cache.get_or_build(build))
    second = asyncio.run(StructureCache(tmp_path, version="1.0").get_or_build(build))
    assert build.calls == 1
    assert second.to_dict() == first.to_dict()
    meta = json.loads(cache.meta_path.read_text(encoding="utf-8"))
    assert meta["signature"] == cache.compute_signature()
    assert "createdAt" in meta
    assert cache.root == tmp_path / "ddi_tree_cache" / "v1"


def test_signature_inputs_trigger_rebuild(tmp_path):
    asset = tmp_path / "utils.R"
    asset.write_text("ddi_json <- function(x) x\n", encoding="utf-8")
    build = Builder()

    def run(version="1.0", identity=None):
        cache = StructureCache(tmp_path / "cache", version=version, asset_paths=[asset], engine_identity=identity)
        return asyncio.run(cache.get_or_build(build))

    run()
    run()
    assert build.calls == 1
    run(version="1.1")
    assert build.calls == 2
    asset.write_text("ddi_json <- function(x) toJSON(x)\n", encoding="utf-8")
    run(version="1.1")
    assert build.calls == 3
    run(version="1.1", identity="R version 4.4.1")
    assert build.calls == 4
    run(version="1.1", identity="R version 4.4.1")
    assert build.calls == 4


def test_missing_assets_do_not_break_signature(tmp_path):
    a = StructureCache(tmp_path, version="1", asset_paths=[tmp_path / "gone.R"])
    b = StructureCache(tmp_path, version="1")
    assert a.compute_signature() == b.compute_signature()


def test_corrupt_cache_is_a_miss(tmp_path):
    build = Builder()
    cache = StructureCache(tmp_path, version="1")
    asyncio.run(cache.get_or_build(build))
    cache.tree_path.write_text("{not json", encoding="utf-8")
    asyncio.run(cache.get_or_build(build))
    assert build.calls == 2


def test_write_failure_still_returns_catalog(tmp_path):
    blocker = tmp_path / "cache"
    blocker.write_text("not a directory", encoding="utf-8")
    cache = StructureCache(blocker, version="1")
    catalog = asyncio.run(cache.get_or_build(Builder()))
    assert catalog.tree.name == "codeBook"
    assert "var" in catalog.elements
    assert not cache.meta_path.exists()


def test_invalidate_forces_rebuild(tmp_path):
    build = Builder()
    cache = StructureCache(tmp_path, version="1")
    asyncio.run(cache.get_or_build(build))
    cache.invalidate()
    cache.invalidate()
    asyncio.run(cache.get_or_build(build))
    assert build.calls == 2
