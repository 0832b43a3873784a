"""Tests for the per-stage cache resolver."""

from __future__ import annotations

from layersmith.core.cache import CacheResolver
from layersmith.core.hasher import bytes_address
from layersmith.core.layer_store import MemoryLayerStore
from layersmith.core.snapshot import FileNode, LayerDelta

FP_1 = "sha256:" + "1" * 64
FP_2 = "sha256:" + "2" * 64
FP_3 = "sha256:" + "3" * 64


def _delta(text: bytes) -> LayerDelta:
    return LayerDelta({"/out.txt": FileNode.file(text)})


def _seeded_store() -> MemoryLayerStore:
    store = MemoryLayerStore()
    store.put_if_absent(FP_1, _delta(b"one").to_tar())
    store.put_if_absent(FP_3, _delta(b"three").to_tar())
    return store


class TestCacheResolver:
    def test_hit_returns_stored_delta(self):
        resolver = CacheResolver(_seeded_store(), stage="build")
        cached = resolver.lookup(FP_1)
        assert cached is not None
        assert cached.delta == _delta(b"one")
        assert cached.diff_digest == bytes_address(_delta(b"one").to_tar())
        assert not resolver.chain_broken

    def test_miss_breaks_the_chain_for_later_layers(self):
        resolver = CacheResolver(_seeded_store())
        assert resolver.lookup(FP_2) is None
        assert resolver.chain_broken
        # FP_3 is stored, but follows a miss.
        assert resolver.lookup(FP_3) is None

    def test_storing_breaks_the_chain(self):
        store = _seeded_store()
        resolver = CacheResolver(store)
        resolver.store(FP_2, _delta(b"two"))
        assert resolver.lookup(FP_1) is None
        assert store.get(FP_2) == _delta(b"two").to_tar()

    def test_store_keeps_existing_blob(self):
        store = _seeded_store()
        cached = CacheResolver(store).store(FP_1, _delta(b"other"))
        assert store.get(FP_1) == _delta(b"one").to_tar()
        assert cached.delta == _delta(b"other")

    def test_no_cache_never_hits_but_still_stores(self):
        store = _seeded_store()
        resolver = CacheResolver(store, no_cache=True)
        assert resolver.chain_broken
        assert resolver.lookup(FP_1) is None
        resolver.store(FP_2, _delta(b"two"))
        assert store.exists(FP_2)

    def test_fresh_resolver_per_stage(self):
        store = _seeded_store()
        CacheResolver(store, stage="a").lookup(FP_2)
        assert CacheResolver(store, stage="b").lookup(FP_1) is not None
