"""Adversarial tests: a damaged layer cache.

A blob that no longer decodes is an integrity failure, never a silent
cache miss and never a partially applied layer.
"""

from __future__ import annotations

import pytest

from layersmith.core.cache import CacheResolver
from layersmith.core.errors import LayerIntegrityError
from layersmith.core.snapshot import LayerDelta
from layersmith.models.config import BuildOptions

TEXT = "FROM tinylinux:1.0\nCOPY app /app\nRUN write /app/built yes\n"


def _corrupt(store, fingerprint: str) -> None:
    path = store._path(fingerprint.split(":", 1)[1])
    path.write_bytes(b"\x00not a tar archive\xff" * 8)


class TestCorruptedBlobs:
    def test_rebuild_over_corrupted_layer_fails(self, make_builder, context, store):
        first = make_builder().build(TEXT, context)
        _corrupt(store, first.layers[1].fingerprint)

        with pytest.raises(LayerIntegrityError) as excinfo:
            make_builder().build(TEXT, context)
        assert excinfo.value.stage == first.layers[1].stage
        assert excinfo.value.line == 2

    def test_no_cache_build_bypasses_the_damage(self, make_builder, context, store):
        from_scratch = make_builder().build(TEXT, context)
        _corrupt(store, from_scratch.layers[-1].fingerprint)
        rebuilt = make_builder().build(TEXT, context, BuildOptions(no_cache=True))
        assert rebuilt.manifest.digest == from_scratch.manifest.digest

    def test_resolver_raises_instead_of_missing(self, store):
        fingerprint = "sha256:" + "ee" * 32
        store.put_if_absent(fingerprint, b"garbage")
        resolver = CacheResolver(store, stage="app")
        with pytest.raises(LayerIntegrityError):
            resolver.lookup(fingerprint)

    def test_empty_blob_is_rejected(self):
        with pytest.raises(LayerIntegrityError):
            LayerDelta.from_tar(b"")
