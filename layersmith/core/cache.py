"""Cache resolver: fingerprint lookups against the layer store.

One resolver is created per stage execution.  After the first miss in a
stage it stops consulting the store, so a miss at layer N forces
re-execution of every later layer of that stage.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

from layersmith.core.hasher import bytes_address
from layersmith.core.layer_store import LayerStore
from layersmith.core.snapshot import LayerDelta

logger = logging.getLogger(__name__)


class CachedLayer(NamedTuple):
    delta: LayerDelta
    diff_digest: str
    size_bytes: int


class CacheResolver:
    """Per-stage cache lookups and stores.

    Parameters
    ----------
    store:
        Persistent layer store.
    stage:
        Stage name, for log messages.
    no_cache:
        Skip lookups entirely; results are still stored.
    """

    def __init__(self, store: LayerStore, *, stage: str = "", no_cache: bool = False) -> None:
        self._store = store
        self._stage = stage
        self._no_cache = no_cache
        self._broken = False

    @property
    def chain_broken(self) -> bool:
        """True once a layer of this stage missed (or caching is off)."""
        return self._broken or self._no_cache

    def lookup(self, fingerprint: str) -> CachedLayer | None:
        """Return the stored layer for ``fingerprint``, or None on a miss."""
        if self.chain_broken:
            return None
        blob = self._store.get(fingerprint)
        if blob is None:
            self._broken = True
            logger.info("Cache miss %s in stage %s", fingerprint[:19], self._stage)
            return None
        logger.info("Cache hit %s in stage %s", fingerprint[:19], self._stage)
        return CachedLayer(LayerDelta.from_tar(blob), bytes_address(blob), len(blob))

    def store(self, fingerprint: str, delta: LayerDelta) -> CachedLayer:
        """Persist a freshly executed layer (put-if-absent)."""
        self._broken = True
        blob = delta.to_tar()
        if not self._store.put_if_absent(fingerprint, blob):
            logger.debug("Layer %s was already stored", fingerprint[:19])
        return CachedLayer(delta, bytes_address(blob), len(blob))
