"""Content-addressed, append-only layer store.

Storage layout: {root}/{hex[0:2]}/{hex[2:4]}/{hex}.layer
Keys are layer fingerprints; values are opaque layer blobs.  The only
write is put-if-absent, and there is no delete: every stored fingerprint
corresponds to a successfully completed layer.

Concurrent writers of the same fingerprint race safely: the blob goes to
a private temporary file first and is hard-linked into place, so exactly
one writer wins and the others discard their copy.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

_FINGERPRINT = re.compile(r"^sha256:[0-9a-f]{64}$")


def _digest(fingerprint: str) -> str:
    if not _FINGERPRINT.match(fingerprint):
        raise ValueError(f"Not a layer fingerprint: {fingerprint!r}")
    return fingerprint.removeprefix("sha256:")


class StoredLayer(BaseModel):
    """Listing entry for a stored layer."""

    model_config = ConfigDict(frozen=True)

    fingerprint: str
    size_bytes: int


@runtime_checkable
class LayerStore(Protocol):
    def exists(self, fingerprint: str) -> bool:
        ...

    def get(self, fingerprint: str) -> bytes | None:
        ...

    def put_if_absent(self, fingerprint: str, blob: bytes) -> bool:
        """Store ``blob``; return False if the fingerprint was already present."""
        ...

    def entries(self) -> list[StoredLayer]:
        ...


class MemoryLayerStore:
    """Thread-safe in-memory store, mainly for tests and dry runs."""

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def exists(self, fingerprint: str) -> bool:
        return _digest(fingerprint) in self._blobs

    def get(self, fingerprint: str) -> bytes | None:
        return self._blobs.get(_digest(fingerprint))

    def put_if_absent(self, fingerprint: str, blob: bytes) -> bool:
        key = _digest(fingerprint)
        with self._lock:
            if key in self._blobs:
                return False
            self._blobs[key] = blob
            return True

    def entries(self) -> list[StoredLayer]:
        return [
            StoredLayer(fingerprint=f"sha256:{k}", size_bytes=len(v))
            for k, v in sorted(self._blobs.items())
        ]


class DirectoryLayerStore:
    """Fingerprint-keyed blob store on the local filesystem.

    Parameters
    ----------
    root:
        Root directory for layer storage.  Created if missing.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, digest: str) -> Path:
        return self._root / digest[:2] / digest[2:4] / f"{digest}.layer"

    def exists(self, fingerprint: str) -> bool:
        return self._path(_digest(fingerprint)).exists()

    def get(self, fingerprint: str) -> bytes | None:
        path = self._path(_digest(fingerprint))
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def put_if_absent(self, fingerprint: str, blob: bytes) -> bool:
        digest = _digest(fingerprint)
        path = self._path(digest)
        if path.exists():
            return False

        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{digest[:12]}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as tmp:
                tmp.write(blob)
                tmp.flush()
                os.fsync(tmp.fileno())
            try:
                os.link(tmp_name, path)
            except FileExistsError:
                logger.debug("Layer %s already stored by another writer", fingerprint)
                return False
        finally:
            os.unlink(tmp_name)
        logger.debug("Stored layer %s (%d bytes)", fingerprint, len(blob))
        return True

    def entries(self) -> list[StoredLayer]:
        return [
            StoredLayer(
                fingerprint=f"sha256:{path.stem}", size_bytes=path.stat().st_size
            )
            for path in sorted(self._root.glob("*/*/*.layer"))
        ]
