"""External base image sources.

Registry pull is out of scope: an ``ImageSource`` resolves an image
reference to a root filesystem snapshot plus its configuration.  The
special reference ``scratch`` is always the empty image.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

from layersmith.core.hasher import bytes_address, content_address
from layersmith.core.snapshot import EMPTY_SNAPSHOT, Snapshot, snapshot_from_tar
from layersmith.models.manifest import ImageConfig

logger = logging.getLogger(__name__)

SCRATCH = "scratch"


def normalize_reference(ref: str) -> str:
    """Add the implicit ``:latest`` tag to untagged, undigested references."""
    if ref == SCRATCH or "@" in ref:
        return ref
    last = ref.rsplit("/", 1)[-1]
    return ref if ":" in last else f"{ref}:latest"


def split_reference(ref: str) -> tuple[str, str]:
    """``name:tag`` or ``name@digest`` -> (name, tag-or-digest)."""
    ref = normalize_reference(ref)
    if "@" in ref:
        name, digest = ref.split("@", 1)
        return name, digest
    name, tag = ref.rsplit(":", 1)
    return name, tag


@runtime_checkable
class ImageSource(Protocol):
    """Resolves external base-image references."""

    def exists(self, ref: str) -> bool:
        ...

    def digest(self, ref: str) -> str:
        """Content address identifying the image's filesystem and config."""
        ...

    def load(self, ref: str) -> tuple[Snapshot, ImageConfig]:
        ...


class MemoryImageSource:
    """Images registered in memory, keyed by normalized reference."""

    def __init__(self) -> None:
        self._images: dict[str, tuple[Snapshot, ImageConfig]] = {}

    def register(
        self, ref: str, snapshot: Snapshot, config: ImageConfig | None = None
    ) -> None:
        self._images[normalize_reference(ref)] = (snapshot, config or ImageConfig())

    def exists(self, ref: str) -> bool:
        return ref == SCRATCH or normalize_reference(ref) in self._images

    def digest(self, ref: str) -> str:
        snapshot, config = self.load(ref)
        return content_address(
            {"rootfs": snapshot.digest(), "config": config.model_dump(mode="json")}
        )

    def load(self, ref: str) -> tuple[Snapshot, ImageConfig]:
        if ref == SCRATCH:
            return EMPTY_SNAPSHOT, ImageConfig()
        try:
            return self._images[normalize_reference(ref)]
        except KeyError:
            raise LookupError(f"Unknown image: {ref}") from None


class DirectoryImageSource:
    """Images stored as root-filesystem tarballs on disk.

    Layout: ``{root}/{name}/{tag}.tar`` with an optional ``{tag}.json``
    holding an ``ImageConfig``.  ``:`` in a digest tag is written as ``-``.
    Loaded images are cached for the lifetime of the source.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._cache: dict[str, tuple[Snapshot, ImageConfig, str]] = {}
        self._lock = threading.Lock()

    def _paths(self, ref: str) -> tuple[Path, Path]:
        name, tag = split_reference(ref)
        stem = tag.replace(":", "-")
        directory = self._root / name
        return directory / f"{stem}.tar", directory / f"{stem}.json"

    def exists(self, ref: str) -> bool:
        return ref == SCRATCH or self._paths(ref)[0].is_file()

    def digest(self, ref: str) -> str:
        return self._load(ref)[2]

    def load(self, ref: str) -> tuple[Snapshot, ImageConfig]:
        snapshot, config, _ = self._load(ref)
        return snapshot, config

    def _load(self, ref: str) -> tuple[Snapshot, ImageConfig, str]:
        if ref == SCRATCH:
            return EMPTY_SNAPSHOT, ImageConfig(), content_address(SCRATCH)
        key = normalize_reference(ref)
        with self._lock:
            if key in self._cache:
                return self._cache[key]
        tar_path, config_path = self._paths(ref)
        if not tar_path.is_file():
            raise LookupError(f"Unknown image: {ref}")
        blob = tar_path.read_bytes()
        config = ImageConfig()
        config_digest = ""
        if config_path.is_file():
            raw = config_path.read_bytes()
            config = ImageConfig.model_validate(json.loads(raw))
            config_digest = bytes_address(raw)
        entry = (
            snapshot_from_tar(blob),
            config,
            content_address({"rootfs": bytes_address(blob), "config": config_digest}),
        )
        logger.debug("Loaded image %s from %s", key, tar_path)
        with self._lock:
            self._cache[key] = entry
        return entry
