"""Immutable filesystem snapshots and layer deltas.

A ``Snapshot`` maps absolute POSIX paths to ``FileNode`` values; the root
``/`` is implicit.  Snapshots are never mutated: ``apply`` and the
mutation helpers return new snapshots.  A ``LayerDelta`` is what changed
between two snapshots and serializes to a deterministic tar blob (sorted
members, mtime 0, uid/gid 0, OCI ``.wh.`` whiteouts for deletions) so
identical deltas always produce identical bytes.
"""

from __future__ import annotations

import io
import os
import posixpath
import stat
import tarfile
from collections.abc import Iterable, Iterator, Mapping
from enum import Enum
from pathlib import Path
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict

from layersmith.core.errors import LayerIntegrityError
from layersmith.core.hasher import content_address, sha256_hex

WHITEOUT_PREFIX = ".wh."
DEFAULT_DIR_MODE = 0o755
DEFAULT_FILE_MODE = 0o644


class NodeType(str, Enum):
    FILE = "file"
    DIR = "dir"
    SYMLINK = "symlink"


class FileNode(BaseModel):
    """One filesystem entry."""

    model_config = ConfigDict(frozen=True)

    type: NodeType
    mode: int = DEFAULT_FILE_MODE
    data: bytes = b""
    target: str = ""  # symlink target

    @classmethod
    def file(cls, data: bytes, mode: int = DEFAULT_FILE_MODE) -> FileNode:
        return cls(type=NodeType.FILE, mode=mode, data=data)

    @classmethod
    def directory(cls, mode: int = DEFAULT_DIR_MODE) -> FileNode:
        return cls(type=NodeType.DIR, mode=mode)

    @classmethod
    def symlink(cls, target: str) -> FileNode:
        return cls(type=NodeType.SYMLINK, mode=0o777, target=target)

    def describe(self) -> list:
        """Canonical, JSON-friendly summary used for hashing."""
        return [self.type.value, self.mode, sha256_hex(self.data), self.target]


def normalize_path(path: str, workdir: str = "/") -> str:
    """Resolve ``path`` against ``workdir`` into a clean absolute path."""
    joined = posixpath.normpath(posixpath.join(workdir, path))
    return "/" + joined.lstrip("/")


def parent_dirs(path: str) -> Iterator[str]:
    """Yield every ancestor directory of ``path`` except ``/``, outermost first."""
    parts = path.strip("/").split("/")[:-1]
    for i in range(1, len(parts) + 1):
        yield "/" + "/".join(parts[:i])


def _is_under(path: str, directory: str) -> bool:
    return directory == "/" or path == directory or path.startswith(directory + "/")


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


class Snapshot:
    """Immutable path -> FileNode mapping."""

    def __init__(self, nodes: Mapping[str, FileNode] | None = None) -> None:
        self._nodes: Mapping[str, FileNode] = MappingProxyType(dict(nodes or {}))

    def __contains__(self, path: str) -> bool:
        return path == "/" or path in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Snapshot):
            return NotImplemented
        return dict(self._nodes) == dict(other._nodes)

    # Immutable: copies (including pydantic default copies) are the same object.
    def __copy__(self) -> Snapshot:
        return self

    def __deepcopy__(self, memo: dict) -> Snapshot:
        return self

    def __repr__(self) -> str:
        return f"Snapshot({len(self._nodes)} entries, {self.digest()[:19]})"

    def get(self, path: str) -> FileNode | None:
        return self._nodes.get(path)

    def paths(self) -> list[str]:
        return sorted(self._nodes)

    def items(self) -> list[tuple[str, FileNode]]:
        return sorted(self._nodes.items())

    def is_dir(self, path: str) -> bool:
        if path == "/":
            return True
        node = self._nodes.get(path)
        return node is not None and node.type is NodeType.DIR

    def walk(self, directory: str) -> list[tuple[str, FileNode]]:
        """Entries strictly below ``directory``, sorted by path."""
        return [
            (p, n) for p, n in self.items() if p != directory and _is_under(p, directory)
        ]

    def digest(self) -> str:
        """Content address of the whole tree."""
        return content_address([[p, *n.describe()] for p, n in self.items()])

    # ------------------------------------------------------------------
    # Derivation
    # ------------------------------------------------------------------

    def with_entries(self, entries: Mapping[str, FileNode]) -> Snapshot:
        """Return a snapshot with ``entries`` written (parents created)."""
        nodes = dict(self._nodes)
        for path in sorted(entries):
            for parent in parent_dirs(path):
                existing = nodes.get(parent)
                if existing is None or existing.type is not NodeType.DIR:
                    nodes[parent] = FileNode.directory()
            if entries[path].type is not NodeType.DIR or path not in nodes:
                _drop_tree(nodes, path)
            nodes[path] = entries[path]
        return Snapshot(nodes)

    def apply(self, delta: LayerDelta) -> Snapshot:
        """Fold a delta onto this snapshot: deletions first, then entries."""
        nodes = dict(self._nodes)
        for path in delta.deleted:
            _drop_tree(nodes, path)
        return Snapshot(nodes).with_entries(delta.entries)

    def diff(self, newer: Snapshot) -> LayerDelta:
        """Delta that turns this snapshot into ``newer``."""
        entries = {
            path: node
            for path, node in newer._nodes.items()
            if self._nodes.get(path) != node
        }
        removed = set(self._nodes) - set(newer._nodes)
        deleted = [
            path
            for path in sorted(removed)
            if not any(parent in removed for parent in parent_dirs(path))
        ]
        return LayerDelta(entries=entries, deleted=tuple(deleted))

    # ------------------------------------------------------------------
    # Host filesystem bridge (used by run instructions)
    # ------------------------------------------------------------------

    def materialize(self, root: Path) -> None:
        """Write the snapshot below ``root`` (which must exist)."""
        root = Path(root)
        dir_modes: list[tuple[Path, int]] = []
        for path, node in self.items():
            target = root / path.lstrip("/")
            if node.type is NodeType.DIR:
                target.mkdir(parents=True, exist_ok=True)
                dir_modes.append((target, node.mode))
            elif node.type is NodeType.SYMLINK:
                target.parent.mkdir(parents=True, exist_ok=True)
                os.symlink(node.target, target)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(node.data)
                os.chmod(target, node.mode)
        # Restrictive directory modes last, innermost first.
        for target, mode in reversed(dir_modes):
            os.chmod(target, mode)

    @classmethod
    def capture(cls, root: Path) -> Snapshot:
        """Read a directory tree back into a snapshot."""
        root = Path(root)
        nodes: dict[str, FileNode] = {}
        for current, dirnames, filenames in os.walk(root):
            rel = Path(current).relative_to(root).as_posix()
            base = "/" if rel == "." else "/" + rel
            for name in sorted(dirnames + filenames):
                full = Path(current) / name
                path = posixpath.join(base, name)
                info = os.lstat(full)
                if stat.S_ISLNK(info.st_mode):
                    nodes[path] = FileNode.symlink(os.readlink(full))
                elif stat.S_ISDIR(info.st_mode):
                    nodes[path] = FileNode.directory(stat.S_IMODE(info.st_mode))
                elif stat.S_ISREG(info.st_mode):
                    nodes[path] = FileNode.file(
                        full.read_bytes(), stat.S_IMODE(info.st_mode)
                    )
        return cls(nodes)


EMPTY_SNAPSHOT = Snapshot()


def _drop_tree(nodes: dict[str, FileNode], path: str) -> None:
    for existing in [p for p in nodes if _is_under(p, path) and path != "/"]:
        del nodes[existing]


# ---------------------------------------------------------------------------
# Layer delta
# ---------------------------------------------------------------------------


class LayerDelta:
    """Entries added or changed plus paths deleted by one instruction."""

    def __init__(
        self,
        entries: Mapping[str, FileNode] | None = None,
        deleted: Iterable[str] = (),
    ) -> None:
        self.entries: Mapping[str, FileNode] = MappingProxyType(dict(entries or {}))
        self.deleted: tuple[str, ...] = tuple(sorted(deleted))

    @property
    def is_empty(self) -> bool:
        return not self.entries and not self.deleted

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LayerDelta):
            return NotImplemented
        return dict(self.entries) == dict(other.entries) and self.deleted == other.deleted

    def __copy__(self) -> LayerDelta:
        return self

    def __deepcopy__(self, memo: dict) -> LayerDelta:
        return self

    def to_tar(self) -> bytes:
        """Serialize deterministically."""
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w", format=tarfile.GNU_FORMAT) as tar:
            members: list[tuple[str, FileNode | None]] = [
                (_whiteout(path), None) for path in self.deleted
            ]
            members.extend((path.lstrip("/"), node) for path, node in self.entries.items())
            for name, node in sorted(members, key=lambda m: m[0]):
                info = tarfile.TarInfo(name)
                info.mtime = 0
                info.uid = info.gid = 0
                info.uname = info.gname = ""
                payload = None
                if node is None:
                    info.type = tarfile.REGTYPE
                    info.mode = DEFAULT_FILE_MODE
                elif node.type is NodeType.DIR:
                    info.type = tarfile.DIRTYPE
                    info.mode = node.mode
                elif node.type is NodeType.SYMLINK:
                    info.type = tarfile.SYMTYPE
                    info.linkname = node.target
                    info.mode = node.mode
                else:
                    info.type = tarfile.REGTYPE
                    info.mode = node.mode
                    info.size = len(node.data)
                    payload = io.BytesIO(node.data)
                tar.addfile(info, payload)
        return buffer.getvalue()

    @classmethod
    def from_tar(cls, blob: bytes) -> LayerDelta:
        entries: dict[str, FileNode] = {}
        deleted: list[str] = []
        try:
            with tarfile.open(fileobj=io.BytesIO(blob), mode="r:*") as tar:
                for info in tar.getmembers():
                    path = normalize_path(info.name)
                    head, name = posixpath.split(path)
                    if name.startswith(WHITEOUT_PREFIX):
                        deleted.append(posixpath.join(head, name[len(WHITEOUT_PREFIX):]))
                    elif info.isdir():
                        entries[path] = FileNode.directory(info.mode)
                    elif info.issym():
                        entries[path] = FileNode.symlink(info.linkname)
                    elif info.isfile():
                        extracted = tar.extractfile(info)
                        data = extracted.read() if extracted is not None else b""
                        entries[path] = FileNode.file(data, info.mode)
        except tarfile.TarError as exc:
            raise LayerIntegrityError(f"Unreadable layer blob: {exc}") from exc
        return cls(entries, deleted)


def _whiteout(path: str) -> str:
    head, name = posixpath.split(path)
    return posixpath.join(head, WHITEOUT_PREFIX + name).lstrip("/")


def snapshot_from_tar(blob: bytes) -> Snapshot:
    """Load a root-filesystem tarball (e.g. an external base image)."""
    return EMPTY_SNAPSHOT.apply(LayerDelta.from_tar(blob))
