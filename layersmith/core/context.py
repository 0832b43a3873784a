"""Build context providers.

The core only ever asks a context three things: which files are eligible,
the hash of a path, and the bytes of a path.  Ignore-pattern filtering
lives entirely here, outside the executor.
"""

from __future__ import annotations

import io
import logging
import os
import re
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import BinaryIO, Protocol, runtime_checkable

from layersmith.core.hasher import bytes_address, sha256_hex

logger = logging.getLogger(__name__)

IGNORE_FILE = ".dockerignore"


@runtime_checkable
class BuildContext(Protocol):
    """Read-only file set available to copy/add instructions.

    Paths are relative POSIX paths without a leading slash.
    """

    def paths(self) -> list[str]:
        """All eligible file paths, sorted."""
        ...

    def hash(self, path: str) -> str:
        """``"sha256:<hex>"`` of the file's bytes."""
        ...

    def open(self, path: str) -> BinaryIO:
        """Binary stream of the file's bytes."""
        ...


class MemoryContext:
    """Context backed by an in-memory ``{path: bytes}`` mapping."""

    def __init__(self, files: Mapping[str, bytes] | None = None) -> None:
        self._files = {p.lstrip("/"): data for p, data in (files or {}).items()}

    def paths(self) -> list[str]:
        return sorted(self._files)

    def hash(self, path: str) -> str:
        return bytes_address(self._files[path])

    def open(self, path: str) -> BinaryIO:
        return io.BytesIO(self._files[path])


class DirectoryContext:
    """Context backed by a directory, filtered by ``.dockerignore``.

    The file list is taken once at construction; hashes are computed lazily
    and cached.

    Parameters
    ----------
    root:
        Context directory.
    ignore_patterns:
        Extra patterns applied after those in ``.dockerignore``.
    """

    def __init__(self, root: Path, ignore_patterns: list[str] | None = None) -> None:
        self._root = Path(root)
        if not self._root.is_dir():
            raise FileNotFoundError(f"Build context is not a directory: {root}")
        patterns = _read_ignore_file(self._root / IGNORE_FILE) + list(ignore_patterns or [])
        self._matcher = IgnoreMatcher(patterns)
        self._paths = self._scan()
        self._hashes: dict[str, str] = {}
        self._lock = threading.Lock()
        logger.debug("Context %s: %d eligible files", self._root, len(self._paths))

    def _scan(self) -> list[str]:
        found: list[str] = []
        for current, dirnames, filenames in os.walk(self._root):
            rel_dir = Path(current).relative_to(self._root).as_posix()
            prefix = "" if rel_dir == "." else rel_dir + "/"
            for name in filenames:
                path = prefix + name
                if (Path(current) / name).is_file() and not self._matcher.ignored(path):
                    found.append(path)
        return sorted(found)

    def paths(self) -> list[str]:
        return list(self._paths)

    def hash(self, path: str) -> str:
        with self._lock:
            cached = self._hashes.get(path)
        if cached is not None:
            return cached
        digest = f"sha256:{sha256_hex(self._read(path))}"
        with self._lock:
            self._hashes[path] = digest
        return digest

    def open(self, path: str) -> BinaryIO:
        return io.BytesIO(self._read(path))

    def _read(self, path: str) -> bytes:
        if path not in self._paths:
            raise FileNotFoundError(f"Not in build context: {path}")
        return (self._root / path).read_bytes()


# ---------------------------------------------------------------------------
# .dockerignore matching
# ---------------------------------------------------------------------------


def _read_ignore_file(path: Path) -> list[str]:
    if not path.is_file():
        return []
    return path.read_text(encoding="utf-8").splitlines()


class IgnoreMatcher:
    """``.dockerignore`` semantics: last matching pattern wins, ``!`` re-includes.

    A pattern that matches a directory excludes everything below it.
    ``**`` matches any number of path segments.
    """

    def __init__(self, patterns: list[str]) -> None:
        self._rules: list[tuple[bool, re.Pattern[str]]] = []
        for raw in patterns:
            pattern = raw.strip()
            if not pattern or pattern.startswith("#"):
                continue
            negated = pattern.startswith("!")
            pattern = pattern.lstrip("!").strip().strip("/")
            if pattern.startswith("./"):
                pattern = pattern[2:]
            if pattern:
                self._rules.append((negated, translate_glob(pattern)))

    def ignored(self, path: str) -> bool:
        candidates = _self_and_parents(path)
        ignored = False
        for negated, regex in self._rules:
            if any(regex.match(c) for c in candidates):
                ignored = not negated
        return ignored


def _self_and_parents(path: str) -> list[str]:
    parts = path.split("/")
    return ["/".join(parts[:i]) for i in range(1, len(parts) + 1)]


def translate_glob(pattern: str) -> re.Pattern[str]:
    """Glob -> regex where ``*`` and ``?`` never cross ``/``."""
    out: list[str] = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        elif pattern[i] == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(pattern[i]))
                i += 1
            else:
                body = pattern[i + 1:end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end + 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(out) + "$")
