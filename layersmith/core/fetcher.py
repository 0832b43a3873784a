"""Remote sources for add instructions.

Fetches ``http(s)://`` sources with bounded retries and capped
exponential backoff, and unpacks recognised archives into filesystem
entries.  Fetched bodies are memoised per URL for the lifetime of the
fetcher, so hashing a source for its fingerprint and applying it later
cost a single download.
"""

from __future__ import annotations

import io
import logging
import posixpath
import random
import tarfile
import threading
import time
import zipfile
from collections.abc import Callable
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict

from layersmith.core.errors import FetchError, InstructionTimeoutError
from layersmith.core.hasher import bytes_address
from layersmith.core.snapshot import FileNode, normalize_path

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES: set[int] = {408, 425, 429, 500, 502, 503, 504}

ARCHIVE_SUFFIXES: tuple[str, ...] = (
    ".tar",
    ".tar.gz",
    ".tgz",
    ".tar.bz2",
    ".tar.xz",
    ".zip",
)


def is_remote(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def is_archive(filename: str) -> bool:
    return filename.lower().endswith(ARCHIVE_SUFFIXES)


class FetchedResource(BaseModel):
    """A downloaded add source."""

    model_config = ConfigDict(frozen=True)

    url: str
    filename: str
    data: bytes
    digest: str  # "sha256:<hex>" of data


class RemoteFetcher:
    """Blocking HTTP fetcher with bounded retries.

    Parameters
    ----------
    max_attempts:
        Total attempts per URL, including the first.
    backoff_seconds:
        Base delay; attempt ``n`` waits up to ``base * 2**(n-1)`` seconds.
    backoff_cap_seconds:
        Upper bound on any single delay.
    timeout:
        Per-request timeout in seconds.
    client:
        Optional pre-built ``httpx.Client`` (tests pass one with a
        ``MockTransport``).
    sleep:
        Delay function, replaceable in tests.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 0.2,
        backoff_cap_seconds: float = 3.0,
        timeout: float | None = 600.0,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self.backoff_cap_seconds = backoff_cap_seconds
        self.timeout = timeout
        self._client = client or httpx.Client(follow_redirects=True)
        self._sleep = sleep
        self._fetched: dict[str, FetchedResource] = {}
        self._lock = threading.Lock()

    def close(self) -> None:
        self._client.close()

    def fetch(self, url: str, *, timeout: float | None = None) -> FetchedResource:
        """Download ``url``, retrying transient failures.

        ``timeout`` overrides the per-request timeout for this download;
        None keeps the fetcher's own.

        Raises
        ------
        FetchError
            Non-retryable status, or retries exhausted on a transient error.
        InstructionTimeoutError
            The last attempt timed out.
        """
        with self._lock:
            cached = self._fetched.get(url)
        if cached is not None:
            return cached

        resource = self._download(url, self.timeout if timeout is None else timeout)
        with self._lock:
            self._fetched.setdefault(url, resource)
        return resource

    def _download(self, url: str, timeout: float | None) -> FetchedResource:
        last_problem = ""
        timed_out = False
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self._client.get(url, timeout=timeout)
            except httpx.TimeoutException as exc:
                timed_out = True
                last_problem = f"timed out ({type(exc).__name__})"
            except httpx.TransportError as exc:
                timed_out = False
                last_problem = f"transport error ({exc})"
            else:
                if response.status_code in RETRYABLE_STATUS_CODES:
                    timed_out = False
                    last_problem = f"HTTP {response.status_code}"
                elif response.is_error:
                    raise FetchError(f"Fetching {url} failed: HTTP {response.status_code}")
                else:
                    logger.debug("Fetched %s (%d bytes)", url, len(response.content))
                    return FetchedResource(
                        url=url,
                        filename=_filename(url),
                        data=response.content,
                        digest=bytes_address(response.content),
                    )

            if attempt < self.max_attempts:
                delay = self._backoff(attempt)
                logger.warning(
                    "Fetch %s attempt %d/%d: %s; retrying in %.2fs",
                    url,
                    attempt,
                    self.max_attempts,
                    last_problem,
                    delay,
                )
                self._sleep(delay)

        message = f"Fetching {url} failed after {self.max_attempts} attempt(s): {last_problem}"
        if timed_out:
            raise InstructionTimeoutError(message)
        raise FetchError(message)

    def _backoff(self, attempt: int) -> float:
        # Capped exponential backoff with jitter.
        cap = min(self.backoff_cap_seconds, self.backoff_seconds * (2 ** (attempt - 1)))
        return random.uniform(cap / 2, cap)


def _filename(url: str) -> str:
    name = posixpath.basename(urlparse(url).path)
    return name or "download"


# ---------------------------------------------------------------------------
# Archive extraction
# ---------------------------------------------------------------------------


def unpack_archive(filename: str, data: bytes) -> dict[str, FileNode]:
    """Archive members as ``{relative path: FileNode}``.

    Member paths are clamped below the destination: absolute names and
    ``..`` components cannot escape it.

    Raises
    ------
    FetchError
        The archive is corrupt.
    """
    entries: dict[str, FileNode] = {}
    try:
        if filename.lower().endswith(".zip"):
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                for info in archive.infolist():
                    rel = normalize_path(info.filename).lstrip("/")
                    if not rel:
                        continue
                    mode = (info.external_attr >> 16) & 0o7777
                    if info.is_dir():
                        entries[rel] = FileNode.directory(mode or 0o755)
                    else:
                        entries[rel] = FileNode.file(archive.read(info), mode or 0o644)
        else:
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as archive:
                for info in archive.getmembers():
                    rel = normalize_path(info.name).lstrip("/")
                    if not rel:
                        continue
                    if info.isdir():
                        entries[rel] = FileNode.directory(info.mode)
                    elif info.issym():
                        entries[rel] = FileNode.symlink(info.linkname)
                    elif info.isfile():
                        extracted = archive.extractfile(info)
                        payload = extracted.read() if extracted is not None else b""
                        entries[rel] = FileNode.file(payload, info.mode)
    except (tarfile.TarError, zipfile.BadZipFile) as exc:
        raise FetchError(f"Cannot unpack {filename}: {exc}") from exc
    return entries
