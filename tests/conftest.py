"""Shared test fixtures for layersmith."""

from __future__ import annotations

import posixpath
import re
import shutil
import threading
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

import httpx
import pytest

from layersmith.config import BuildSettings
from layersmith.core.build_ledger import BuildLedger
from layersmith.core.builder import Builder
from layersmith.core.context import MemoryContext
from layersmith.core.fetcher import RemoteFetcher
from layersmith.core.images import MemoryImageSource
from layersmith.core.layer_store import DirectoryLayerStore
from layersmith.core.runner import CommandResult
from layersmith.core.snapshot import FileNode, Snapshot
from layersmith.models.manifest import ImageConfig

_VAR = re.compile(r"\$\{(\w+)\}|\$(\w+)")


# ---------------------------------------------------------------------------
# Scripted command runner
# ---------------------------------------------------------------------------


class ScriptRunner:
    """CommandRunner fake that interprets a tiny command language.

    Commands are joined with ``&&``:

    - ``write PATH TEXT`` / ``append PATH TEXT``
    - ``mkdir PATH`` / ``rm PATH``
    - ``echo TEXT`` (stdout) / ``warn TEXT`` (stderr)
    - ``printenv NAME``
    - ``fail CODE``

    In ``/bin/sh -c`` scripts ``$NAME`` and ``${NAME}`` expand from the command
    environment first, as a shell would; exec-form argv stays literal.
    Relative paths resolve against the working directory inside the root.
    """

    def __init__(self, on_run: Callable[[Sequence[str]], None] | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self.on_run = on_run
        self._lock = threading.Lock()

    @property
    def commands(self) -> list[str]:
        return [call["argv"][-1] for call in self.calls]

    def run(self, rootfs, argv, *, env, workdir, timeout) -> CommandResult:
        with self._lock:
            self.calls.append(
                {"argv": list(argv), "env": dict(env), "workdir": workdir, "timeout": timeout}
            )
        if self.on_run is not None:
            self.on_run(argv)

        if tuple(argv[:2]) == ("/bin/sh", "-c"):
            script = _VAR.sub(lambda m: env.get(m.group(1) or m.group(2), ""), argv[2])
        else:
            script = " ".join(argv)
        stdout: list[str] = []
        stderr: list[str] = []
        for command in script.split("&&"):
            parts = command.strip().split(None, 2)
            verb = parts[0] if parts else ""
            arg = parts[1] if len(parts) > 1 else ""
            rest = parts[2] if len(parts) > 2 else ""
            if verb in ("write", "append"):
                target = _resolve(rootfs, workdir, arg)
                target.parent.mkdir(parents=True, exist_ok=True)
                with open(target, "a" if verb == "append" else "w", encoding="utf-8") as fh:
                    fh.write(rest)
            elif verb == "mkdir":
                _resolve(rootfs, workdir, arg).mkdir(parents=True, exist_ok=True)
            elif verb == "rm":
                target = _resolve(rootfs, workdir, arg)
                if target.is_dir():
                    shutil.rmtree(target)
                else:
                    target.unlink()
            elif verb == "echo":
                stdout.append(" ".join(p for p in (arg, rest) if p) + "\n")
            elif verb == "warn":
                stderr.append(" ".join(p for p in (arg, rest) if p) + "\n")
            elif verb == "printenv":
                stdout.append(f"{arg}={env.get(arg, '')}\n")
            elif verb == "fail":
                return CommandResult(
                    exit_code=int(arg), stdout="".join(stdout), stderr="".join(stderr) or "failed\n"
                )
        return CommandResult(exit_code=0, stdout="".join(stdout), stderr="".join(stderr))


def _resolve(rootfs: Path, workdir: str, path: str) -> Path:
    absolute = path if path.startswith("/") else posixpath.join(workdir, path)
    return Path(rootfs) / absolute.lstrip("/")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def store(tmp_dir: Path) -> DirectoryLayerStore:
    """Provide a fresh DirectoryLayerStore in a temp directory."""
    return DirectoryLayerStore(tmp_dir / "layers")


@pytest.fixture
def ledger(tmp_dir: Path) -> BuildLedger:
    """Provide a fresh BuildLedger backed by a temp SQLite database."""
    return BuildLedger(tmp_dir / "ledger.db")


@pytest.fixture
def settings(tmp_dir: Path) -> BuildSettings:
    return BuildSettings(
        store_path=tmp_dir / "layers",
        ledger_path=tmp_dir / "ledger.db",
        images_path=tmp_dir / "images",
        max_concurrency=4,
        instruction_timeout_seconds=30,
    )


@pytest.fixture
def base_snapshot() -> Snapshot:
    return Snapshot().with_entries(
        {
            "/bin/sh": FileNode.file(b"#!fake shell\n", 0o755),
            "/etc/os-release": FileNode.file(b"ID=tinylinux\n"),
            "/tmp": FileNode.directory(0o777),
        }
    )


@pytest.fixture
def images(base_snapshot: Snapshot) -> MemoryImageSource:
    """Image catalog with ``tinylinux:1.0`` and ``tools:latest``."""
    source = MemoryImageSource()
    source.register(
        "tinylinux:1.0",
        base_snapshot,
        ImageConfig(env={"PATH": "/usr/bin:/bin"}, workdir="/", cmd=("/bin/sh",)),
    )
    source.register(
        "tools",
        Snapshot().with_entries({"/opt/tools/lint": FileNode.file(b"lint v2\n", 0o755)}),
    )
    return source


@pytest.fixture
def script_runner() -> ScriptRunner:
    return ScriptRunner()


@pytest.fixture
def context() -> MemoryContext:
    return MemoryContext(
        {
            "app/main.py": b"print('hello')\n",
            "app/util.py": b"def helper():\n    return 42\n",
            "app/static/logo.svg": b"<svg/>",
            "README.md": b"# demo\n",
            "requirements.txt": b"requests==2.32.0\n",
        }
    )


@pytest.fixture
def http_routes() -> dict[str, tuple[int, bytes]]:
    """URL -> (status, body) for the mock transport; tests add routes."""
    return {}


@pytest.fixture
def fetcher(http_routes: dict[str, tuple[int, bytes]]) -> RemoteFetcher:
    def handler(request: httpx.Request) -> httpx.Response:
        status, body = http_routes.get(str(request.url), (404, b""))
        return httpx.Response(status, content=body)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    return RemoteFetcher(client=client, sleep=lambda _: None, max_attempts=3)


@pytest.fixture
def make_builder(
    settings: BuildSettings,
    store: DirectoryLayerStore,
    images: MemoryImageSource,
    script_runner: ScriptRunner,
    fetcher: RemoteFetcher,
    ledger: BuildLedger,
) -> Callable[..., Builder]:
    """Factory fixture: a Builder wired to the test collaborators."""

    def _factory(**overrides: Any) -> Builder:
        wiring: dict[str, Any] = {
            "store": store,
            "images": images,
            "runner": script_runner,
            "fetcher": fetcher,
            "ledger": ledger,
        }
        wiring.update(overrides)
        return Builder(settings, **wiring)

    return _factory
