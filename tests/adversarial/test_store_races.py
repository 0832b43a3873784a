"""Adversarial tests: concurrent writers against the layer store.

Many builds racing to store the same fingerprint must leave exactly one
intact blob behind and report exactly one winner.
"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from layersmith.core.layer_store import DirectoryLayerStore, MemoryLayerStore

FP = "sha256:" + "cd" * 32
WRITERS = 16


def _race(store, blobs: list[bytes]) -> list[bool]:
    barrier = threading.Barrier(len(blobs), timeout=5)
    results: list[bool] = [False] * len(blobs)

    def writer(slot: int) -> None:
        barrier.wait()
        results[slot] = store.put_if_absent(FP, blobs[slot])

    threads = [threading.Thread(target=writer, args=(i,)) for i in range(len(blobs))]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results


@pytest.fixture(params=["memory", "directory"])
def racing_store(request, tmp_path: Path):
    if request.param == "memory":
        return MemoryLayerStore()
    return DirectoryLayerStore(tmp_path / "layers")


class TestConcurrentPuts:
    def test_exactly_one_writer_wins(self, racing_store):
        results = _race(racing_store, [b"layer"] * WRITERS)
        assert results.count(True) == 1
        assert racing_store.get(FP) == b"layer"

    def test_first_write_is_never_overwritten(self, racing_store):
        """Different payloads for one fingerprint: the stored blob is one of them, whole."""
        blobs = [f"payload-{i}".encode() * 100 for i in range(WRITERS)]
        _race(racing_store, blobs)
        assert racing_store.get(FP) in blobs
        assert racing_store.put_if_absent(FP, b"late") is False
        assert racing_store.get(FP) in blobs


class TestDirectoryStoreDebris:
    def test_no_temporary_files_survive_a_race(self, tmp_path):
        store = DirectoryLayerStore(tmp_path / "layers")
        _race(store, [b"x" * 4096] * WRITERS)
        leftovers = [p for p in (tmp_path / "layers").rglob("*") if p.name.endswith(".tmp")]
        assert leftovers == []
        assert len(store.entries()) == 1

    def test_concurrent_builds_share_layers(self, make_builder, context, script_runner):
        text = "FROM tinylinux:1.0\nCOPY app /app\nRUN write /app/built yes\n"
        errors: list[BaseException] = []
        results = []
        lock = threading.Lock()

        def build() -> None:
            try:
                result = make_builder().build(text, context)
            except Exception as exc:
                with lock:
                    errors.append(exc)
            else:
                with lock:
                    results.append(result)

        threads = [threading.Thread(target=build) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert len({r.manifest.digest for r in results}) == 1
