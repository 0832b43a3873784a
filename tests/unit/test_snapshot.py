"""Tests for snapshots, layer deltas and their deterministic tar form."""

from __future__ import annotations

import copy
import io
import os
import tarfile

import pytest

from layersmith.core.errors import LayerIntegrityError
from layersmith.core.snapshot import (
    EMPTY_SNAPSHOT,
    FileNode,
    LayerDelta,
    NodeType,
    Snapshot,
    normalize_path,
    snapshot_from_tar,
)


class TestNormalizePath:
    def test_relative_to_workdir(self):
        assert normalize_path("bin/tool", "/usr/local") == "/usr/local/bin/tool"

    def test_absolute_ignores_workdir(self):
        assert normalize_path("/etc/hosts", "/app") == "/etc/hosts"

    def test_parent_references_are_clamped_at_root(self):
        assert normalize_path("../../../etc/passwd", "/app") == "/etc/passwd"

    def test_root(self):
        assert normalize_path(".", "/") == "/"


class TestSnapshot:
    def test_with_entries_creates_parent_directories(self):
        snap = EMPTY_SNAPSHOT.with_entries({"/a/b/c.txt": FileNode.file(b"c")})
        assert snap.paths() == ["/a", "/a/b", "/a/b/c.txt"]
        assert snap.is_dir("/a/b")

    def test_derivation_leaves_original_untouched(self):
        original = EMPTY_SNAPSHOT.with_entries({"/x": FileNode.file(b"1")})
        original.with_entries({"/y": FileNode.file(b"2")})
        assert original.paths() == ["/x"]

    def test_file_replacing_directory_drops_its_contents(self):
        snap = EMPTY_SNAPSHOT.with_entries({"/d/inner": FileNode.file(b"i")})
        replaced = snap.with_entries({"/d": FileNode.file(b"now a file")})
        assert replaced.paths() == ["/d"]

    def test_existing_directory_keeps_contents(self):
        snap = EMPTY_SNAPSHOT.with_entries({"/d/inner": FileNode.file(b"i")})
        again = snap.with_entries({"/d": FileNode.directory(0o700)})
        assert "/d/inner" in again
        assert again.get("/d").mode == 0o700

    def test_walk_is_strictly_below(self):
        snap = EMPTY_SNAPSHOT.with_entries(
            {"/app/a": FileNode.file(b"a"), "/application": FileNode.file(b"x")}
        )
        assert [p for p, _ in snap.walk("/app")] == ["/app/a"]

    def test_copies_are_the_same_object(self):
        snap = EMPTY_SNAPSHOT.with_entries({"/f": FileNode.file(b"1")})
        assert copy.copy(snap) is snap
        assert copy.deepcopy(snap) is snap
        assert copy.deepcopy({"nested": [snap]})["nested"][0] is snap
        delta = EMPTY_SNAPSHOT.diff(snap)
        assert copy.deepcopy(delta) is delta

    def test_digest_depends_on_content_and_mode(self):
        a = EMPTY_SNAPSHOT.with_entries({"/f": FileNode.file(b"1")})
        b = EMPTY_SNAPSHOT.with_entries({"/f": FileNode.file(b"1")})
        c = EMPTY_SNAPSHOT.with_entries({"/f": FileNode.file(b"1", 0o755)})
        assert a.digest() == b.digest()
        assert a.digest() != c.digest()


class TestDiffAndApply:
    def test_diff_then_apply_reproduces_newer(self, base_snapshot):
        newer = base_snapshot.with_entries(
            {"/app/main.py": FileNode.file(b"print()"), "/etc/os-release": FileNode.file(b"ID=x")}
        )
        delta = base_snapshot.diff(newer)
        assert base_snapshot.apply(delta) == newer

    def test_deleting_a_tree_records_only_its_top(self):
        older = EMPTY_SNAPSHOT.with_entries(
            {"/cache/a": FileNode.file(b"a"), "/cache/b/c": FileNode.file(b"c")}
        )
        newer = Snapshot({})
        delta = older.diff(newer)
        assert delta.deleted == ("/cache",)
        assert older.apply(delta) == newer

    def test_unchanged_snapshot_gives_empty_delta(self, base_snapshot):
        assert base_snapshot.diff(base_snapshot).is_empty


class TestLayerTar:
    def test_identical_deltas_produce_identical_bytes(self):
        first = LayerDelta({"/b": FileNode.file(b"b"), "/a": FileNode.file(b"a")}, ["/z"])
        second = LayerDelta({"/a": FileNode.file(b"a"), "/b": FileNode.file(b"b")}, ["/z"])
        assert first.to_tar() == second.to_tar()

    def test_members_are_normalized(self):
        blob = LayerDelta({"/bin/tool": FileNode.file(b"#!", 0o755)}).to_tar()
        with tarfile.open(fileobj=io.BytesIO(blob)) as tar:
            (member,) = tar.getmembers()
        assert member.name == "bin/tool"
        assert member.mtime == 0
        assert (member.uid, member.gid) == (0, 0)
        assert member.mode == 0o755

    def test_deletions_become_whiteouts(self):
        blob = LayerDelta(deleted=["/var/cache/apt"]).to_tar()
        with tarfile.open(fileobj=io.BytesIO(blob)) as tar:
            assert tar.getnames() == ["var/cache/.wh.apt"]
        assert LayerDelta.from_tar(blob).deleted == ("/var/cache/apt",)

    def test_from_tar_restores_every_node_type(self):
        delta = LayerDelta(
            {
                "/d": FileNode.directory(0o750),
                "/d/f": FileNode.file(b"data", 0o600),
                "/d/link": FileNode.symlink("f"),
            }
        )
        restored = LayerDelta.from_tar(delta.to_tar())
        assert restored == delta
        assert restored.entries["/d/link"].type is NodeType.SYMLINK

    def test_garbage_blob_raises_integrity_error(self):
        with pytest.raises(LayerIntegrityError):
            LayerDelta.from_tar(b"definitely not a tar archive" * 40)

    def test_snapshot_from_tar(self):
        blob = LayerDelta({"/etc/motd": FileNode.file(b"hi")}).to_tar()
        snap = snapshot_from_tar(blob)
        assert snap.paths() == ["/etc", "/etc/motd"]


class TestHostBridge:
    def test_materialize_then_capture(self, tmp_path, base_snapshot):
        snap = base_snapshot.with_entries(
            {
                "/usr/bin/tool": FileNode.file(b"#!/bin/sh\n", 0o755),
                "/usr/bin/alias": FileNode.symlink("tool"),
            }
        )
        snap.materialize(tmp_path)
        assert (tmp_path / "usr/bin/tool").read_bytes() == b"#!/bin/sh\n"
        assert os.readlink(tmp_path / "usr/bin/alias") == "tool"
        assert Snapshot.capture(tmp_path) == snap
