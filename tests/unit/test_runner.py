"""Tests for the host command runner."""

from __future__ import annotations

import shutil

import pytest

from layersmith.core.errors import InstructionTimeoutError
from layersmith.core.runner import ChrootRunner, CommandRunner, HostRunner

pytestmark = pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")


class TestHostRunner:
    def test_satisfies_protocol(self):
        assert isinstance(HostRunner(), CommandRunner)
        assert isinstance(ChrootRunner(), CommandRunner)

    def test_runs_in_workdir_inside_root(self, tmp_path):
        result = HostRunner().run(
            tmp_path, ["sh", "-c", "pwd && echo made > here.txt"], env={}, workdir="/app", timeout=10
        )
        assert result.exit_code == 0
        assert result.stdout.strip() == str(tmp_path / "app")
        assert (tmp_path / "app" / "here.txt").read_text() == "made\n"

    def test_environment_and_root_variable(self, tmp_path):
        result = HostRunner().run(
            tmp_path,
            ["sh", "-c", 'echo "$GREETING:$LAYERSMITH_ROOTFS"'],
            env={"GREETING": "hi"},
            workdir="/",
            timeout=10,
        )
        assert result.stdout.strip() == f"hi:{tmp_path}"

    def test_non_zero_exit_and_stderr(self, tmp_path):
        result = HostRunner().run(
            tmp_path, ["sh", "-c", "echo oops >&2; exit 4"], env={}, workdir="/", timeout=10
        )
        assert result.exit_code == 4
        assert result.stderr == "oops\n"
        assert result.duration_ms >= 0

    def test_timeout(self, tmp_path):
        with pytest.raises(InstructionTimeoutError, match="timed out"):
            HostRunner().run(tmp_path, ["sh", "-c", "sleep 5"], env={}, workdir="/", timeout=0.2)
