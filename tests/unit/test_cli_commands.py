"""Unit tests for the CLI: command registration and end-to-end behavior.

Exercises the Typer app via typer.testing.CliRunner with every storage
path pointed into a temporary directory.
"""

from __future__ import annotations

import json
import os

import pytest
import typer
from typer.testing import CliRunner

from layersmith.cli.app import app
from layersmith.cli.commands.build import parse_build_args
from layersmith.core.build_ledger import BuildLedger

runner = CliRunner()

SIMPLE = 'FROM scratch\nCOPY hello.txt /hello.txt\nENV GREETING=hi\nEXPOSE 8080\nCMD ["/hello"]\n'


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """A temp cwd with a context directory and isolated layersmith storage."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LAYERSMITH_STORE_PATH", str(tmp_path / "state/layers"))
    monkeypatch.setenv("LAYERSMITH_LEDGER_PATH", str(tmp_path / "state/ledger.db"))
    monkeypatch.setenv("LAYERSMITH_IMAGES_PATH", str(tmp_path / "state/images"))
    context = tmp_path / "ctx"
    context.mkdir()
    (context / "hello.txt").write_text("hello\n")
    (tmp_path / "Dockerfile").write_text(SIMPLE)
    return tmp_path


def _build(*extra: str):
    return runner.invoke(app, ["build", "Dockerfile", "--context", "ctx", *extra])


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestCliApp:
    """The CLI must register all expected commands and show help."""

    def test_no_args_shows_help(self):
        result = runner.invoke(app, [])
        # Typer's no_args_is_help may exit with 0 or 2 depending on version
        assert result.exit_code in (0, 2)
        assert "usage" in result.output.lower()

    def test_help_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("build", "plan", "history", "logs", "cache"):
            assert command in result.output

    @pytest.mark.parametrize("command", ["build", "plan", "history", "logs", "cache"])
    def test_command_help(self, command):
        result = runner.invoke(app, [command, "--help"])
        assert result.exit_code == 0


class TestParseBuildArgs:
    def test_pairs(self):
        assert parse_build_args(["A=1", "B=x=y", "EMPTY="]) == {"A": "1", "B": "x=y", "EMPTY": ""}

    def test_missing_separator(self):
        with pytest.raises(typer.BadParameter):
            parse_build_args(["NOVALUE"])


# ---------------------------------------------------------------------------
# build
# ---------------------------------------------------------------------------


class TestBuildCommand:
    def test_build_prints_digest_and_writes_manifest(self, workspace):
        result = _build("--output", "manifest.json")
        assert result.exit_code == 0, result.output
        manifest = json.loads((workspace / "manifest.json").read_text())
        assert manifest["digest"] in result.output
        assert manifest["config"]["env"] == {"GREETING": "hi"}
        assert manifest["config"]["exposed_ports"] == ["8080/tcp"]
        assert len(manifest["layers"]) == 5

    def test_rebuild_is_fully_cached(self, workspace):
        _build()
        result = _build()
        assert result.exit_code == 0
        assert "(5 cached)" in result.output

    def test_no_cache(self, workspace):
        _build()
        result = _build("--no-cache")
        assert "(0 cached)" in result.output

    def test_build_error_exits_one(self, workspace):
        (workspace / "Dockerfile").write_text("FROM scratch\nCOPY missing.txt /\n")
        result = _build()
        assert result.exit_code == 1
        assert "SourceNotFoundError" in result.output
        assert "Build ID" in result.output

    def test_syntax_error_exits_one(self, workspace):
        (workspace / "Dockerfile").write_text("FROM scratch\nFROBNICATE\n")
        result = _build()
        assert result.exit_code == 1
        assert "DockerfileSyntaxError" in result.output

    def test_missing_context(self, workspace):
        result = runner.invoke(app, ["build", "Dockerfile", "--context", "nope"])
        assert result.exit_code == 1
        assert "not a directory" in result.output

    def test_build_arg_and_target(self, workspace):
        (workspace / "Dockerfile").write_text(
            "FROM scratch AS first\nARG LABEL=x\nENV LABEL=$LABEL\nFROM scratch\n"
        )
        result = _build("--target", "first", "--build-arg", "LABEL=custom", "-o", "m.json")
        assert result.exit_code == 0, result.output
        manifest = json.loads((workspace / "m.json").read_text())
        assert manifest["target_stage"] == "first"
        assert manifest["config"]["env"] == {"LABEL": "custom"}


# ---------------------------------------------------------------------------
# plan
# ---------------------------------------------------------------------------


class TestPlanCommand:
    def test_plan_shows_stages(self, workspace):
        (workspace / "Dockerfile").write_text(
            "FROM scratch AS deps\nFROM scratch AS unused\nFROM deps AS app\n"
        )
        result = runner.invoke(app, ["plan", "Dockerfile"])
        assert result.exit_code == 0, result.output
        assert "deps" in result.output
        assert "app" in result.output
        assert "1 stage(s) not needed" in result.output
        assert not (workspace / "state/ledger.db").exists()

    def test_plan_unresolved_stage(self, workspace):
        (workspace / "Dockerfile").write_text("FROM ghost\n")
        result = runner.invoke(app, ["plan", "Dockerfile"])
        assert result.exit_code == 1
        assert "UnresolvedStageError" in result.output


# ---------------------------------------------------------------------------
# history / logs / cache
# ---------------------------------------------------------------------------


class TestLedgerCommands:
    def test_history_without_ledger(self, workspace):
        result = runner.invoke(app, ["history"])
        assert result.exit_code == 1
        assert "Ledger not found" in result.output

    def test_history_of_latest_build(self, workspace):
        _build()
        result = runner.invoke(app, ["history", "--verify-chain"])
        assert result.exit_code == 0, result.output
        assert "BUILT" in result.output
        assert "Hash chain valid" in result.output

    def test_history_unknown_build(self, workspace):
        _build()
        result = runner.invoke(app, ["history", "lb-doesnotexist"])
        assert result.exit_code == 1
        assert "Build not found" in result.output

    @pytest.mark.skipif(not os.path.exists("/bin/sh"), reason="needs /bin/sh")
    def test_logs_show_run_output(self, workspace):
        (workspace / "Dockerfile").write_text("FROM scratch\nRUN echo compiled-ok\n")
        assert _build().exit_code == 0
        ledger = BuildLedger(workspace / "state/ledger.db")
        entries = ledger.get_build_entries(ledger.get_latest_build_id())
        run_entry = entries[-1]
        result = runner.invoke(app, ["logs", run_entry.fingerprint[:19]])
        assert result.exit_code == 0, result.output
        assert "compiled-ok" in result.output

    def test_logs_unknown_fingerprint(self, workspace):
        _build()
        result = runner.invoke(app, ["logs", "sha256:zzzz"])
        assert result.exit_code == 1

    def test_cache_empty_and_filled(self, workspace):
        assert "empty" in runner.invoke(app, ["cache"]).output
        _build()
        result = runner.invoke(app, ["cache"])
        assert result.exit_code == 0
        assert "5 layer(s)" in result.output
