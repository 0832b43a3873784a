"""Tests for settings and per-build options."""

from __future__ import annotations

from pathlib import Path

from layersmith.config import BuildSettings
from layersmith.models.config import BuildOptions


class TestBuildSettings:
    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        settings = BuildSettings()
        assert settings.environment == "development"
        assert settings.log_level == "INFO"
        assert settings.max_concurrency == 4
        assert settings.instruction_timeout_seconds == 600.0
        assert settings.fetch_max_attempts == 3

    def test_default_paths(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        settings = BuildSettings()
        assert settings.store_path == Path(".layersmith/layers")
        assert settings.ledger_path == Path(".layersmith/ledger.db")
        assert settings.images_path == Path(".layersmith/images")

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("LAYERSMITH_MAX_CONCURRENCY", "9")
        monkeypatch.setenv("LAYERSMITH_STORE_PATH", str(tmp_path / "cache"))
        settings = BuildSettings()
        assert settings.max_concurrency == 9
        assert settings.store_path == tmp_path / "cache"

    def test_dotenv_file(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("LAYERSMITH_LOG_LEVEL=DEBUG\n")
        assert BuildSettings().log_level == "DEBUG"

    def test_is_production(self):
        assert BuildSettings(environment="production").is_production is True
        assert BuildSettings(environment="staging").is_production is False


class TestBuildOptions:
    def test_defaults(self):
        options = BuildOptions()
        assert options.build_id.startswith("lb-")
        assert options.target is None
        assert options.build_args == {}
        assert options.no_cache is False
        assert options.max_concurrency is None

    def test_build_ids_are_unique(self):
        assert BuildOptions().build_id != BuildOptions().build_id
