"""Environment-driven settings.

Reads from a ``.env`` file and ``LAYERSMITH_*`` environment variables.
"""

from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class BuildSettings(BaseSettings):
    """Engine settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export LAYERSMITH_MAX_CONCURRENCY=8
        export LAYERSMITH_STORE_PATH=/var/cache/layersmith/layers
        export LAYERSMITH_LOG_LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LAYERSMITH_",
        env_file_encoding="utf-8",
    )

    environment: str = "development"
    log_level: str = "INFO"

    # Storage paths
    store_path: Path = Path(".layersmith/layers")
    ledger_path: Path = Path(".layersmith/ledger.db")
    images_path: Path = Path(".layersmith/images")

    # Scheduling
    max_concurrency: int = 4
    instruction_timeout_seconds: float = 600.0

    # Remote ADD fetches
    fetch_max_attempts: int = 3
    fetch_backoff_seconds: float = 0.2
    fetch_backoff_cap_seconds: float = 3.0

    @property
    def is_production(self) -> bool:
        return self.environment == "production"
