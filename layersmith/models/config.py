"""Per-build options."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


class BuildOptions(BaseModel):
    """Options for a single build invocation.

    Fields left as None fall back to ``BuildSettings``.
    """

    model_config = ConfigDict(frozen=True)

    build_id: str = Field(default_factory=lambda: f"lb-{uuid.uuid4().hex[:12]}")
    target: str | None = None  # alias or index; defaults to the stage nothing depends on
    build_args: dict[str, str] = {}
    no_cache: bool = False
    max_concurrency: int | None = None
    instruction_timeout_seconds: float | None = None
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
