"""Build ledger entry model (append-only, hash-chained).

One entry per layer outcome: cache hit, freshly built, or failed.  Run
output (stdout/stderr) is attributed to the layer here, so it can be
inspected after the build without re-executing anything.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class LayerStatus(str, Enum):
    CACHED = "cached"
    BUILT = "built"
    FAILED = "failed"


class LedgerEntry(BaseModel):
    """A single entry in the build ledger."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    build_id: str
    stage: str
    line: int = 0
    instruction: str = ""
    fingerprint: str = ""  # empty when the failure happened before fingerprinting
    status: LayerStatus
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str = ""
    duration_ms: int = 0
    timestamp_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    previous_entry_hash: str = ""
    entry_hash: str = ""  # computed on append, seals this entry
