"""Layer models (content-addressed, immutable)."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from layersmith.models.instructions import InstructionKind


class Layer(BaseModel):
    """One executed instruction's filesystem delta, addressed by fingerprint.

    The delta bytes themselves live in the layer store under
    ``fingerprint``; ``diff_digest`` is the SHA-256 of those bytes.
    """

    model_config = ConfigDict(frozen=True)

    fingerprint: str  # "sha256:<hex>"
    parent: str = ""  # parent fingerprint, "" for a base-image layer
    kind: InstructionKind
    stage: str
    line: int
    instruction: str  # Instruction.describe()
    diff_digest: str  # "sha256:<hex>" of the stored delta blob
    size_bytes: int = 0
    empty: bool = False  # metadata-only instruction, no filesystem change
    cache_hit: bool = False
