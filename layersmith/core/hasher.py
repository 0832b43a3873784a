"""Canonical hashing helpers for fingerprints and content addressing."""

from __future__ import annotations

import hashlib
import json
from typing import Any

from layersmith.models.instructions import InstructionKind


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes.

    - sorted keys
    - no whitespace separators (",", ":")
    - ensure_ascii=True
    - UTF-8 encoding
    """
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(obj: Any) -> str:
    """Content-address a JSON-serializable object as "sha256:<hex>"."""
    return f"sha256:{sha256_hex(canonical_json_bytes(obj))}"


def bytes_address(data: bytes) -> str:
    """Content-address raw bytes as "sha256:<hex>"."""
    return f"sha256:{sha256_hex(data)}"


def compute_fingerprint(
    parent: str,
    kind: InstructionKind,
    normalized: dict[str, Any],
    input_hashes: list[str] | None = None,
) -> str:
    """Fingerprint of a layer.

    hash(parent fingerprint, instruction kind, normalized arguments, input
    hashes).  Input hashes keep their order: for copy/add they follow the
    order sources were resolved in, which is itself deterministic.
    """
    payload = {
        "parent": parent,
        "kind": kind.value,
        "instruction": normalized,
        "inputs": list(input_hashes or []),
    }
    return content_address(payload)


def compute_entry_hash(entry_dict: dict[str, Any]) -> str:
    """SHA-256 of a ledger entry (excluding the entry_hash field itself)."""
    d = {k: v for k, v in entry_dict.items() if k != "entry_hash"}
    return sha256_hex(canonical_json_bytes(d))
