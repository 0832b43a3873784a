"""Append-only, hash-chained build ledger backed by SQLite.

Every layer outcome of every build lands here: cache hit, freshly built,
or failed, with exit code and captured run output.  The CLI's history and
logs commands are projections of this table.

Design:
- Append-only: only ``append()`` writes; no update, no delete.
- Hash-chained per build: each entry includes the SHA-256 of the previous
  entry of the same build.
- WAL journal mode for concurrent readers.
- Appends are serialised in-process, since stages of one build append from
  several worker threads.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path

from layersmith.core.hasher import compute_entry_hash
from layersmith.models.ledger import LayerStatus, LedgerEntry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS build_ledger (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id            TEXT NOT NULL UNIQUE,
    build_id            TEXT NOT NULL,
    stage               TEXT NOT NULL,
    line                INTEGER NOT NULL DEFAULT 0,
    instruction         TEXT NOT NULL DEFAULT '',
    fingerprint         TEXT NOT NULL DEFAULT '',
    status              TEXT NOT NULL,
    exit_code           INTEGER,
    stdout              TEXT NOT NULL DEFAULT '',
    stderr              TEXT NOT NULL DEFAULT '',
    error               TEXT NOT NULL DEFAULT '',
    duration_ms         INTEGER NOT NULL DEFAULT 0,
    timestamp_utc       TEXT NOT NULL,
    previous_entry_hash TEXT NOT NULL DEFAULT '',
    entry_hash          TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_BUILD = """
CREATE INDEX IF NOT EXISTS idx_build_id ON build_ledger(build_id, id);
"""

_CREATE_IDX_FINGERPRINT = """
CREATE INDEX IF NOT EXISTS idx_fingerprint ON build_ledger(fingerprint, id);
"""

_COLUMNS = (
    "entry_id, build_id, stage, line, instruction, fingerprint, status, "
    "exit_code, stdout, stderr, error, duration_ms, timestamp_utc, "
    "previous_entry_hash, entry_hash"
)


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class BuildLedger:
    """Append-only, hash-chained build ledger.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_BUILD)
            conn.execute(_CREATE_IDX_FINGERPRINT)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Append an entry, computing its hash chain links.

        Returns the sealed entry with ``previous_entry_hash`` and
        ``entry_hash`` set.
        """
        with self._lock:
            previous_hash = self._get_latest_hash(entry.build_id)
            entry_dict = entry.model_dump(mode="json")
            entry_dict["previous_entry_hash"] = previous_hash
            entry_dict["entry_hash"] = ""
            sealed = entry.model_copy(
                update={
                    "previous_entry_hash": previous_hash,
                    "entry_hash": compute_entry_hash(entry_dict),
                }
            )
            self._insert(sealed)
        logger.debug(
            "Ledger %s: %s %s line %d", entry.build_id, entry.status.value, entry.stage, entry.line
        )
        return sealed

    def _insert(self, entry: LedgerEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO build_ledger ({_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.entry_id,
                    entry.build_id,
                    entry.stage,
                    entry.line,
                    entry.instruction,
                    entry.fingerprint,
                    entry.status.value,
                    entry.exit_code,
                    entry.stdout,
                    entry.stderr,
                    entry.error,
                    entry.duration_ms,
                    entry.model_dump(mode="json")["timestamp_utc"],
                    entry.previous_entry_hash,
                    entry.entry_hash,
                ),
            )
            conn.commit()

    def _get_latest_hash(self, build_id: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM build_ledger WHERE build_id = ? ORDER BY id DESC LIMIT 1",
                (build_id,),
            ).fetchone()
        return row[0] if row else ""

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_build_entries(self, build_id: str) -> list[LedgerEntry]:
        """All entries of a build, in append order."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM build_ledger WHERE build_id = ? ORDER BY id ASC",
                (build_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_latest_build_id(self) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT build_id FROM build_ledger ORDER BY id DESC LIMIT 1"
            ).fetchone()
        return row[0] if row else None

    def find_by_fingerprint(self, fingerprint: str) -> list[LedgerEntry]:
        """Entries for a layer fingerprint, newest first.

        A unique prefix of the fingerprint (as printed by the CLI) is
        accepted.
        """
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM build_ledger WHERE fingerprint LIKE ? "
                "ORDER BY id DESC",
                (fingerprint + "%",),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def find_output(self, fingerprint: str) -> LedgerEntry | None:
        """The newest entry that actually executed the layer (built or failed)."""
        for entry in self.find_by_fingerprint(fingerprint):
            if entry.status is not LayerStatus.CACHED:
                return entry
        return None

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, build_id: str) -> bool:
        """Recompute every entry hash of a build and check the links.

        Returns True if the chain is valid, raises LedgerIntegrityError
        otherwise.
        """
        prev_hash = ""
        for entry in self.get_build_entries(build_id):
            if entry.previous_entry_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )
            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, got {entry.entry_hash!r}"
                )
            prev_hash = entry.entry_hash
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        (
            entry_id,
            build_id,
            stage,
            line,
            instruction,
            fingerprint,
            status,
            exit_code,
            stdout,
            stderr,
            error,
            duration_ms,
            timestamp_utc,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            build_id=build_id,
            stage=stage,
            line=line,
            instruction=instruction,
            fingerprint=fingerprint,
            status=LayerStatus(status),
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            error=error,
            duration_ms=duration_ms,
            timestamp_utc=timestamp_utc,
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
