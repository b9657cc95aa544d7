"""Sync checkpoint persistence and sync result models.

The checkpoint records the highest IMAP UID the ingestion pipeline has
processed and when the last pass finished. The UID only moves forward; the
monotonic max is applied inside a single SQLite upsert so concurrent pipeline
runs cannot regress it.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Sync state models
# ---------------------------------------------------------------------------


class Checkpoint(BaseModel):
    """Persistent sync position for the mailbox."""

    last_processed_id: Optional[str] = Field(
        default=None, description="Highest processed UID, as a decimal string"
    )
    last_synced_at: Optional[datetime] = Field(
        default=None, description="When the last pipeline pass finished"
    )

    @property
    def last_processed_uid(self) -> Optional[int]:
        if self.last_processed_id is None:
            return None
        try:
            return int(self.last_processed_id)
        except ValueError:
            return None


class ItemFailure(BaseModel):
    """One message or attachment that could not be processed."""

    item: str = Field(..., description="UID, message-id or attachment name")
    error: str = Field(..., description="Error summary")
    stage: str = Field(default="process", description="fetch, process or attachment")


class SyncResult(BaseModel):
    """Result of one ingestion pipeline pass."""

    new_messages: int = Field(default=0, ge=0)
    new_threads: int = Field(default=0, ge=0)
    fetched: int = Field(default=0, ge=0, description="Messages returned by the fetcher")
    duplicates: int = Field(default=0, ge=0, description="Messages skipped by message-id")
    highest_id: Optional[str] = Field(default=None, description="Highest UID seen this pass")
    failures: List[ItemFailure] = Field(default_factory=list)
    skipped_reason: Optional[str] = Field(
        default=None, description="Why the pass did nothing, when it was skipped"
    )
    sync_duration_seconds: float = Field(default=0.0, ge=0.0)

    @property
    def has_changes(self) -> bool:
        return bool(self.new_messages or self.new_threads)

    def to_api(self) -> dict[str, Any]:
        """Response body shape used by the trigger API."""
        return {"newMessages": self.new_messages, "newThreads": self.new_threads}


# ---------------------------------------------------------------------------
# Checkpoint persistence
# ---------------------------------------------------------------------------


SCHEMA = """
CREATE TABLE IF NOT EXISTS mail_sync_checkpoint (
    id TEXT PRIMARY KEY,
    last_processed_id TEXT,
    last_synced_at TEXT
);
"""

_ROW_ID = "default"

# Both sides are compared as integers; a NULL candidate never wins.
_ADVANCE_SQL = """
INSERT INTO mail_sync_checkpoint(id, last_processed_id, last_synced_at)
VALUES (?, ?, ?)
ON CONFLICT(id) DO UPDATE SET
    last_processed_id = CASE
        WHEN excluded.last_processed_id IS NULL THEN mail_sync_checkpoint.last_processed_id
        WHEN mail_sync_checkpoint.last_processed_id IS NULL THEN excluded.last_processed_id
        WHEN CAST(excluded.last_processed_id AS INTEGER)
             > CAST(mail_sync_checkpoint.last_processed_id AS INTEGER)
            THEN excluded.last_processed_id
        ELSE mail_sync_checkpoint.last_processed_id
    END,
    last_synced_at = excluded.last_synced_at
"""


class CheckpointStore:
    """SQLite-backed single-row checkpoint store."""

    def __init__(self, path: Path) -> None:
        """Initialize checkpoint store.

        Args:
            path: Path to SQLite database file
        """
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path), timeout=30.0)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close database connection."""
        self._conn.commit()
        self._conn.close()

    def read(self) -> Checkpoint:
        """Current checkpoint; empty if nothing was ever synced."""
        cur = self._conn.cursor()
        cur.execute(
            "SELECT last_processed_id, last_synced_at FROM mail_sync_checkpoint WHERE id = ?",
            (_ROW_ID,),
        )
        row = cur.fetchone()
        if not row:
            return Checkpoint()
        return Checkpoint(
            last_processed_id=row[0],
            last_synced_at=datetime.fromisoformat(row[1]) if row[1] else None,
        )

    def advance(self, new_id: Optional[str]) -> Checkpoint:
        """Move the checkpoint forward to ``new_id`` if it is greater.

        ``last_synced_at`` is refreshed unconditionally, including when
        ``new_id`` is None or not greater than the stored id.

        Args:
            new_id: Candidate UID as a decimal string, or None

        Returns:
            The checkpoint after the update

        Raises:
            ValueError: If ``new_id`` is not a decimal integer
            sqlite3.Error: If the write fails
        """
        normalized: Optional[str] = None
        if new_id is not None:
            normalized = str(int(str(new_id).strip()))

        with self._conn:
            self._conn.execute(
                _ADVANCE_SQL,
                (_ROW_ID, normalized, datetime.now(timezone.utc).isoformat()),
            )
        return self.read()

    def touch(self) -> Checkpoint:
        """Refresh ``last_synced_at`` only."""
        return self.advance(None)

    def reset(self) -> None:
        """Forget the checkpoint so the next pass is a cold start."""
        with self._conn:
            self._conn.execute("DELETE FROM mail_sync_checkpoint WHERE id = ?", (_ROW_ID,))


__all__ = [
    "Checkpoint",
    "CheckpointStore",
    "ItemFailure",
    "SyncResult",
]
