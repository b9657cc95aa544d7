"""Thread, message and attachment records for ingested mail.

SQLite-backed persistence collaborator for the ingestion pipeline. Messages
are unique per non-null external Message-ID: the pipeline checks before it
inserts, and a partial UNIQUE index rejects any insert that loses a race.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional

from pydantic import BaseModel, Field

from claimmail.errors import PersistenceError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Record models
# ---------------------------------------------------------------------------


class MessageDirection(str, Enum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class AttachmentSource(str, Enum):
    CLIENT = "CLIENT"
    INTERNAL = "INTERNAL"


class MailThread(BaseModel):
    """A conversation, optionally linked to a business entity (claim)."""

    id: str
    subject_key: str = Field(default="", description="Subject of the first message")
    original_sender: Optional[str] = Field(default=None)
    forwarded_by: Optional[str] = Field(default=None)
    linked_entity_id: Optional[str] = Field(default=None, description="Claim id once linked")
    viewed_at: Optional[datetime] = Field(default=None)
    created_at: datetime
    updated_at: datetime

    @property
    def is_linked(self) -> bool:
        return self.linked_entity_id is not None


class MailMessage(BaseModel):
    """A stored message. Immutable once created."""

    id: str
    thread_id: str
    direction: MessageDirection = MessageDirection.INBOUND
    from_address: str = ""
    to_address: str = ""
    cc: Optional[str] = None
    subject: str = ""
    body_text: Optional[str] = Field(default=None, repr=False)
    body_html: Optional[str] = Field(default=None, repr=False)
    message_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    date: datetime
    created_at: datetime


class MailAttachment(BaseModel):
    id: str
    message_id: Optional[str] = Field(default=None, description="Owning MailMessage.id")
    linked_entity_id: Optional[str] = None
    file_name: str
    mime_type: str
    storage_path: str
    is_relevant: bool = True
    source: AttachmentSource = AttachmentSource.CLIENT


class DuplicateMessageError(Exception):
    """A message with the same external Message-ID already exists."""

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        super().__init__(f"Message already stored: {message_id}")


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


SCHEMA = """
CREATE TABLE IF NOT EXISTS mail_threads (
    id TEXT PRIMARY KEY,
    subject_key TEXT NOT NULL DEFAULT '',
    original_sender TEXT,
    forwarded_by TEXT,
    linked_entity_id TEXT,
    viewed_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_mail_threads_subject ON mail_threads(subject_key);

CREATE TABLE IF NOT EXISTS mail_messages (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL REFERENCES mail_threads(id),
    direction TEXT NOT NULL,
    from_address TEXT NOT NULL DEFAULT '',
    to_address TEXT NOT NULL DEFAULT '',
    cc TEXT,
    subject TEXT NOT NULL DEFAULT '',
    body_text TEXT,
    body_html TEXT,
    message_id TEXT,
    in_reply_to TEXT,
    date TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_mail_messages_message_id
    ON mail_messages(message_id) WHERE message_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_mail_messages_thread ON mail_messages(thread_id);

CREATE TABLE IF NOT EXISTS mail_attachments (
    id TEXT PRIMARY KEY,
    message_id TEXT REFERENCES mail_messages(id),
    linked_entity_id TEXT,
    file_name TEXT NOT NULL,
    mime_type TEXT NOT NULL,
    storage_path TEXT NOT NULL,
    is_relevant BOOLEAN DEFAULT 1,
    source TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_mail_attachments_message ON mail_attachments(message_id);
"""

_THREAD_COLUMNS = (
    "id, subject_key, original_sender, forwarded_by, linked_entity_id, "
    "viewed_at, created_at, updated_at"
)
_MESSAGE_COLUMNS = (
    "id, thread_id, direction, from_address, to_address, cc, subject, body_text, "
    "body_html, message_id, in_reply_to, date, created_at"
)
_ATTACHMENT_COLUMNS = (
    "id, message_id, linked_entity_id, file_name, mime_type, storage_path, is_relevant, source"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class MailRecordStore:
    """SQLite-backed store for threads, messages and attachments."""

    def __init__(self, path: Path) -> None:
        """Initialize record store.

        Args:
            path: Path to SQLite database file
        """
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path), timeout=30.0)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close database connection."""
        self._conn.commit()
        self._conn.close()

    @contextmanager
    def _write(self, action: str) -> Iterator[sqlite3.Connection]:
        try:
            with self._conn:
                yield self._conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise PersistenceError(
                f"Failed to {action}: {exc}", details={"action": action}
            ) from exc

    # -- threads ------------------------------------------------------------

    def find_thread_by_reference(
        self, message_id: Optional[str], in_reply_to: Optional[str]
    ) -> Optional[MailThread]:
        """Thread containing a message whose Message-ID is one of the given ids."""
        references = [ref for ref in (message_id, in_reply_to) if ref]
        if not references:
            return None
        placeholders = ", ".join("?" for _ in references)
        cur = self._conn.cursor()
        cur.execute(
            f"""
            SELECT {", ".join("t." + c.strip() for c in _THREAD_COLUMNS.split(","))}
            FROM mail_threads t
            JOIN mail_messages m ON m.thread_id = t.id
            WHERE m.message_id IN ({placeholders})
            ORDER BY t.created_at
            LIMIT 1
            """,
            references,
        )
        row = cur.fetchone()
        return self._thread_from_row(row) if row else None

    def find_thread_by_subject(self, subject: str) -> Optional[MailThread]:
        """Oldest thread whose subject key equals ``subject`` exactly."""
        cur = self._conn.cursor()
        cur.execute(
            f"SELECT {_THREAD_COLUMNS} FROM mail_threads WHERE subject_key = ? "
            "ORDER BY created_at LIMIT 1",
            (subject,),
        )
        row = cur.fetchone()
        return self._thread_from_row(row) if row else None

    def get_thread(self, thread_id: str) -> Optional[MailThread]:
        cur = self._conn.cursor()
        cur.execute(f"SELECT {_THREAD_COLUMNS} FROM mail_threads WHERE id = ?", (thread_id,))
        row = cur.fetchone()
        return self._thread_from_row(row) if row else None

    def create_thread(self, subject_key: str, original_sender: Optional[str]) -> MailThread:
        now = _now()
        thread_id = _new_id()
        with self._write("create thread") as conn:
            conn.execute(
                f"INSERT INTO mail_threads({_THREAD_COLUMNS}) VALUES (?, ?, ?, NULL, NULL, NULL, ?, ?)",
                (thread_id, subject_key, original_sender, now, now),
            )
        thread = self.get_thread(thread_id)
        if thread is None:
            raise PersistenceError(
                f"Thread {thread_id} missing after insert", details={"action": "create thread"}
            )
        return thread

    def touch_thread(self, thread_id: str) -> None:
        with self._write("update thread") as conn:
            conn.execute(
                "UPDATE mail_threads SET updated_at = ? WHERE id = ?", (_now(), thread_id)
            )

    def update_forwarding(self, thread_id: str, original_sender: str, forwarded_by: str) -> None:
        with self._write("update thread forwarding") as conn:
            conn.execute(
                "UPDATE mail_threads SET original_sender = ?, forwarded_by = ?, updated_at = ? "
                "WHERE id = ?",
                (original_sender, forwarded_by, _now(), thread_id),
            )

    def link_thread(self, thread_id: str, entity_id: Optional[str]) -> None:
        """Attach a thread to a business entity, or detach it with None."""
        with self._write("link thread") as conn:
            conn.execute(
                "UPDATE mail_threads SET linked_entity_id = ?, updated_at = ? WHERE id = ?",
                (entity_id, _now(), thread_id),
            )

    def delete_thread(self, thread_id: str) -> None:
        """Remove a thread that has no messages. Threads with messages are kept."""
        with self._write("delete thread") as conn:
            conn.execute(
                "DELETE FROM mail_threads WHERE id = ? AND NOT EXISTS "
                "(SELECT 1 FROM mail_messages WHERE thread_id = ?)",
                (thread_id, thread_id),
            )

    def count_threads(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM mail_threads").fetchone()[0]

    # -- messages -----------------------------------------------------------

    def message_exists(self, message_id: str) -> bool:
        cur = self._conn.execute(
            "SELECT 1 FROM mail_messages WHERE message_id = ? LIMIT 1", (message_id,)
        )
        return cur.fetchone() is not None

    def create_message(
        self,
        *,
        thread_id: str,
        from_address: str,
        to_address: str,
        cc: Optional[str],
        subject: str,
        body_text: Optional[str],
        body_html: Optional[str],
        message_id: Optional[str],
        in_reply_to: Optional[str],
        date: datetime,
        direction: MessageDirection = MessageDirection.INBOUND,
    ) -> MailMessage:
        """Insert a message.

        Raises:
            DuplicateMessageError: If ``message_id`` is already stored
            PersistenceError: For any other database failure
        """
        record = MailMessage(
            id=_new_id(),
            thread_id=thread_id,
            direction=direction,
            from_address=from_address,
            to_address=to_address,
            cc=cc,
            subject=subject,
            body_text=body_text,
            body_html=body_html,
            message_id=message_id,
            in_reply_to=in_reply_to,
            date=date,
            created_at=datetime.now(timezone.utc),
        )
        try:
            with self._write("create message") as conn:
                conn.execute(
                    f"INSERT INTO mail_messages({_MESSAGE_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.id,
                        record.thread_id,
                        record.direction.value,
                        record.from_address,
                        record.to_address,
                        record.cc,
                        record.subject,
                        record.body_text,
                        record.body_html,
                        record.message_id,
                        record.in_reply_to,
                        record.date.isoformat(),
                        record.created_at.isoformat(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            if message_id and self.message_exists(message_id):
                raise DuplicateMessageError(message_id) from exc
            raise PersistenceError(f"Failed to create message: {exc}") from exc
        return record

    def get_message_by_message_id(self, message_id: str) -> Optional[MailMessage]:
        cur = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM mail_messages WHERE message_id = ?", (message_id,)
        )
        row = cur.fetchone()
        return self._message_from_row(row) if row else None

    def list_thread_messages(self, thread_id: str) -> List[MailMessage]:
        cur = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM mail_messages WHERE thread_id = ? ORDER BY date, created_at",
            (thread_id,),
        )
        return [self._message_from_row(row) for row in cur.fetchall()]

    def count_messages(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM mail_messages").fetchone()[0]

    # -- attachments --------------------------------------------------------

    def create_attachment(
        self,
        *,
        message_id: Optional[str],
        file_name: str,
        mime_type: str,
        storage_path: str,
        linked_entity_id: Optional[str] = None,
        is_relevant: bool = True,
        source: AttachmentSource = AttachmentSource.CLIENT,
    ) -> MailAttachment:
        record = MailAttachment(
            id=_new_id(),
            message_id=message_id,
            linked_entity_id=linked_entity_id,
            file_name=file_name,
            mime_type=mime_type,
            storage_path=storage_path,
            is_relevant=is_relevant,
            source=source,
        )
        with self._write("create attachment") as conn:
            conn.execute(
                f"INSERT INTO mail_attachments({_ATTACHMENT_COLUMNS}, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.message_id,
                    record.linked_entity_id,
                    record.file_name,
                    record.mime_type,
                    record.storage_path,
                    int(record.is_relevant),
                    record.source.value,
                    _now(),
                ),
            )
        return record

    def list_attachments(self, message_id: str) -> List[MailAttachment]:
        cur = self._conn.execute(
            f"SELECT {_ATTACHMENT_COLUMNS} FROM mail_attachments WHERE message_id = ? ORDER BY created_at",
            (message_id,),
        )
        return [
            MailAttachment(
                id=row[0],
                message_id=row[1],
                linked_entity_id=row[2],
                file_name=row[3],
                mime_type=row[4],
                storage_path=row[5],
                is_relevant=bool(row[6]),
                source=AttachmentSource(row[7]),
            )
            for row in cur.fetchall()
        ]

    # -- row mapping --------------------------------------------------------

    @staticmethod
    def _thread_from_row(row: tuple) -> MailThread:
        return MailThread(
            id=row[0],
            subject_key=row[1],
            original_sender=row[2],
            forwarded_by=row[3],
            linked_entity_id=row[4],
            viewed_at=_dt(row[5]),
            created_at=datetime.fromisoformat(row[6]),
            updated_at=datetime.fromisoformat(row[7]),
        )

    @staticmethod
    def _message_from_row(row: tuple) -> MailMessage:
        return MailMessage(
            id=row[0],
            thread_id=row[1],
            direction=MessageDirection(row[2]),
            from_address=row[3],
            to_address=row[4],
            cc=row[5],
            subject=row[6],
            body_text=row[7],
            body_html=row[8],
            message_id=row[9],
            in_reply_to=row[10],
            date=datetime.fromisoformat(row[11]),
            created_at=datetime.fromisoformat(row[12]),
        )


__all__ = [
    "AttachmentSource",
    "DuplicateMessageError",
    "MailAttachment",
    "MailMessage",
    "MailRecordStore",
    "MailThread",
    "MessageDirection",
]
