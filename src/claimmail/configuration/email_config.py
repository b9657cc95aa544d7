"""Runtime-editable email configuration.

Operators can change the IMAP host and credentials without redeploying.
The single ``email_config`` row overrides the ``IMAP_*`` environment
variables field by field; empty fields fall back to the environment.
Reads are cached for a minute because every sync pass resolves the mailbox.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from pydantic import BaseModel, Field, SecretStr

from claimmail.errors import PersistenceError

logger = logging.getLogger(__name__)

PASSWORD_MASK = "••••••••"
CACHE_TTL_SECONDS = 60.0


class EmailConfig(BaseModel):
    """Stored mailbox overrides."""

    imap_host: Optional[str] = Field(default=None)
    imap_port: Optional[int] = Field(default=None, ge=1, le=65535)
    imap_user: Optional[str] = Field(default=None)
    imap_pass: Optional[SecretStr] = Field(default=None)
    imap_tls: Optional[bool] = Field(default=None)
    remember_credentials: bool = Field(
        default=False, description="Persist newly supplied passwords"
    )
    updated_at: Optional[datetime] = Field(default=None)


SCHEMA = """
CREATE TABLE IF NOT EXISTS email_config (
    id TEXT PRIMARY KEY,
    imap_host TEXT,
    imap_port INTEGER,
    imap_user TEXT,
    imap_pass TEXT,
    imap_tls BOOLEAN,
    remember_credentials BOOLEAN DEFAULT 0,
    updated_at TEXT NOT NULL
);
"""

_ROW_ID = "default"


class EmailConfigStore:
    """SQLite-backed store for the runtime email configuration."""

    def __init__(
        self,
        path: Path,
        *,
        cache_ttl: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(SCHEMA)
        self._lock = threading.Lock()
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._cached: Optional[EmailConfig] = None
        self._cached_at: Optional[float] = None

    def close(self) -> None:
        self._conn.close()

    def clear_cache(self) -> None:
        """Drop the cached row so the next ``load`` hits the database."""
        with self._lock:
            self._cached = None
            self._cached_at = None

    def load(self) -> Optional[EmailConfig]:
        """Return the stored configuration, or None to fall back to env vars.

        Read failures are logged and treated as "no stored configuration".
        """
        with self._lock:
            now = self._clock()
            if self._cached_at is not None and now - self._cached_at < self._cache_ttl:
                return self._cached
            try:
                config = self._fetch()
            except sqlite3.Error as exc:
                logger.error(f"Error loading email config from database: {exc}")
                return None
            self._cached = config
            self._cached_at = now

        if config is not None:
            logger.debug(
                "Email config loaded from database",
                extra={
                    "imap_host": config.imap_host,
                    "imap_user": config.imap_user,
                    "has_imap_pass": bool(config.imap_pass),
                },
            )
        return config

    def save(self, update: EmailConfig) -> EmailConfig:
        """Persist ``update`` and clear the cache.

        A password is only written when ``remember_credentials`` is set. An
        update without a password keeps the stored one.
        """
        current = self._fetch()
        password: Optional[str] = None
        if update.imap_pass is not None and update.remember_credentials:
            password = update.imap_pass.get_secret_value() or None
        elif current is not None and current.imap_pass is not None:
            password = current.imap_pass.get_secret_value()

        updated_at = datetime.now(timezone.utc)
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO email_config(
                    id, imap_host, imap_port, imap_user, imap_pass, imap_tls,
                    remember_credentials, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    imap_host=excluded.imap_host,
                    imap_port=excluded.imap_port,
                    imap_user=excluded.imap_user,
                    imap_pass=excluded.imap_pass,
                    imap_tls=excluded.imap_tls,
                    remember_credentials=excluded.remember_credentials,
                    updated_at=excluded.updated_at
                """,
                (
                    _ROW_ID,
                    update.imap_host,
                    update.imap_port,
                    update.imap_user,
                    password,
                    None if update.imap_tls is None else int(update.imap_tls),
                    int(update.remember_credentials),
                    updated_at.isoformat(),
                ),
            )
        self.clear_cache()
        logger.info(
            "Email config saved",
            extra={"imap_host": update.imap_host, "has_imap_pass": password is not None},
        )
        saved = self._fetch()
        if saved is None:
            raise PersistenceError(
                "Email config missing after save", details={"action": "save email config"}
            )
        return saved

    def masked(self) -> Dict[str, Any]:
        """Stored configuration as a dict with the password replaced by a mask."""
        config = self.load()
        if config is None:
            return {}
        payload = config.model_dump(mode="json")
        payload["imap_pass"] = PASSWORD_MASK if config.imap_pass else None
        return payload

    def _fetch(self) -> Optional[EmailConfig]:
        cur = self._conn.cursor()
        cur.execute(
            """
            SELECT imap_host, imap_port, imap_user, imap_pass, imap_tls,
                   remember_credentials, updated_at
            FROM email_config
            WHERE id = ?
            """,
            (_ROW_ID,),
        )
        row = cur.fetchone()
        if not row:
            return None
        return EmailConfig(
            imap_host=row[0],
            imap_port=row[1],
            imap_user=row[2],
            imap_pass=SecretStr(row[3]) if row[3] else None,
            imap_tls=None if row[4] is None else bool(row[4]),
            remember_credentials=bool(row[5]),
            updated_at=datetime.fromisoformat(row[6]),
        )


__all__ = ["EmailConfig", "EmailConfigStore", "PASSWORD_MASK"]
