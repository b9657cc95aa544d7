"""Typed settings for the claimmail sync core.

Settings are assembled from defaults and environment variables into Pydantic
models so the fetcher, listener and supervisor can rely on validated values.
Mailbox credentials can additionally be overridden at runtime through the
``EmailConfigStore`` (see ``email_config.py``); ``RuntimeSettings`` merges the
two on every access.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from claimmail.errors import ConfigurationError

if TYPE_CHECKING:
    from .email_config import EmailConfig, EmailConfigStore


DEFAULT_FILE_ROOT = Path("./storage")
DEFAULT_DATABASE_PATH = DEFAULT_FILE_ROOT / "claimmail.db"


class MailSyncSettings(BaseModel):
    """Sync cadence, batch size and push-session tuning."""

    enabled: bool = Field(True, description="Master switch for mail sync")
    use_idle: bool = Field(True, description="Prefer IMAP IDLE push over interval polling")
    interval_seconds: int = Field(300, ge=1, le=86400, description="Polling cadence")
    max_messages_per_run: int = Field(
        50, ge=1, le=1000, description="Fetch batch cap per pipeline run"
    )
    max_reconnect_attempts: int = Field(5, ge=1, le=100)
    reconnect_delay_seconds: float = Field(
        5.0, ge=0.0, le=3600.0, description="Base delay, multiplied by the attempt number"
    )
    keepalive_interval_seconds: float = Field(
        240.0, gt=0.0, le=1740.0, description="NOOP heartbeat interval, below server idle timeout"
    )
    idle_timeout_seconds: float = Field(
        120.0, gt=0.0, le=1740.0, description="Maximum time a single IDLE wait blocks"
    )
    post_process_delay_seconds: float = Field(1.0, ge=0.0, le=60.0)


class MailboxSettings(BaseModel):
    """Connection details for the single synced mailbox."""

    host: Optional[str] = Field(default=None, description="IMAP hostname")
    port: int = Field(993, ge=1, le=65535)
    user: Optional[str] = Field(default=None, description="Login name, usually the address")
    password: Optional[SecretStr] = Field(default=None)
    use_tls: bool = Field(True, description="Implicit TLS on connect")
    folder: str = Field("INBOX", description="Folder to sync")
    connection_timeout: int = Field(30, ge=1, le=600)

    @field_validator("host", "user")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.user)

    @property
    def has_password(self) -> bool:
        return bool(self.password and self.password.get_secret_value())


class StorageSettings(BaseModel):
    """Filesystem locations for attachments and the sync database."""

    file_root_path: Path = Field(default=DEFAULT_FILE_ROOT)
    database_path: Path = Field(default=DEFAULT_DATABASE_PATH)

    @field_validator("file_root_path", "database_path")
    @classmethod
    def _expand(cls, value: Path) -> Path:
        return value.expanduser()


class ServerSettings(BaseModel):
    """Bind address for the trigger API."""

    listen_host: str = Field(default="127.0.0.1")
    listen_port: int = Field(default=8765, ge=1024, le=65535)


class Settings(BaseModel):
    """Root configuration state."""

    sync: MailSyncSettings = Field(default_factory=MailSyncSettings)
    mailbox: MailboxSettings = Field(default_factory=MailboxSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)


def load_settings(
    environ: Optional[Mapping[str, str]] = None,
    *,
    overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Build settings from defaults, explicit overrides and the environment.

    Environment variables win over ``overrides`` so deployments stay 12-factor.
    """

    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}
    for key, value in (overrides or {}).items():
        data[key] = dict(value) if isinstance(value, Mapping) else value
    data = _apply_env_overrides(data, environ)
    try:
        return Settings.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


def _apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    sync = data.setdefault("sync", {})
    _set_env_override(sync, "enabled", environ, "MAIL_SYNC_ENABLED", cast_bool=True)
    _set_env_override(sync, "use_idle", environ, "MAIL_SYNC_USE_IDLE", cast_bool=True)
    _set_env_override(sync, "interval_seconds", environ, "MAIL_SYNC_INTERVAL_SECONDS", cast_int=True)
    _set_env_override(
        sync, "max_messages_per_run", environ, "MAIL_SYNC_MAX_MESSAGES_PER_RUN", cast_int=True
    )
    _set_env_override(
        sync, "max_reconnect_attempts", environ, "MAIL_SYNC_MAX_RECONNECT_ATTEMPTS", cast_int=True
    )
    _set_env_override(sync, "reconnect_delay_seconds", environ, "MAIL_SYNC_RECONNECT_DELAY_SECONDS")
    _set_env_override(sync, "keepalive_interval_seconds", environ, "MAIL_SYNC_KEEPALIVE_SECONDS")
    _set_env_override(sync, "idle_timeout_seconds", environ, "MAIL_SYNC_IDLE_TIMEOUT_SECONDS")

    mailbox = data.setdefault("mailbox", {})
    _set_env_override(mailbox, "host", environ, "IMAP_HOST")
    _set_env_override(mailbox, "port", environ, "IMAP_PORT", cast_int=True)
    _set_env_override(mailbox, "user", environ, "IMAP_USER")
    _set_env_override(mailbox, "password", environ, "IMAP_PASS")
    _set_env_override(mailbox, "use_tls", environ, "IMAP_TLS", cast_bool=True)

    storage = data.setdefault("storage", {})
    _set_env_override(storage, "file_root_path", environ, "FILE_ROOT_PATH")
    _set_env_override(storage, "database_path", environ, "CLAIMMAIL_DB_PATH")

    server = data.setdefault("server", {})
    _set_env_override(server, "listen_host", environ, "CLAIMMAIL_LISTEN_HOST")
    _set_env_override(server, "listen_port", environ, "CLAIMMAIL_LISTEN_PORT", cast_int=True)
    return data


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    environ: Mapping[str, str],
    env_name: str,
    *,
    cast_bool: bool = False,
    cast_int: bool = False,
) -> None:
    raw = environ.get(env_name)
    if raw is None or raw == "":
        return
    if cast_bool:
        mapping[key] = raw.lower() in {"1", "true", "yes"}
    elif cast_int:
        try:
            mapping[key] = int(raw)
        except ValueError as exc:
            raise ConfigurationError(f"{env_name} must be an integer, got {raw!r}") from exc
    else:
        mapping[key] = raw


def merge_mailbox_settings(
    env_mailbox: MailboxSettings, stored: Optional["EmailConfig"]
) -> MailboxSettings:
    """Overlay non-empty runtime values on top of the environment mailbox."""

    if stored is None:
        return env_mailbox
    merged = env_mailbox.model_copy()
    if stored.imap_host:
        merged.host = stored.imap_host
    if stored.imap_user:
        merged.user = stored.imap_user
    if stored.imap_pass and stored.imap_pass.get_secret_value():
        merged.password = stored.imap_pass
    if stored.imap_port is not None:
        merged.port = stored.imap_port
    if stored.imap_tls is not None:
        merged.use_tls = stored.imap_tls
    return merged


class RuntimeSettings:
    """Environment settings combined with the runtime email configuration.

    ``mailbox()`` is resolved on each call; the store keeps its own short
    cache so this is cheap enough to call once per sync pass.
    """

    def __init__(self, settings: Settings, store: Optional["EmailConfigStore"] = None) -> None:
        self.settings = settings
        self.store = store

    @property
    def sync(self) -> MailSyncSettings:
        return self.settings.sync

    @property
    def storage(self) -> StorageSettings:
        return self.settings.storage

    @property
    def server(self) -> ServerSettings:
        return self.settings.server

    def mailbox(self) -> MailboxSettings:
        stored = self.store.load() if self.store is not None else None
        return merge_mailbox_settings(self.settings.mailbox, stored)

    def sync_possible(self) -> bool:
        """True when sync is enabled and host and user are known."""
        return self.sync.enabled and self.mailbox().is_configured


__all__ = [
    "DEFAULT_DATABASE_PATH",
    "DEFAULT_FILE_ROOT",
    "MailSyncSettings",
    "MailboxSettings",
    "RuntimeSettings",
    "ServerSettings",
    "Settings",
    "StorageSettings",
    "load_settings",
    "merge_mailbox_settings",
]
