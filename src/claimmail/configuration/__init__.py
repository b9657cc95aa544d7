"""Settings models and the runtime email configuration store."""

from .email_config import EmailConfig, EmailConfigStore, PASSWORD_MASK
from .settings import (
    MailSyncSettings,
    MailboxSettings,
    RuntimeSettings,
    ServerSettings,
    Settings,
    StorageSettings,
    load_settings,
    merge_mailbox_settings,
)

__all__ = [
    "EmailConfig",
    "EmailConfigStore",
    "PASSWORD_MASK",
    "MailSyncSettings",
    "MailboxSettings",
    "RuntimeSettings",
    "ServerSettings",
    "Settings",
    "StorageSettings",
    "load_settings",
    "merge_mailbox_settings",
]
