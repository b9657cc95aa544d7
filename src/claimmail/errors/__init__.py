"""Centralized error definitions for claimmail.

Usage:
    from claimmail.errors import ClaimMailError, handle_error

    try:
        result = await supervisor.sync_now()
    except ClaimMailError as e:
        print(handle_error(e))
"""

from __future__ import annotations

from claimmail.errors.user_messages import (
    format_error_for_cli,
    format_error_for_user,
    get_recovery_suggestion,
    get_user_message,
)


# =============================================================================
# Base Error
# =============================================================================


class ClaimMailError(Exception):
    """Base exception for all claimmail errors.

    Attributes:
        code: Error code for categorization
        user_message: User-friendly message (optional override)
        recoverable: Whether the error is potentially recoverable
        details: Additional error details for debugging
    """

    code: str = "CLAIMMAIL_ERROR"
    default_message: str = "An unexpected mail sync error occurred"
    recoverable: bool = True

    def __init__(
        self,
        message: str | None = None,
        *,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self._user_message = user_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Get user-friendly message."""
        if self._user_message:
            return self._user_message
        return get_user_message(self)

    @property
    def recovery_suggestion(self) -> str:
        """Get recovery suggestion."""
        return get_recovery_suggestion(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(ClaimMailError):
    """Base error for configuration issues. Never retried."""

    code = "CONFIGURATION_ERROR"
    default_message = "Configuration error"
    recoverable = False


class MailboxNotConfiguredError(ConfigurationError):
    """IMAP host or user is missing."""

    code = "MAILBOX_NOT_CONFIGURED"
    default_message = (
        "IMAP configuration is missing. Please configure email settings or set "
        "IMAP_HOST and IMAP_USER in the environment."
    )


class MailboxPasswordMissingError(ConfigurationError):
    """IMAP password is missing."""

    code = "MAILBOX_PASSWORD_MISSING"
    default_message = (
        "IMAP password is missing. Please set IMAP_PASS or store the password "
        "in the runtime email configuration."
    )


# =============================================================================
# Connection Errors
# =============================================================================


class MailConnectionError(ClaimMailError):
    """Base error for mailbox connection issues."""

    code = "MAIL_CONNECTION_ERROR"
    default_message = "Mailbox connection failed"
    recoverable = True


class HostUnresolvableError(MailConnectionError):
    """DNS lookup for the IMAP host failed."""

    code = "HOST_UNRESOLVABLE"
    default_message = "Cannot resolve IMAP host"


class ConnectionRefusedByServerError(MailConnectionError):
    """The IMAP server refused the TCP connection."""

    code = "CONNECTION_REFUSED"
    default_message = (
        "Connection refused. Please check IMAP host and port. "
        "Common ports: 993 (TLS), 143 (STARTTLS)."
    )


class AuthenticationFailedError(MailConnectionError):
    """Login was rejected."""

    code = "AUTHENTICATION_FAILED"
    default_message = "Authentication failed. Please check your email address and password."
    recoverable = False


class ConnectionTimeoutError(MailConnectionError):
    """The connection timed out or dropped mid-protocol."""

    code = "CONNECTION_TIMEOUT"
    default_message = (
        "IMAP connection failed. Please check: 1) Host is correct, "
        "2) Port is correct (993 for TLS), 3) TLS/SSL is enabled, 4) Network connection."
    )


class TlsError(MailConnectionError):
    """TLS handshake or certificate verification failed."""

    code = "TLS_ERROR"
    default_message = "TLS/SSL error. Try disabling TLS or check certificate settings."


class IdleNotSupportedError(MailConnectionError):
    """Server capabilities do not include IDLE."""

    code = "IDLE_NOT_SUPPORTED"
    default_message = "IMAP server does not advertise the IDLE capability"


# =============================================================================
# Persistence Errors
# =============================================================================


class PersistenceError(ClaimMailError):
    """Thread, message or checkpoint writes failed."""

    code = "PERSISTENCE_ERROR"
    default_message = "Failed to persist mail records"


class AttachmentStorageError(ClaimMailError):
    """An attachment blob could not be written."""

    code = "ATTACHMENT_STORAGE_ERROR"
    default_message = "Failed to store attachment"


# =============================================================================
# Error Handler
# =============================================================================


def handle_error(error: Exception) -> str:
    """Handle an error and return a user-friendly message."""
    return format_error_for_user(error)


def is_recoverable(error: Exception) -> bool:
    """Check if an error is potentially recoverable.

    Args:
        error: The exception to check

    Returns:
        True if the error is recoverable
    """
    if isinstance(error, ClaimMailError):
        return error.recoverable
    return False


__all__ = [
    # Base
    "ClaimMailError",
    # Configuration
    "ConfigurationError",
    "MailboxNotConfiguredError",
    "MailboxPasswordMissingError",
    # Connection
    "MailConnectionError",
    "HostUnresolvableError",
    "ConnectionRefusedByServerError",
    "AuthenticationFailedError",
    "ConnectionTimeoutError",
    "TlsError",
    "IdleNotSupportedError",
    # Persistence
    "PersistenceError",
    "AttachmentStorageError",
    # Handlers
    "format_error_for_cli",
    "handle_error",
    "is_recoverable",
]
