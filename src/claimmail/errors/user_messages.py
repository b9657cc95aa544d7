"""User-facing error messages for claimmail.

Operators see these through the CLI and the trigger API. Messages never
include passwords or message content; host names are the only connection
detail echoed back.
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    # Configuration errors
    "CONFIGURATION_ERROR": "There's a mail sync configuration issue.",
    "MAILBOX_NOT_CONFIGURED": (
        "IMAP is not configured. Please configure email settings or set "
        "IMAP_HOST and IMAP_USER in the environment."
    ),
    "MAILBOX_PASSWORD_MISSING": (
        "IMAP password is missing. Set IMAP_PASS in the environment or store "
        "the password with 'claimmail mail config set --password'."
    ),
    # Connection errors
    "MAIL_CONNECTION_ERROR": "The mailbox connection failed.",
    "HOST_UNRESOLVABLE": "Cannot resolve the IMAP host. Please check that the host name is correct.",
    "CONNECTION_REFUSED": (
        "Connection refused. Please check IMAP host and port. "
        "Common ports: 993 (TLS), 143 (STARTTLS)."
    ),
    "AUTHENTICATION_FAILED": "Authentication failed. Please check your email address and password.",
    "CONNECTION_TIMEOUT": (
        "IMAP connection failed. Please check: 1) Host is correct, "
        "2) Port is correct (993 for TLS), 3) TLS/SSL is enabled, 4) Network connection."
    ),
    "TLS_ERROR": "TLS/SSL error. Try disabling TLS or check certificate settings.",
    "IDLE_NOT_SUPPORTED": "The IMAP server does not support IDLE push notifications.",
    # Persistence errors
    "PERSISTENCE_ERROR": "Mail records could not be saved.",
    "ATTACHMENT_STORAGE_ERROR": "An attachment could not be written to storage.",
    # Generic
    "CLAIMMAIL_ERROR": "An unexpected mail sync error occurred. Please try again.",
    "UNKNOWN_ERROR": "Something went wrong. Please try again.",
}


# =============================================================================
# Recovery Suggestions
# =============================================================================

RECOVERY_SUGGESTIONS: dict[str, str] = {
    "CONFIGURATION_ERROR": "Check config: claimmail mail config show",
    "MAILBOX_NOT_CONFIGURED": "Set the mailbox: claimmail mail config set --host <host> --user <user>",
    "MAILBOX_PASSWORD_MISSING": "Store the password: claimmail mail config set --password <password>",
    "MAIL_CONNECTION_ERROR": "Verify connectivity with: claimmail mail test",
    "HOST_UNRESOLVABLE": "Check DNS for the host, e.g. mail.example.com",
    "CONNECTION_REFUSED": "Confirm the port and that the server accepts IMAP connections.",
    "AUTHENTICATION_FAILED": "Re-enter the password, or use an app password if your provider requires one.",
    "CONNECTION_TIMEOUT": "Retry in a moment. If it persists, check firewall rules.",
    "TLS_ERROR": "Check the server certificate or set IMAP_TLS=false for plain connections.",
    "IDLE_NOT_SUPPORTED": "Set MAIL_SYNC_USE_IDLE=false to use interval polling.",
    "PERSISTENCE_ERROR": "Check disk space and permissions on the database file.",
    "ATTACHMENT_STORAGE_ERROR": "Check disk space and permissions under FILE_ROOT_PATH.",
    "CLAIMMAIL_ERROR": "If this persists, check the sync logs with --verbose.",
    "UNKNOWN_ERROR": "Restart mail sync. Report if the issue continues.",
}


# =============================================================================
# Helper Functions
# =============================================================================


def _error_code(error: Any) -> str:
    if hasattr(error, "code"):
        return error.code
    if isinstance(error, str):
        return error
    return type(error).__name__.upper()


def get_user_message(error: Any) -> str:
    """Get user-friendly message for an error.

    Args:
        error: The error (can be Exception or error code string)

    Returns:
        User-friendly error message
    """
    return ERROR_MESSAGES.get(_error_code(error), ERROR_MESSAGES["UNKNOWN_ERROR"])


def get_recovery_suggestion(error: Any) -> str:
    """Get recovery suggestion for an error."""
    return RECOVERY_SUGGESTIONS.get(
        _error_code(error), RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"]
    )


def format_error_for_user(error: Any) -> str:
    """Format a complete user-friendly error message with recovery suggestion."""
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)

    return f"{message}\n\nSuggestion: {suggestion}"


def format_error_for_cli(error: Any) -> str:
    """Format error for CLI output.

    Args:
        error: The error to format

    Returns:
        CLI-formatted error message
    """
    code = getattr(error, "code", "ERROR")
    lines = [
        f"Error [{code}]: {get_user_message(error)}",
        "",
        f"Suggestion: {get_recovery_suggestion(error)}",
    ]

    if getattr(error, "details", None):
        lines.append("")
        lines.append("Details:")
        for key, value in error.details.items():
            if key not in ("password", "imap_pass", "body"):
                lines.append(f"  {key}: {value}")

    return "\n".join(lines)


__all__ = [
    "ERROR_MESSAGES",
    "RECOVERY_SUGGESTIONS",
    "format_error_for_cli",
    "format_error_for_user",
    "get_recovery_suggestion",
    "get_user_message",
]
