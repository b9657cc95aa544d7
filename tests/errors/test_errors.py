"""Tests for claimmail error types and user-facing messages."""

from __future__ import annotations

import pytest

from claimmail.errors import (
    AuthenticationFailedError,
    ClaimMailError,
    ConfigurationError,
    ConnectionTimeoutError,
    IdleNotSupportedError,
    MailboxNotConfiguredError,
    MailConnectionError,
    PersistenceError,
    format_error_for_cli,
    handle_error,
    is_recoverable,
)


# ============================================================================
# Hierarchy and attributes
# ============================================================================


def test_default_message_and_code():
    """Test subclasses carry their own code and default message."""
    error = MailboxNotConfiguredError()

    assert isinstance(error, ConfigurationError)
    assert error.code == "MAILBOX_NOT_CONFIGURED"
    assert "IMAP_HOST" in str(error)


def test_custom_user_message_overrides_catalog():
    """Test an explicit user_message wins over the catalog entry."""
    error = PersistenceError("insert failed", user_message="Could not save mail")

    assert error.message == "insert failed"
    assert error.user_message == "Could not save mail"


def test_to_dict():
    """Test serialization includes code, recoverability and details."""
    error = ConnectionTimeoutError("timed out", details={"host": "imap.example.com"})

    payload = error.to_dict()

    assert payload["code"] == "CONNECTION_TIMEOUT"
    assert payload["message"] == "timed out"
    assert payload["recoverable"] is True
    assert payload["details"] == {"host": "imap.example.com"}


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (MailConnectionError(), True),
        (IdleNotSupportedError(), True),
        (AuthenticationFailedError(), False),
        (MailboxNotConfiguredError(), False),
        (ValueError("plain"), False),
    ],
)
def test_is_recoverable(error, expected):
    """Test recoverability per error class."""
    assert is_recoverable(error) is expected


# ============================================================================
# Formatting
# ============================================================================


def test_handle_error_includes_suggestion():
    """Test user formatting appends the recovery hint."""
    text = handle_error(AuthenticationFailedError())

    assert text.startswith("Authentication failed.")
    assert "Suggestion:" in text


def test_unknown_exception_gets_generic_message():
    """Test non-claimmail exceptions fall back to the generic entry."""
    assert "Something went wrong" in handle_error(RuntimeError("x"))


def test_cli_format_hides_sensitive_details():
    """Test password-like detail keys are never printed."""
    error = ClaimMailError(details={"host": "imap.example.com", "password": "hunter2"})

    text = format_error_for_cli(error)

    assert text.startswith("Error [CLAIMMAIL_ERROR]")
    assert "host: imap.example.com" in text
    assert "hunter2" not in text
