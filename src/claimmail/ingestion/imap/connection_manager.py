"""IMAP connection lifecycle management.

Provides the single connection abstraction used by both the short-lived
fetcher (``ImapConnection.connect`` context manager, logout guaranteed) and
the long-lived IDLE session (``open``/``shutdown``). Low-level socket, TLS and
login failures are translated into the ``claimmail.errors`` connection
taxonomy so operators get an actionable message instead of a raw errno.
"""

from __future__ import annotations

import logging
import socket
import ssl
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterator, Optional

try:
    from imapclient import IMAPClient  # type: ignore
    from imapclient.exceptions import LoginError as IMAPLoginError  # type: ignore
except Exception as exc:  # pragma: no cover - missing dependency
    raise RuntimeError(
        "imapclient must be installed to use the IMAP connection manager"
    ) from exc

import certifi

from claimmail.configuration.settings import MailboxSettings
from claimmail.errors import (
    AuthenticationFailedError,
    ClaimMailError,
    ConnectionRefusedByServerError,
    ConnectionTimeoutError,
    HostUnresolvableError,
    MailConnectionError,
    MailboxNotConfiguredError,
    MailboxPasswordMissingError,
    TlsError,
)


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Connection state and metrics
# ---------------------------------------------------------------------------


class ConnectionState(str, Enum):
    """Lifecycle states for an IMAP connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class ConnectionMetrics:
    """Aggregated metrics for connection health reporting."""

    total_connections: int = 0
    successful_connections: int = 0
    failed_connections: int = 0
    average_connection_time: float = 0.0

    def record_attempt(self, success: bool, elapsed: float) -> None:
        self.total_connections += 1
        if success:
            self.successful_connections += 1
            # incremental average to avoid large arrays
            self.average_connection_time += (
                elapsed - self.average_connection_time
            ) / max(1, self.successful_connections)
        else:
            self.failed_connections += 1


# ---------------------------------------------------------------------------
# Reconnect policy
# ---------------------------------------------------------------------------


@dataclass
class ReconnectPolicy:
    """Bounded backoff where the delay grows with the attempt number."""

    max_attempts: int = 5
    base_delay: float = 5.0

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * max(1, attempt)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------


def describe_connection_error(
    exc: BaseException, host: Optional[str] = None
) -> Optional[MailConnectionError]:
    """Map a low-level failure to the connection error taxonomy.

    Returns None when the error does not look connection related; callers
    then re-raise the original exception unchanged.
    """
    if isinstance(exc, ClaimMailError):
        return None

    message = str(exc).lower()
    details = {"host": host, "error": str(exc)}

    if isinstance(exc, socket.gaierror) or "enotfound" in message or "getaddrinfo" in message:
        return HostUnresolvableError(
            f'Cannot resolve IMAP host "{host}". Please check if the host is correct '
            f"(e.g., mail.example.com).",
            details=details,
        )
    if isinstance(exc, ConnectionRefusedError) or "econnrefused" in message or "connection refused" in message:
        return ConnectionRefusedByServerError(details=details)
    if (
        isinstance(exc, IMAPLoginError)
        or "authentication" in message
        or "auth" in message
        or "invalid credentials" in message
    ):
        return AuthenticationFailedError(details=details)
    if (
        isinstance(exc, (socket.timeout, TimeoutError))
        or "connection not available" in message
        or "timeout" in message
        or "timed out" in message
    ):
        return ConnectionTimeoutError(details=details)
    if (
        isinstance(exc, ssl.SSLError)
        or "certificate" in message
        or "ssl" in message
        or "tls" in message
    ):
        return TlsError(details=details)
    return None


def translate_connection_error(exc: BaseException, host: Optional[str] = None) -> BaseException:
    """Translated error when one applies, otherwise ``exc`` itself."""
    return describe_connection_error(exc, host) or exc


# ---------------------------------------------------------------------------
# Connection implementation
# ---------------------------------------------------------------------------


ClientFactory = Callable[..., Any]


@dataclass
class ImapConnection:
    """A single IMAP connection for the configured mailbox."""

    mailbox: MailboxSettings
    metrics: ConnectionMetrics = field(default_factory=ConnectionMetrics)
    client_factory: ClientFactory = IMAPClient

    client: Optional[Any] = field(default=None, init=False)
    state: ConnectionState = field(default=ConnectionState.DISCONNECTED, init=False)
    last_activity: Optional[datetime] = field(default=None, init=False)

    @contextmanager
    def connect(self) -> Iterator[Any]:
        """Connect, log in and yield the client; always log out afterwards.

        Raises:
            MailboxNotConfiguredError: If host or user is missing
            MailboxPasswordMissingError: If no password is available
            MailConnectionError: For translated network, TLS and login errors
        """
        try:
            yield self.open()
        except Exception as exc:  # noqa: BLE001
            self.state = ConnectionState.FAILED
            translated = translate_connection_error(exc, self.mailbox.host)
            if translated is exc:
                raise
            raise translated from exc
        finally:
            self.close()

    def open(self) -> Any:
        """Establish and authenticate a connection without auto-cleanup.

        The caller owns the connection and must call ``close`` or
        ``shutdown``. A failed login leaves ``client`` set so the partially
        opened connection can still be logged out.
        """
        self._validate_config()
        start = time.perf_counter()
        self.state = ConnectionState.CONNECTING
        logger.info(
            f"Connecting to IMAP: {self.mailbox.user}@{self.mailbox.host}:{self.mailbox.port} "
            f"(TLS: {self.mailbox.use_tls})",
            extra={"has_password": self.mailbox.has_password},
        )
        try:
            self.client = self.client_factory(
                host=self.mailbox.host,
                port=self.mailbox.port,
                ssl=self.mailbox.use_tls,
                ssl_context=self._create_ssl_context() if self.mailbox.use_tls else None,
                timeout=self.mailbox.connection_timeout,
                use_uid=True,
            )
            self.client.login(self.mailbox.user, self.mailbox.password.get_secret_value())  # type: ignore[union-attr]
        except Exception:
            self.metrics.record_attempt(False, time.perf_counter() - start)
            raise
        self.metrics.record_attempt(True, time.perf_counter() - start)
        self.state = ConnectionState.CONNECTED
        self.last_activity = datetime.now(timezone.utc)
        logger.info("IMAP connected successfully")
        return self.client

    def close(self) -> None:
        """Log out if a client exists. Errors are logged, never raised."""
        if not self.client:
            return
        try:
            self.client.logout()
            logger.info("IMAP disconnected")
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Error during logout: {exc}")
        finally:
            self.client = None
            self.state = ConnectionState.DISCONNECTED

    def shutdown(self) -> None:
        """Close the socket without a LOGOUT round-trip.

        Safe to call from another thread; a blocked ``idle_check`` returns
        or raises promptly.
        """
        client = self.client
        if not client:
            return
        try:
            client.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Error shutting down IMAP socket: {exc}")
        finally:
            self.client = None
            self.state = ConnectionState.DISCONNECTED

    def _validate_config(self) -> None:
        if not self.mailbox.is_configured:
            raise MailboxNotConfiguredError()
        if not self.mailbox.has_password:
            raise MailboxPasswordMissingError()

    def _create_ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        context.load_verify_locations(certifi.where())
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
        return context


__all__ = [
    "ConnectionMetrics",
    "ConnectionState",
    "ImapConnection",
    "ReconnectPolicy",
    "describe_connection_error",
    "translate_connection_error",
]
