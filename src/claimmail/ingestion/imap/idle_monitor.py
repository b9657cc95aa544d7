"""IMAP IDLE push session.

Keeps one long-lived connection open on the synced folder and runs the
ingestion callback every time an IDLE wait returns. The session owns its
connection exclusively: the IDLE wait and the NOOP heartbeat share it under
one command lock, and both blocking calls run in worker threads.

Connection failures go through a single recovery path: tear everything down,
count the attempt, then either back off and reconnect or give up and report
exhaustion so the caller can fall back to polling. Configuration errors
skip recovery entirely: the session stops at once and keeps the error for
status reporting.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

try:
    from imapclient import IMAPClient  # type: ignore
except Exception as exc:  # pragma: no cover
    raise RuntimeError(
        "imapclient must be installed to use IDLE monitoring"
    ) from exc

from claimmail.configuration.settings import RuntimeSettings
from claimmail.errors import ConfigurationError, IdleNotSupportedError, MailConnectionError

from .connection_manager import (
    ClientFactory,
    ImapConnection,
    ReconnectPolicy,
    translate_connection_error,
)


logger = logging.getLogger(__name__)

ChangeCallback = Callable[[], Awaitable[Any]]
ExhaustedHook = Callable[[], Awaitable[None]]


class SessionState(str, Enum):
    """Lifecycle of the push session."""

    STOPPED = "stopped"
    CONNECTING = "connecting"
    WAITING = "waiting"
    PROCESSING = "processing"
    RECONNECTING = "reconnecting"


class IdleSessionManager:
    """Push listener driving the ingestion pipeline from IMAP IDLE."""

    def __init__(
        self,
        *,
        runtime_settings: RuntimeSettings,
        on_change: Optional[ChangeCallback] = None,
        on_exhausted: Optional[ExhaustedHook] = None,
        client_factory: ClientFactory = IMAPClient,
        policy: Optional[ReconnectPolicy] = None,
    ):
        """Initialize IDLE session manager.

        Args:
            runtime_settings: Sync tuning and the resolved mailbox
            on_change: Coroutine run after every IDLE wait (usually the pipeline)
            on_exhausted: Coroutine run once reconnect attempts are used up
            client_factory: IMAP client constructor, replaceable in tests
            policy: Reconnect policy (built from settings when omitted)
        """
        self.runtime_settings = runtime_settings
        self.on_change = on_change
        self.on_exhausted = on_exhausted
        self.client_factory = client_factory
        sync = runtime_settings.sync
        self.policy = policy or ReconnectPolicy(
            max_attempts=sync.max_reconnect_attempts,
            base_delay=sync.reconnect_delay_seconds,
        )

        self._state = SessionState.STOPPED
        self._attempts = 0
        self._exhausted = False
        self._last_error: Optional[str] = None
        self._active = False
        self._mailbox_locked = False
        self._failure: Optional[BaseException] = None
        self._command_lock = threading.Lock()
        self._connection: Optional[ImapConnection] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._heartbeat_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def reconnect_attempts(self) -> int:
        return self._attempts

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def last_error(self) -> Optional[str]:
        """Most recent session failure, cleared on a successful connect."""
        return self._last_error

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_active(self) -> bool:
        """Connected, mailbox selected and the session flagged active."""
        connection = self._connection
        return bool(
            self._active
            and connection is not None
            and connection.client is not None
            and self._mailbox_locked
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self, on_change: Optional[ChangeCallback] = None) -> None:
        """Start the session task; a no-op if it is already running."""
        if self.is_running:
            logger.debug("IDLE session already running")
            return
        if on_change is not None:
            self.on_change = on_change
        if self.on_change is None:
            raise ValueError("IDLE session needs an on_change callback")

        if self._exhausted:
            logger.info("Restarting IDLE session after exhausted reconnect attempts")
            await self.stop()
            self._attempts = 0
            self._exhausted = False

        self._last_error = None
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())

    async def stop(self) -> None:
        """Stop the session and release the connection. Idempotent."""
        if self._stop_event is not None:
            self._stop_event.set()

        connection = self._connection
        if connection is not None:
            # Closing the socket makes a blocked idle_check return.
            connection.shutdown()

        task = self._task
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                logger.debug("IDLE session task was cancelled")
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"IDLE session ended with error: {exc}")
            self._task = None

        await self._teardown()
        self._state = SessionState.STOPPED

    # ------------------------------------------------------------------
    # Session loop
    # ------------------------------------------------------------------

    def _stopping(self) -> bool:
        return self._stop_event is None or self._stop_event.is_set()

    async def _run(self) -> None:
        try:
            while not self._stopping():
                try:
                    self._state = SessionState.CONNECTING
                    await asyncio.to_thread(self._connect)
                    if self._stopping():
                        break
                    self._start_heartbeat()
                    await self._wait_loop()
                except ConfigurationError as exc:
                    # Missing host, user or password; reconnecting cannot help.
                    logger.error(f"IDLE session cannot start: {exc}")
                    self._last_error = exc.user_message
                    break
                except Exception as exc:  # noqa: BLE001
                    if self._stopping():
                        break
                    logger.error(f"IDLE session error: {exc}")
                    self._last_error = str(exc)
                    if await self._recover():
                        break
        finally:
            await self._teardown()
            if self._state is not SessionState.STOPPED:
                self._state = SessionState.STOPPED

        if self._exhausted and self.on_exhausted is not None:
            try:
                await self.on_exhausted()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"IDLE exhaustion handler failed: {exc}")

    def _connect(self) -> None:
        mailbox = self.runtime_settings.mailbox()
        connection = ImapConnection(mailbox=mailbox, client_factory=self.client_factory)
        self._connection = connection
        try:
            client = connection.open()
            if b"IDLE" not in client.capabilities():
                raise IdleNotSupportedError(details={"host": mailbox.host})
            client.select_folder(mailbox.folder)
        except Exception as exc:
            translated = translate_connection_error(exc, mailbox.host)
            if translated is exc:
                raise
            raise translated from exc

        self._mailbox_locked = True
        self._active = True
        self._attempts = 0
        self._last_error = None
        logger.info(f"IMAP IDLE session started on {mailbox.folder}")

    async def _wait_loop(self) -> None:
        timeout = self.runtime_settings.sync.idle_timeout_seconds
        delay = self.runtime_settings.sync.post_process_delay_seconds

        while not self._stopping():
            self._state = SessionState.WAITING
            responses = await asyncio.to_thread(self._idle_once, timeout)
            if self._failure is not None:
                raise self._failure
            if self._stopping():
                break

            self._state = SessionState.PROCESSING
            logger.debug(f"IDLE wait returned {len(responses)} responses, checking for mail")
            try:
                await self.on_change()  # type: ignore[misc]
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Error processing mailbox change: {exc}")

            if await self._sleep(delay):
                break

    def _idle_once(self, timeout: float) -> List[Any]:
        with self._command_lock:
            client = self._client()
            client.idle()
            responses = client.idle_check(timeout=timeout)
            client.idle_done()
        return list(responses or [])

    def _client(self) -> Any:
        connection = self._connection
        if connection is None or connection.client is None:
            raise MailConnectionError("IMAP connection is not open")
        return connection.client

    async def _recover(self) -> bool:
        """Tear down and back off. True when the session should end."""
        await self._teardown()
        self._attempts += 1

        if self.policy.exhausted(self._attempts):
            self._state = SessionState.STOPPED
            self._exhausted = True
            logger.error(
                f"IDLE reconnect attempts exhausted ({self._attempts}/{self.policy.max_attempts})"
            )
            return True

        self._state = SessionState.RECONNECTING
        delay = self.policy.delay_for(self._attempts)
        logger.warning(
            f"Reconnecting IDLE session in {delay:.1f}s "
            f"(attempt {self._attempts}/{self.policy.max_attempts})"
        )
        return await self._sleep(delay)

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first. True when stop was requested."""
        if self._stop_event is None:
            return True
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _start_heartbeat(self) -> None:
        loop = asyncio.get_running_loop()
        self._heartbeat_task = loop.create_task(self._heartbeat())

    async def _heartbeat(self) -> None:
        interval = self.runtime_settings.sync.keepalive_interval_seconds
        while not await self._sleep(interval):
            try:
                await asyncio.to_thread(self._noop)
                logger.debug("IMAP keepalive sent")
            except Exception as exc:  # noqa: BLE001
                if self._stopping():
                    return
                logger.warning(f"IMAP keepalive failed: {exc}")
                self._failure = MailConnectionError(f"Keepalive failed: {exc}")
                connection = self._connection
                if connection is not None:
                    connection.shutdown()
                return

    def _noop(self) -> None:
        with self._command_lock:
            self._client().noop()

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def _teardown(self) -> None:
        heartbeat = self._heartbeat_task
        self._heartbeat_task = None
        if heartbeat is not None and heartbeat is not asyncio.current_task():
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Error stopping keepalive: {exc}")

        self._mailbox_locked = False
        self._active = False
        self._failure = None

        connection = self._connection
        self._connection = None
        if connection is not None:
            await asyncio.to_thread(connection.close)


__all__ = ["ChangeCallback", "ExhaustedHook", "IdleSessionManager", "SessionState"]
