"""Sync supervisor: chooses push or polling and owns their lifecycle.

The supervisor runs an initial ingestion pass, then starts exactly one
trigger: the IDLE session when ``use_idle`` is set, otherwise the fallback
scheduler. When the IDLE session runs out of reconnect attempts it demotes
itself to polling.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

try:
    from imapclient import IMAPClient  # type: ignore
except Exception as exc:  # pragma: no cover
    raise RuntimeError(
        "imapclient must be installed to use the sync supervisor"
    ) from exc

from pydantic import BaseModel, Field

from claimmail.configuration.email_config import EmailConfigStore
from claimmail.configuration.settings import RuntimeSettings, Settings, load_settings
from claimmail.errors import MailboxNotConfiguredError, MailboxPasswordMissingError
from claimmail.storage import AttachmentStorage

from .connection_manager import ClientFactory
from .idle_monitor import IdleSessionManager
from .mailbox_fetcher import MailboxFetcher
from .pipeline import ClaimLookup, IngestionPipeline
from .poll_scheduler import FallbackScheduler
from .sync_state import CheckpointStore, SyncResult
from .thread_store import MailRecordStore

logger = logging.getLogger(__name__)


class SyncMode(str, Enum):
    PUSH = "push"
    POLL = "poll"


class SupervisorStatus(BaseModel):
    """Snapshot of the running sync mode."""

    active: bool = False
    mode: Optional[SyncMode] = None
    idle_active: bool = False
    reconnect_attempts: int = Field(default=0, ge=0)
    last_error: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "usingPush": self.mode is SyncMode.PUSH,
            "idleActive": self.idle_active,
            "reconnectAttempts": self.reconnect_attempts,
            "lastError": self.last_error,
        }


class SyncSupervisor:
    """Coordinates the pipeline, the IDLE listener and the fallback poller."""

    def __init__(
        self,
        *,
        runtime_settings: RuntimeSettings,
        pipeline: IngestionPipeline,
        listener: IdleSessionManager,
        scheduler: FallbackScheduler,
    ) -> None:
        self.runtime_settings = runtime_settings
        self.pipeline = pipeline
        self.listener = listener
        self.scheduler = scheduler
        self.listener.on_exhausted = self._on_listener_exhausted
        self._mode: Optional[SyncMode] = None
        self._lock = asyncio.Lock()
        self._closeables: List[Any] = []

    @property
    def mode(self) -> Optional[SyncMode]:
        return self._mode

    async def ensure_running(self) -> SupervisorStatus:
        """(Re)start sync according to the current settings.

        Existing triggers are always stopped first, so calling this after a
        configuration change picks the new settings up.

        Raises:
            MailboxPasswordMissingError: If host and user are set but no
                password is available; neither push nor polling is started
        """
        async with self._lock:
            await self._stop_triggers()

            sync = self.runtime_settings.sync
            if not sync.enabled:
                logger.info("Mail sync disabled")
                return self.status()
            mailbox = self.runtime_settings.mailbox()
            if not mailbox.is_configured:
                logger.info("IMAP not configured, mail sync inactive")
                return self.status()
            if not mailbox.has_password:
                logger.error("IMAP password missing, mail sync not started")
                raise MailboxPasswordMissingError()

            try:
                await self.pipeline.run()
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Initial mail sync failed: {exc}")

            if sync.use_idle:
                await self.listener.start(self.pipeline.run)
                self._mode = SyncMode.PUSH
                logger.info("Mail sync running in push mode (IMAP IDLE)")
            else:
                await self.scheduler.start()
                self._mode = SyncMode.POLL
                logger.info("Mail sync running in polling mode")
            return self.status()

    async def stop(self) -> None:
        async with self._lock:
            await self._stop_triggers()

    async def sync_now(self) -> SyncResult:
        """Run one ingestion pass immediately.

        Raises:
            MailboxNotConfiguredError: If IMAP host or user is missing
        """
        if not self.runtime_settings.mailbox().is_configured:
            raise MailboxNotConfiguredError()
        return await self.pipeline.run()

    def status(self) -> SupervisorStatus:
        if self._mode is SyncMode.PUSH:
            active = self.listener.is_running
        elif self._mode is SyncMode.POLL:
            active = self.scheduler.is_active
        else:
            active = False
        return SupervisorStatus(
            active=active,
            mode=self._mode,
            idle_active=self.listener.is_active(),
            reconnect_attempts=self.listener.reconnect_attempts,
            last_error=self.listener.last_error,
        )

    async def aclose(self) -> None:
        """Stop everything and close owned stores."""
        await self.stop()
        for resource in self._closeables:
            resource.close()
        self._closeables.clear()

    async def _stop_triggers(self) -> None:
        await self.listener.stop()
        await self.scheduler.stop()
        self._mode = None

    async def _on_listener_exhausted(self) -> None:
        if self._mode is not SyncMode.PUSH:
            return
        logger.warning("IMAP IDLE unavailable, falling back to polling")
        self._mode = SyncMode.POLL
        await self.scheduler.start()


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_supervisor(
    settings: Optional[Settings] = None,
    *,
    client_factory: ClientFactory = IMAPClient,
    claim_lookup: Optional[ClaimLookup] = None,
) -> SyncSupervisor:
    """Create a supervisor with its stores, pipeline and triggers."""
    settings = settings or load_settings()
    db_path = settings.storage.database_path

    config_store = EmailConfigStore(db_path)
    runtime = RuntimeSettings(settings, config_store)
    checkpoint_store = CheckpointStore(db_path)
    record_store = MailRecordStore(db_path)

    pipeline = IngestionPipeline(
        runtime_settings=runtime,
        fetcher=MailboxFetcher(mailbox_provider=runtime.mailbox, client_factory=client_factory),
        checkpoint_store=checkpoint_store,
        record_store=record_store,
        storage=AttachmentStorage(settings.storage.file_root_path),
        claim_lookup=claim_lookup,
    )
    supervisor = SyncSupervisor(
        runtime_settings=runtime,
        pipeline=pipeline,
        listener=IdleSessionManager(
            runtime_settings=runtime,
            on_change=pipeline.run,
            client_factory=client_factory,
        ),
        scheduler=FallbackScheduler(runtime_settings=runtime, run_pipeline=pipeline.run),
    )
    supervisor._closeables.extend([record_store, checkpoint_store, config_store])
    return supervisor


_SUPERVISOR: Optional[SyncSupervisor] = None


def get_supervisor() -> SyncSupervisor:
    """Process-wide supervisor, built from the environment on first use."""
    global _SUPERVISOR
    if _SUPERVISOR is None:
        _SUPERVISOR = build_supervisor()
    return _SUPERVISOR


async def reset_supervisor() -> None:
    """Shut down and forget the process-wide supervisor."""
    global _SUPERVISOR
    supervisor, _SUPERVISOR = _SUPERVISOR, None
    if supervisor is not None:
        await supervisor.aclose()


__all__ = [
    "SupervisorStatus",
    "SyncMode",
    "SyncSupervisor",
    "build_supervisor",
    "get_supervisor",
    "reset_supervisor",
]
