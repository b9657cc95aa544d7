"""Fallback interval polling for when IMAP IDLE is disabled or unavailable."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from claimmail.configuration.settings import RuntimeSettings

from .sync_state import SyncResult

logger = logging.getLogger(__name__)

POLL_JOB_ID = "mail-sync-poll"

PipelineRunner = Callable[[], Awaitable[SyncResult]]


class FallbackScheduler:
    """Runs the ingestion pipeline on a fixed interval."""

    def __init__(self, *, runtime_settings: RuntimeSettings, run_pipeline: PipelineRunner) -> None:
        self.runtime_settings = runtime_settings
        self.run_pipeline = run_pipeline
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._active = False
        self.passes = 0
        self.last_result: Optional[SyncResult] = None
        self.last_error: Optional[str] = None
        self.last_run_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self._active

    async def start(self) -> None:
        """Run one pass now, then every ``interval_seconds``.

        A no-op when already active, when sync is disabled or when the
        mailbox is not configured.
        """
        if self._active:
            return
        sync = self.runtime_settings.sync
        if not sync.enabled:
            logger.info("Mail sync disabled, polling not started")
            return
        if not self.runtime_settings.mailbox().is_configured:
            logger.info("IMAP not configured, polling not started")
            return

        self._active = True
        logger.info(f"Starting mail polling every {sync.interval_seconds}s")
        await self._run_pass()
        if not self._active:
            # stop() was called during the first pass
            return

        scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        scheduler.add_job(
            self._run_pass,
            trigger=IntervalTrigger(seconds=sync.interval_seconds),
            id=POLL_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler

    async def stop(self) -> None:
        """Remove the job and shut the scheduler down. Idempotent."""
        self._active = False
        scheduler = self._scheduler
        self._scheduler = None
        if scheduler is None:
            return
        try:
            scheduler.remove_job(POLL_JOB_ID)
        except JobLookupError:
            logger.debug("Poll job already removed")
        scheduler.shutdown(wait=False)
        logger.info("Mail polling stopped")

    async def _run_pass(self) -> None:
        self.last_run_at = datetime.now(timezone.utc)
        try:
            result = await self.run_pipeline()
        except Exception as exc:  # noqa: BLE001
            self.last_error = str(exc)
            logger.error(f"Scheduled mail sync failed: {exc}")
            return
        self.passes += 1
        self.last_result = result
        self.last_error = None
        if result.has_changes:
            logger.info(
                f"Scheduled sync: {result.new_messages} new messages, "
                f"{result.new_threads} new threads"
            )


__all__ = ["FallbackScheduler", "POLL_JOB_ID", "PipelineRunner"]
