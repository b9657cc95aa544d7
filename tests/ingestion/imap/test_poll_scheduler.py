"""Tests for the fallback polling scheduler."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from claimmail.ingestion.imap.poll_scheduler import POLL_JOB_ID, FallbackScheduler
from claimmail.ingestion.imap.sync_state import SyncResult


@pytest.fixture
def run_pipeline():
    return AsyncMock(return_value=SyncResult(new_messages=2, new_threads=1))


@pytest.fixture
def scheduler(runtime_settings, run_pipeline):
    return FallbackScheduler(runtime_settings=runtime_settings, run_pipeline=run_pipeline)


@pytest.mark.asyncio
async def test_start_runs_immediately_and_schedules(scheduler, run_pipeline):
    """Test start runs one pass and registers a single non-overlapping job."""
    await scheduler.start()

    try:
        run_pipeline.assert_awaited_once()
        assert scheduler.is_active is True
        assert scheduler.passes == 1
        assert scheduler.last_result.new_messages == 2
        assert scheduler.last_run_at is not None

        job = scheduler._scheduler.get_job(POLL_JOB_ID)
        assert job is not None
        assert job.trigger.interval == timedelta(seconds=300)
        assert job.max_instances == 1
        assert job.coalesce is True
    finally:
        await scheduler.stop()


@pytest.mark.asyncio
async def test_interval_comes_from_settings(runtime_settings, run_pipeline):
    """Test the job cadence follows interval_seconds."""
    runtime_settings.settings.sync.interval_seconds = 60
    scheduler = FallbackScheduler(runtime_settings=runtime_settings, run_pipeline=run_pipeline)

    await scheduler.start()
    job = scheduler._scheduler.get_job(POLL_JOB_ID)
    await scheduler.stop()

    assert job.trigger.interval == timedelta(seconds=60)


@pytest.mark.asyncio
async def test_stop_is_idempotent(scheduler):
    """Test stop removes the job and can be repeated."""
    await scheduler.start()

    await scheduler.stop()
    await scheduler.stop()

    assert scheduler.is_active is False
    assert scheduler._scheduler is None


@pytest.mark.asyncio
async def test_second_start_is_noop(scheduler, run_pipeline):
    """Test an active scheduler is not started twice."""
    await scheduler.start()
    first = scheduler._scheduler
    await scheduler.start()

    assert scheduler._scheduler is first
    run_pipeline.assert_awaited_once()
    await scheduler.stop()


@pytest.mark.asyncio
async def test_not_started_when_disabled(runtime_settings, run_pipeline):
    """Test disabled sync never schedules a job."""
    runtime_settings.settings.sync.enabled = False
    scheduler = FallbackScheduler(runtime_settings=runtime_settings, run_pipeline=run_pipeline)

    await scheduler.start()

    assert scheduler.is_active is False
    run_pipeline.assert_not_awaited()


@pytest.mark.asyncio
async def test_not_started_without_mailbox(runtime_settings, run_pipeline):
    """Test a missing host keeps the scheduler idle."""
    runtime_settings.settings.mailbox.host = None
    scheduler = FallbackScheduler(runtime_settings=runtime_settings, run_pipeline=run_pipeline)

    await scheduler.start()

    assert scheduler.is_active is False
    run_pipeline.assert_not_awaited()


@pytest.mark.asyncio
async def test_failing_pass_is_recorded(scheduler, run_pipeline):
    """Test a pipeline error is logged and the schedule stays in place."""
    run_pipeline.side_effect = RuntimeError("imap down")

    await scheduler.start()

    assert scheduler.is_active is True
    assert scheduler.passes == 0
    assert scheduler.last_error == "imap down"
    assert scheduler._scheduler.get_job(POLL_JOB_ID) is not None
    await scheduler.stop()
