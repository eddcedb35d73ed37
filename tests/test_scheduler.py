"""Tests for the asyncio scheduler."""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from hypedelta.models import utcnow
from hypedelta.operations import OperationConflictError, Operations
from hypedelta.scheduler import (
    ScheduledJob,
    Scheduler,
    build_jobs,
    build_scheduler,
    next_weekly,
)


def _fire_now(now: datetime) -> datetime:
    return now


def test_next_weekly():
    wednesday = datetime(2025, 1, 8, 10, 30)
    assert next_weekly(wednesday) == datetime(2025, 1, 12, 9, 0)

    sunday_early = datetime(2025, 1, 12, 8, 0)
    assert next_weekly(sunday_early) == datetime(2025, 1, 12, 9, 0)

    sunday_on_time = datetime(2025, 1, 12, 9, 0)
    assert next_weekly(sunday_on_time) == datetime(2025, 1, 19, 9, 0)

    assert next_weekly(wednesday, weekday=0, hour=6) == datetime(2025, 1, 13, 6, 0)


def test_first_run_defaults_to_one_interval():
    now = datetime(2025, 1, 1)
    job = ScheduledJob("process", timedelta(hours=2), AsyncMock())
    assert job.first_run(now) == datetime(2025, 1, 1, 2, 0)


@pytest.mark.asyncio
async def test_timer_fires_and_stop_cancels_timers():
    action = AsyncMock()
    scheduler = Scheduler([
        ScheduledJob("tick", timedelta(hours=1), action, first_fire=_fire_now),
    ])

    await scheduler.start()
    assert scheduler.running
    await asyncio.sleep(0.05)
    await scheduler.stop()

    action.assert_awaited_once()
    assert not scheduler.running
    assert scheduler.next_runs["tick"] > utcnow() + timedelta(minutes=59)


@pytest.mark.asyncio
async def test_stop_does_not_cancel_running_jobs():
    release = asyncio.Event()
    finished = []

    async def slow_job():
        await release.wait()
        finished.append("slow")

    scheduler = Scheduler([
        ScheduledJob("slow", timedelta(hours=1), slow_job, first_fire=_fire_now),
    ])
    await scheduler.start()
    await asyncio.sleep(0.05)
    assert scheduler.in_flight == 1

    await scheduler.stop()
    assert scheduler.in_flight == 1

    release.set()
    await asyncio.sleep(0.05)
    assert finished == ["slow"]
    assert scheduler.in_flight == 0


@pytest.mark.asyncio
async def test_stop_with_grace_waits_for_running_jobs():
    finished = []

    async def short_job():
        await asyncio.sleep(0.05)
        finished.append("short")

    scheduler = Scheduler([
        ScheduledJob("short", timedelta(hours=1), short_job, first_fire=_fire_now),
    ])
    await scheduler.start()
    await asyncio.sleep(0.01)
    await scheduler.stop(grace=1.0)

    assert finished == ["short"]


@pytest.mark.asyncio
async def test_job_errors_are_contained():
    conflict = AsyncMock(side_effect=OperationConflictError("fetch"))
    scheduler = Scheduler([], initial=conflict)
    await scheduler.start()
    conflict.assert_awaited_once()

    broken = AsyncMock(side_effect=RuntimeError("boom"))
    await Scheduler([], initial=broken).start()
    broken.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_forever_returns_after_stop():
    scheduler = Scheduler([ScheduledJob("idle", timedelta(hours=1), AsyncMock())])
    task = asyncio.create_task(scheduler.run_forever())
    await asyncio.sleep(0.01)
    assert scheduler.running

    await scheduler.stop()
    await asyncio.wait_for(task, timeout=1.0)
    assert not scheduler.running


def test_build_jobs(sample_config, fake_gateway):
    operations = Operations(sample_config, gateway=fake_gateway)
    jobs = {job.name: job for job in build_jobs(sample_config, operations)}

    assert {"fetch:twitter", "fetch:substack", "fetch:arxiv", "process",
            "synthesize", "weekly-digest"} <= set(jobs)
    assert jobs["fetch:twitter"].interval == timedelta(hours=4)
    assert jobs["process"].interval == timedelta(hours=2)
    assert jobs["synthesize"].action.keywords == {"generate_digest": False}

    wednesday = datetime(2025, 1, 8, 10, 30)
    assert jobs["weekly-digest"].first_run(wednesday) == datetime(2025, 1, 12, 9, 0)


@pytest.mark.asyncio
async def test_initial_cycle_fetches_then_processes(sample_config):
    calls = []
    operations = MagicMock()
    operations.fetch = AsyncMock(side_effect=lambda days: calls.append(("fetch", days)))
    operations.process = AsyncMock(side_effect=lambda limit: calls.append(("process", limit)))

    scheduler = build_scheduler(sample_config, operations)
    await scheduler.initial()

    assert calls == [("fetch", 1), ("process", 100)]


@pytest.mark.asyncio
async def test_sigterm_stops_scheduler_before_timers_fire(caplog):
    action = AsyncMock()
    scheduler = Scheduler([
        ScheduledJob("soon", timedelta(hours=1), action,
                     first_fire=lambda now: now + timedelta(milliseconds=200)),
    ])
    task = asyncio.create_task(scheduler.run_forever(grace=1.0))
    await asyncio.sleep(0.01)
    assert scheduler.running

    with caplog.at_level(logging.INFO, logger="hypedelta.scheduler"):
        signal.raise_signal(signal.SIGTERM)
        await asyncio.wait_for(task, timeout=1.0)

    assert not scheduler.running
    await asyncio.sleep(0.3)
    action.assert_not_awaited()
    assert "Received SIGTERM" in caplog.text
    assert "Scheduler stopped" in caplog.text
