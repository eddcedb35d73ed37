"""Asyncio scheduler for the fetch, process, synthesis and weekly digest cycles.

Usage:
    operations = Operations(config)
    scheduler = build_scheduler(config, operations)
    await scheduler.run_forever()
"""

from __future__ import annotations

import asyncio
import functools
import logging
import signal
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from hypedelta.config import get_schedule_config
from hypedelta.models import utcnow
from hypedelta.operations import OperationConflictError, Operations

logger = logging.getLogger(__name__)


def next_weekly(now: datetime, weekday: int = 6, hour: int = 9) -> datetime:
    """Next occurrence of weekday (Monday=0) at hour:00, strictly after now."""
    candidate = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    candidate += timedelta(days=(weekday - now.weekday()) % 7)
    if candidate <= now:
        candidate += timedelta(days=7)
    return candidate


@dataclass
class ScheduledJob:
    """A named action fired every `interval`."""

    name: str
    interval: timedelta
    action: Callable[[], Awaitable[Any]]
    first_fire: Callable[[datetime], datetime] | None = None

    def first_run(self, now: datetime) -> datetime:
        if self.first_fire is not None:
            return self.first_fire(now)
        return now + self.interval


class Scheduler:
    """Runs one timer task per job.

    A timer spawns its action as a separate task and goes straight back to
    sleeping. Stopping cancels the timers; actions already running finish on
    their own unless the event loop itself shuts down.
    """

    def __init__(
        self,
        jobs: list[ScheduledJob],
        initial: Callable[[], Awaitable[Any]] | None = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.jobs = list(jobs)
        self.initial = initial
        self._now = now
        self._timers: dict[str, asyncio.Task] = {}
        self._inflight: set[asyncio.Task] = set()
        self._stopped: asyncio.Event | None = None
        self._stop_task: asyncio.Task | None = None
        self.next_runs: dict[str, datetime] = {}

    @property
    def running(self) -> bool:
        return bool(self._timers)

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    async def start(self) -> None:
        """Start all timers, then run the initial cycle to completion."""
        if self._timers:
            return
        self._stopped = asyncio.Event()
        now = self._now()
        for job in self.jobs:
            self._timers[job.name] = asyncio.create_task(
                self._timer(job, job.first_run(now)), name=f"timer:{job.name}",
            )
        logger.info("Scheduler started with %d jobs", len(self.jobs))
        if self.initial is not None:
            await self._run_job("initial", self.initial)

    async def stop(self, grace: float | None = None) -> None:
        """Cancel the timers; optionally wait up to `grace` seconds for running jobs."""
        timers = list(self._timers.values())
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        self._timers.clear()

        if grace is not None and self._inflight:
            _, pending = await asyncio.wait(set(self._inflight), timeout=grace)
            if pending:
                logger.warning("%d jobs still running after %.0fs", len(pending), grace)
        if self._stopped is not None:
            self._stopped.set()
        logger.info("Scheduler stopped")

    async def run_forever(self, grace: float | None = 30.0) -> None:
        """Run until `stop()` is called or SIGINT/SIGTERM arrives."""
        loop = asyncio.get_running_loop()
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig, grace)
            except (NotImplementedError, RuntimeError):
                # Windows loops and non-main threads cannot take signal handlers
                logger.debug("Cannot install a handler for %s", sig.name)
            else:
                installed.append(sig)

        await self.start()
        try:
            await self._stopped.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            if self._timers:
                await self.stop(grace=grace)

    def _on_signal(self, sig: signal.Signals, grace: float | None) -> None:
        if self._stop_task is not None:
            return
        logger.info("Received %s, stopping scheduler", sig.name)
        self._stop_task = asyncio.ensure_future(self.stop(grace=grace))

    async def _timer(self, job: ScheduledJob, next_run: datetime) -> None:
        while True:
            self.next_runs[job.name] = next_run
            delay = (next_run - self._now()).total_seconds()
            logger.debug("Job %s next fires at %s", job.name, next_run.isoformat())
            await asyncio.sleep(max(0.0, delay))

            task = asyncio.create_task(self._run_job(job.name, job.action))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

            next_run += job.interval
            now = self._now()
            if next_run <= now:
                next_run = now + job.interval

    async def _run_job(self, name: str, action: Callable[[], Awaitable[Any]]) -> None:
        logger.info("Running job: %s", name)
        try:
            await action()
        except OperationConflictError as exc:
            logger.info("Skipping %s: %s", name, exc)
        except Exception:
            logger.exception("Job %s failed", name)


def build_jobs(config: dict, operations: Operations) -> list[ScheduledJob]:
    """Per-kind fetch timers plus the process, synthesis and weekly jobs."""
    cfg = get_schedule_config(config)
    jobs = [
        ScheduledJob(
            name=f"fetch:{kind}",
            interval=timedelta(hours=hours),
            action=functools.partial(operations.fetch_kind, kind),
        )
        for kind, hours in cfg["fetch_hours"].items()
    ]
    jobs.append(ScheduledJob(
        name="process",
        interval=timedelta(hours=cfg["process_hours"]),
        action=functools.partial(operations.process, cfg["process_limit"]),
    ))
    jobs.append(ScheduledJob(
        name="synthesize",
        interval=timedelta(hours=cfg["synthesis_hours"]),
        action=functools.partial(
            operations.synthesize, cfg["synthesis_days"], generate_digest=False,
        ),
    ))
    jobs.append(ScheduledJob(
        name="weekly-digest",
        interval=timedelta(days=7),
        action=operations.weekly_digest,
        first_fire=functools.partial(
            next_weekly, weekday=cfg["weekly_weekday"], hour=cfg["weekly_hour"],
        ),
    ))
    return jobs


def build_scheduler(config: dict, operations: Operations) -> Scheduler:
    process_limit = get_schedule_config(config)["process_limit"]

    async def initial_cycle() -> None:
        await operations.fetch(1)
        await operations.process(process_limit)

    return Scheduler(build_jobs(config, operations), initial=initial_cycle)
