# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Scheduler for periodic in-process jobs.

Uses APScheduler's AsyncIOScheduler so jobs run on the application's
event loop. The only job registered by the service is the ledger scan,
which reports entries needing an operator and stale entries.

Example:
    from src.infrastructure.background.scheduler import JobScheduler

    scheduler = JobScheduler()
    scheduler.add_interval_job(
        name="Ledger Scan",
        func=scanner.scan,
        minutes=15,
    )
    await scheduler.start()
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.utils.datetime import utc_now

logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    """Configuration and run statistics of a periodic job.

    Attributes:
        name: Human-readable job name.
        func: Coroutine function to run.
        interval_seconds: Seconds between runs.
        start_immediately: Run once as soon as the scheduler starts.
        id: Unique job identifier.
        last_run: Last run timestamp.
        run_count: Total number of runs.
        error_count: Number of failed runs.
    """

    name: str
    func: Callable[[], Awaitable[Any]]
    interval_seconds: int
    start_immediately: bool = False
    id: str = field(default_factory=lambda: str(uuid4()))
    last_run: datetime | None = None
    run_count: int = 0
    error_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "run_count": self.run_count,
            "error_count": self.error_count,
        }


class JobScheduler:
    """Runs coroutine jobs on a fixed interval.

    Jobs may be added before or after start(); jobs added before are
    registered with APScheduler when it starts.

    Attributes:
        _scheduler: APScheduler instance, set while running.
        _jobs: Registered jobs by id.
    """

    def __init__(self) -> None:
        """Initialize the scheduler."""
        self._scheduler: AsyncIOScheduler | None = None
        self._jobs: dict[str, ScheduledJob] = {}

    @property
    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._scheduler is not None

    def add_interval_job(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        seconds: int = 0,
        minutes: int = 0,
        hours: int = 0,
        start_immediately: bool = False,
    ) -> ScheduledJob:
        """Add an interval-scheduled job.

        Args:
            name: Job name.
            func: Coroutine function to run.
            seconds: Interval seconds.
            minutes: Interval minutes.
            hours: Interval hours.
            start_immediately: Run immediately on start.

        Returns:
            Created ScheduledJob.

        Raises:
            ValueError: If the interval is not positive.
        """
        interval = seconds + minutes * 60 + hours * 3600
        if interval <= 0:
            raise ValueError(f"Interval of job {name!r} must be positive")

        job = ScheduledJob(
            name=name,
            func=func,
            interval_seconds=interval,
            start_immediately=start_immediately,
        )
        self._jobs[job.id] = job

        if self._scheduler is not None:
            self._register(job)

        logger.info("Added interval job: %s (every %ds)", name, interval)
        return job

    def _register(self, job: ScheduledJob) -> None:
        self._scheduler.add_job(
            self._execute_job,
            trigger=IntervalTrigger(seconds=job.interval_seconds),
            args=[job.id],
            id=job.id,
            name=job.name,
            next_run_time=utc_now() if job.start_immediately else None,
            max_instances=1,
            coalesce=True,
        )

    async def _execute_job(self, job_id: str) -> None:
        """Run one job.

        A failing run is counted and logged; the job stays scheduled.

        Args:
            job_id: ID of the job to run.
        """
        job = self._jobs.get(job_id)
        if job is None:
            return

        logger.debug("Executing scheduled job: %s", job.name)
        job.last_run = utc_now()
        job.run_count += 1

        try:
            await job.func()
        except Exception:
            job.error_count += 1
            logger.exception("Scheduled job %s failed", job.name)

    async def start(self) -> None:
        """Start the scheduler on the running event loop."""
        if self._scheduler is not None:
            return

        self._scheduler = AsyncIOScheduler(timezone="UTC")
        for job in self._jobs.values():
            self._register(job)
        self._scheduler.start()

        logger.info("Job scheduler started with %d job(s)", len(self._jobs))

    async def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is None:
            return

        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Job scheduler stopped")

    def get_stats(self) -> dict[str, Any]:
        """Get scheduler statistics."""
        return {
            "is_running": self.is_running,
            "job_count": len(self._jobs),
            "total_runs": sum(j.run_count for j in self._jobs.values()),
            "total_errors": sum(j.error_count for j in self._jobs.values()),
            "jobs": [j.to_dict() for j in self._jobs.values()],
        }
