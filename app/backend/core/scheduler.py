"""Cron job table backed by APScheduler.

Periodic jobs are plain coroutine functions registered under an id:

    scheduler.build("volume-healthchecks", run_volume_healthchecks).schedule("*/30 * * * *")

A job never overlaps with itself; a failing run is logged and the job stays
scheduled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from backend.services.backups.schedule_timing import build_cron_trigger


logger = logging.getLogger(__name__)

JobRun = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class ScheduledJob:
    id: str
    cron_expression: str
    run: JobRun


class JobBuilder:
    """Pending registration returned by `Scheduler.build`."""

    def __init__(self, scheduler: "Scheduler", job_id: str, run: JobRun):
        self._scheduler = scheduler
        self._job_id = job_id
        self._run = run

    def schedule(self, cron_expression: str) -> ScheduledJob:
        job = ScheduledJob(id=self._job_id, cron_expression=cron_expression, run=self._run)
        self._scheduler.register(job)
        return job


class Scheduler:
    """Table of cron jobs executed on the running event loop."""

    def __init__(self, *, timezone: str = "UTC"):
        self._timezone = timezone
        self._jobs: Dict[str, ScheduledJob] = {}
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def jobs(self) -> List[ScheduledJob]:
        return list(self._jobs.values())

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def build(self, job_id: str, run: JobRun) -> JobBuilder:
        return JobBuilder(self, job_id, run)

    def register(self, job: ScheduledJob) -> None:
        """Add (or replace) a job in the table. Takes effect immediately when running."""

        build_cron_trigger(job.cron_expression, tz=self._timezone)
        self._jobs[job.id] = job
        logger.info("Registered job %s (%s)", job.id, job.cron_expression)
        if self._scheduler is not None:
            self._add_to_scheduler(job)

    def _add_to_scheduler(self, job: ScheduledJob) -> None:
        assert self._scheduler is not None
        self._scheduler.add_job(
            self._make_runner(job),
            trigger=build_cron_trigger(job.cron_expression, tz=self._timezone),
            id=job.id,
            name=job.id,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
            replace_existing=True,
        )

    def _make_runner(self, job: ScheduledJob) -> JobRun:
        async def _runner() -> None:
            await self.run_job(job.id)

        return _runner

    async def run_job(self, job_id: str) -> Any:
        """Run a registered job now. Errors are logged and swallowed."""

        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"Unknown job: {job_id}")

        logger.debug("Running job %s", job_id)
        try:
            return await job.run()
        except Exception:
            logger.exception("Job %s failed", job_id)
            return None

    def start(self) -> None:
        if self.running:
            logger.debug("Scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone=self._timezone)
        for job in self._jobs.values():
            self._add_to_scheduler(job)
        self._scheduler.start()
        logger.info("Scheduler started with %d jobs", len(self._jobs))

    def stop(self) -> None:
        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Scheduler stopped")

    def clear(self) -> None:
        """Remove every job from the table (and from the running scheduler)."""

        if self._scheduler is not None:
            self._scheduler.remove_all_jobs()
        self._jobs.clear()

    def next_run_times(self) -> Dict[str, Any]:
        if self._scheduler is None:
            return {job_id: None for job_id in self._jobs}
        return {job.id: job.next_run_time for job in self._scheduler.get_jobs()}
