"""Scheduler management for maintenance jobs with health tracking."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import STATE_RUNNING
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


JobCallable = Callable[[], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class JobRun:
    status: str
    started_at: datetime
    duration_ms: float
    result: Any = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class SchedulerSnapshot:
    """Snapshot of job registrations and high-level runtime state."""

    total_jobs: int
    running: bool
    next_runs: dict[str, str | None]
    last_runs: dict[str, JobRun]


class SchedulerManager:
    """Wrap APScheduler's asyncio scheduler with structured logging and run history."""

    def __init__(self) -> None:
        self.scheduler = AsyncIOScheduler(
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 90,
            }
        )
        self.last_runs: dict[str, JobRun] = {}

    def start(self) -> None:
        self.scheduler.start()
        logger.info("Scheduler started with %d jobs", len(self.scheduler.get_jobs()))

    def shutdown(self) -> None:
        if self.scheduler.state == STATE_RUNNING:
            self.scheduler.shutdown(wait=False)
        logger.info("Scheduler shutdown complete.")

    def add_recurring_job(
        self,
        func: JobCallable,
        *,
        trigger: str,
        id: str,
        run_immediately: bool = False,
        **trigger_kwargs,
    ) -> None:
        if trigger == "interval":
            trig = IntervalTrigger(**trigger_kwargs)
        elif trigger == "cron":
            trig = CronTrigger(**trigger_kwargs)
        else:
            raise ValueError(f"Unsupported trigger type: {trigger}")

        async def wrapped_job() -> None:
            await self.run_job(id, func)

        next_run = datetime.now(timezone.utc) if trigger == "interval" and run_immediately else None
        options: dict[str, Any] = {"next_run_time": next_run} if next_run is not None else {}
        # replace_existing is only honoured once the scheduler has started.
        if self.scheduler.get_job(id) is not None:
            self.scheduler.remove_job(id)
        self.scheduler.add_job(
            wrapped_job,
            trig,
            id=id,
            replace_existing=True,
            max_instances=1,
            **options,
        )
        logger.info("Registered job %s with trigger %s", id, trigger)

    async def run_job(self, job_id: str, func: JobCallable) -> JobRun:
        """Run one job now, recording the outcome; failures are logged, never raised."""
        start_time = datetime.now(timezone.utc)
        try:
            logger.debug("Running job %s", job_id)
            result = await func()
        except Exception as exc:
            duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
            logger.exception("Job %s failed", job_id)
            run = JobRun("failure", start_time, duration_ms, error=str(exc))
        else:
            duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
            logger.debug("Job %s completed in %.2fms", job_id, duration_ms)
            run = JobRun("success", start_time, duration_ms, result=result)
        self.last_runs[job_id] = run
        return run

    def snapshot(self) -> SchedulerSnapshot:
        """Return a snapshot of scheduler state for external health checks."""
        jobs = self.scheduler.get_jobs()
        next_runs = {
            job.id: job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None for job in jobs
        }
        running = self.scheduler.state == STATE_RUNNING
        return SchedulerSnapshot(
            total_jobs=len(jobs),
            running=running,
            next_runs=next_runs,
            last_runs=dict(self.last_runs),
        )
