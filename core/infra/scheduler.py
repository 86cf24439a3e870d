"""
Scheduler infrastructure for periodic source checks.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from croniter import croniter


logger = logging.getLogger(__name__)

CHECK_ALL_JOB_ID = "check-all"
SOURCE_JOB_PREFIX = "source:"


class Scheduler:
    """Async task scheduler wrapper around APScheduler.

    Jobs call bound coroutines of the orchestrator, so they live in the
    in-memory job store and are rebuilt on every start.
    """

    def __init__(self, timezone: str = "UTC"):
        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 60  # seconds
        }

        self._scheduler = AsyncIOScheduler(job_defaults=job_defaults, timezone=timezone)
        self.timezone = timezone
        self._started = False

    async def start(self) -> None:
        """Start the scheduler."""
        if not self._started:
            self._scheduler.start()
            self._started = True
            logger.info(f"Scheduler started ({self.timezone})")

    async def stop(self) -> None:
        """Stop the scheduler."""
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Scheduler stopped")

    def add_interval_job(
        self,
        func: Callable[..., Awaitable[Any]],
        minutes: int,
        job_id: str,
        **kwargs
    ) -> None:
        """Add a job that runs every ``minutes`` minutes."""
        if minutes <= 0:
            raise ValueError(f"Interval must be positive, got {minutes}")

        self._scheduler.add_job(
            func,
            trigger=IntervalTrigger(minutes=minutes),
            id=job_id,
            replace_existing=True,
            **kwargs
        )
        logger.info(f"Added interval job: {job_id} (every {minutes}m)")

    def add_cron_job(
        self,
        func: Callable[..., Awaitable[Any]],
        cron_expression: str,
        job_id: str,
        **kwargs
    ) -> None:
        """Add a job that runs on a five-field cron schedule."""
        if not self._validate_cron_expression(cron_expression):
            raise ValueError(f"Invalid cron expression: {cron_expression}")

        trigger = CronTrigger.from_crontab(cron_expression, timezone=self.timezone)
        self._scheduler.add_job(
            func,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            **kwargs
        )
        logger.info(f"Added cron job: {job_id} ({cron_expression})")

    def _validate_cron_expression(self, cron_expression: str) -> bool:
        """Validate cron expression using croniter."""
        if len(cron_expression.split()) != 5:
            logger.error(f"Cron expression must have 5 fields: '{cron_expression}'")
            return False
        if not croniter.is_valid(cron_expression):
            logger.error(f"Invalid cron expression '{cron_expression}'")
            return False
        return True

    def remove_job(self, job_id: str) -> None:
        """Remove a job by ID if it exists."""
        if self._scheduler.get_job(job_id) is not None:
            self._scheduler.remove_job(job_id)
            logger.info(f"Removed job: {job_id}")

    def list_jobs(self) -> Dict[str, Any]:
        """List all scheduled jobs."""
        jobs = {}
        for job in self._scheduler.get_jobs():
            jobs[job.id] = {
                "name": job.name,
                "next_run": job.next_run_time,
                "trigger": str(job.trigger),
            }
        return jobs

    # ------------------------------------------------------------------ #
    def sync_sources(
        self,
        intervals: Dict[str, int],
        check: Callable[[str], Awaitable[Any]],
    ) -> None:
        """Make the per-source jobs match ``intervals`` (source id -> minutes)."""
        wanted = {f"{SOURCE_JOB_PREFIX}{sid}": (sid, minutes) for sid, minutes in intervals.items()}

        for job in self._scheduler.get_jobs():
            if job.id.startswith(SOURCE_JOB_PREFIX) and job.id not in wanted:
                self.remove_job(job.id)

        for job_id, (source_id, minutes) in wanted.items():
            current = self._scheduler.get_job(job_id)
            if current is not None and getattr(current.trigger, "interval_length", None) == minutes * 60:
                continue
            self.add_interval_job(check, minutes, job_id, args=[source_id], name=f"check {source_id}")

    def schedule_check_all(
        self,
        cron_expression: Optional[str],
        check_all: Callable[[], Awaitable[Any]],
    ) -> None:
        if cron_expression:
            self.add_cron_job(check_all, cron_expression, CHECK_ALL_JOB_ID, name="check all sources")
        else:
            self.remove_job(CHECK_ALL_JOB_ID)
