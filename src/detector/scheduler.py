"""
Cron scheduling of detection jobs on top of APScheduler.

Jobs run on a bounded thread pool; a firing that is still running when the
next one is due is skipped (``max_instances=1``) rather than stacked.
"""

import re
from collections.abc import Callable
from datetime import UTC, datetime, tzinfo
from typing import Optional

import structlog
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from .errors import ExecutionError, NotFoundError, ValidationError

logger = structlog.get_logger(__name__)

# Quartz numbers weekdays 1-7 starting on Sunday
QUARTZ_WEEKDAYS = {
    "1": "sun",
    "2": "mon",
    "3": "tue",
    "4": "wed",
    "5": "thu",
    "6": "fri",
    "7": "sat",
}


def parse_cron(expression: str, timezone: tzinfo = UTC) -> CronTrigger:
    """Build a trigger from a crontab or Quartz-style expression

    Accepts standard 5-field crontab (``*/5 * * * *``) and the 6/7-field
    Quartz form with leading seconds and optional year (``0 0/5 * * * ?``).

    Raises:
        ValidationError: If the expression is malformed
    """
    parts = (expression or "").split()
    try:
        if len(parts) == 5:
            return CronTrigger.from_crontab(expression, timezone=timezone)

        if len(parts) in (6, 7):
            parts = ["*" if part == "?" else part for part in parts]
            day_of_week = re.sub(r"[1-7]", lambda m: QUARTZ_WEEKDAYS[m.group()], parts[5])
            return CronTrigger(
                second=parts[0],
                minute=parts[1],
                hour=parts[2],
                day=parts[3],
                month=parts[4],
                day_of_week=day_of_week,
                year=parts[6] if len(parts) == 7 else None,
                timezone=timezone,
            )
    except (ValueError, KeyError) as e:
        raise ValidationError(f"Malformed cron expression {expression!r}: {e}") from e

    raise ValidationError(
        f"Malformed cron expression {expression!r}: expected 5, 6 or 7 fields, got {len(parts)}"
    )


class CronScheduler:
    """Thread-pool scheduler for recurring and one-shot detection jobs"""

    def __init__(
        self,
        max_workers: int = 10,
        misfire_grace_seconds: int = 60,
        timezone: tzinfo = UTC,
    ):
        self.timezone = timezone
        self.scheduler = BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers)},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": misfire_grace_seconds,
            },
            timezone=timezone,
        )
        self.scheduler.add_listener(
            self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED
        )
        # Outcome of the latest firing per job key, absent once it succeeds
        self._errors: dict[str, BaseException] = {}

    def start(self):
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("Scheduler started")

    def shutdown(self, wait: bool = True):
        """Stop firing jobs; with ``wait`` block until running jobs finish"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped", waited=wait)

    def schedule_recurring(self, job_key: str, cron: str, runnable: Callable[[], object]):
        """Fire ``runnable`` on every cron match until cancelled"""
        trigger = parse_cron(cron, self.timezone)
        self.scheduler.add_job(runnable, trigger=trigger, id=job_key, name=job_key)
        logger.debug("Recurring job scheduled", job=job_key, cron=cron)

    def schedule_once(self, job_key: str, runnable: Callable[[], object]):
        """Fire ``runnable`` once, as soon as a worker is free"""
        trigger = DateTrigger(run_date=datetime.now(self.timezone), timezone=self.timezone)
        self.scheduler.add_job(runnable, trigger=trigger, id=job_key, name=job_key)
        logger.debug("One-shot job scheduled", job=job_key)

    def cancel(self, job_key: str):
        """Remove a job; a firing already in progress is not interrupted"""
        try:
            self.scheduler.remove_job(job_key)
        except JobLookupError as e:
            raise NotFoundError(f"No scheduler job {job_key}") from e

    def has_job(self, job_key: str) -> bool:
        """Whether ``job_key`` is still waiting for a firing"""
        return self.scheduler.get_job(job_key) is not None

    def job_error(self, job_key: str) -> Optional[BaseException]:
        """Exception raised by the latest firing of ``job_key``, None if it succeeded or never fired"""
        return self._errors.get(job_key)

    def _on_job_event(self, event):
        if event.code == EVENT_JOB_MISSED:
            self._errors[event.job_id] = ExecutionError(
                f"{event.job_id} missed its firing at {event.scheduled_run_time}"
            )
            logger.warning("Job firing missed", job=event.job_id, scheduled=str(event.scheduled_run_time))
        elif event.exception is not None:
            self._errors[event.job_id] = event.exception
            logger.error(
                "Job failed",
                job=event.job_id,
                error=str(event.exception),
                traceback=event.traceback,
            )
        else:
            self._errors.pop(event.job_id, None)
            logger.debug("Job finished", job=event.job_id)
