"""Named recurring jobs on APScheduler with overlap protection and manual triggers."""
import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from newsrelay.errors import UnknownJobError

logger = logging.getLogger(__name__)


class JobState:
    """Lifecycle: Scheduled -> (Running <-> Idle) -> Destroyed."""

    SCHEDULED = "scheduled"
    RUNNING = "running"
    IDLE = "idle"
    DESTROYED = "destroyed"


Recurrence = BaseTrigger | str | dict | timedelta


def build_trigger(recurrence: Recurrence, timezone: str) -> BaseTrigger:
    """Turn a recurrence value into an APScheduler trigger.

    Accepts a trigger instance, a crontab string ("*/30 * * * *"), a mapping
    of interval arguments ({"minutes": 30}), or a timedelta.
    """
    if isinstance(recurrence, BaseTrigger):
        return recurrence
    if isinstance(recurrence, str):
        return CronTrigger.from_crontab(recurrence, timezone=timezone)
    if isinstance(recurrence, dict):
        return IntervalTrigger(timezone=timezone, **recurrence)
    if isinstance(recurrence, timedelta):
        return IntervalTrigger(seconds=recurrence.total_seconds(), timezone=timezone)
    raise TypeError(f"Unsupported recurrence: {recurrence!r}")


@dataclass
class _Job:
    name: str
    task: Callable[[], Any]
    trigger: BaseTrigger
    lock: threading.Lock = field(default_factory=threading.Lock)
    state: str = JobState.SCHEDULED

    @property
    def running(self) -> bool:
        return self.state == JobState.RUNNING


class JobOrchestrator:
    """Owns the process's named recurring jobs.

    A job never overlaps itself: a scheduled tick that finds the previous
    invocation still running is skipped, and a manual trigger waits for it.
    """

    def __init__(self, timezone: str = "UTC", scheduler: BaseScheduler | None = None):
        self.timezone = timezone
        self._scheduler = scheduler or BackgroundScheduler(
            timezone=timezone,
            job_defaults={
                "coalesce": True,  # Collapse missed ticks into one run
                "max_instances": 1,
                "misfire_grace_time": 300,
            },
        )
        self._jobs: dict[str, _Job] = {}
        self._lock = threading.Lock()

    def start(self) -> None:
        """Start firing scheduled jobs."""
        if self._scheduler.running:
            return
        self._scheduler.start()
        for job in self._scheduler.get_jobs():
            logger.info(f"Scheduled job: {job.id} - next run: {job.next_run_time}")

    def schedule(self, name: str, recurrence: Recurrence, task: Callable[[], Any]) -> None:
        """Register a recurring job, replacing any job with the same name."""
        trigger = build_trigger(recurrence, self.timezone)
        with self._lock:
            previous = self._jobs.pop(name, None)
            if previous is not None:
                logger.warning(f"Job {name} already exists, destroying old job")
                self._remove_from_scheduler(name)
                previous.state = JobState.DESTROYED

            # Keep the old lock so a still-running old invocation can't overlap the new job
            job = _Job(name=name, task=task, trigger=trigger)
            if previous is not None:
                job.lock = previous.lock
            self._jobs[name] = job
            self._scheduler.add_job(
                self._run_scheduled,
                trigger=trigger,
                args=[name],
                id=name,
                name=name,
                replace_existing=True,
            )
        logger.info(f"Scheduled job '{name}' with trigger: {trigger}")

    def trigger(self, name: str) -> Any:
        """Run a job once, now, in the caller's thread.

        Waits for an in-flight invocation of the same job to finish first.
        Returns the task's result; task errors propagate to the caller.
        """
        job = self._jobs.get(name)
        if job is None:
            raise UnknownJobError(name)

        logger.info(f"Manually triggered job: {name}")
        with job.lock:
            try:
                return self._invoke(job)
            except Exception as e:
                logger.error(f"Manually triggered job {name} failed: {e}")
                raise

    def status(self) -> dict[str, dict[str, bool]]:
        with self._lock:
            jobs = list(self._jobs.values())
        return {
            job.name: {
                "running": job.running,
                "scheduled": self._scheduler.get_job(job.name) is not None,
            }
            for job in jobs
        }

    def job_state(self, name: str) -> str:
        job = self._jobs.get(name)
        if job is None:
            raise UnknownJobError(name)
        return job.state

    def destroy_all(self, wait: bool = True) -> None:
        """Stop and remove every job.

        In-flight invocations are allowed to finish; with wait=True this
        blocks until they have.
        """
        with self._lock:
            jobs = list(self._jobs.values())
            for job in jobs:
                self._remove_from_scheduler(job.name)
            self._jobs.clear()

        if wait:
            for job in jobs:
                with job.lock:
                    pass
        for job in jobs:
            job.state = JobState.DESTROYED
            logger.info(f"Destroyed job: {job.name}")

        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)

    def _run_scheduled(self, name: str) -> None:
        """Scheduler entry point. Errors are logged so the scheduler keeps running."""
        job = self._jobs.get(name)
        if job is None:
            return
        if not job.lock.acquire(blocking=False):
            logger.warning(f"Skipping tick of {name}: previous run still in progress")
            return
        try:
            logger.info(f"Starting scheduled job: {name}")
            self._invoke(job)
        except Exception:
            logger.exception(f"Scheduled job {name} failed")
        finally:
            job.lock.release()

    def _invoke(self, job: _Job) -> Any:
        job.state = JobState.RUNNING
        try:
            return job.task()
        finally:
            if job.state == JobState.RUNNING:
                job.state = JobState.IDLE

    def _remove_from_scheduler(self, name: str) -> None:
        if self._scheduler.get_job(name) is not None:
            self._scheduler.remove_job(name)
