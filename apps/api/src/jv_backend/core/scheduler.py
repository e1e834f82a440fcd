"""
Background Job Scheduler

One AsyncIOScheduler per process runs the maintenance pollers (the hourly
attendance integrity tick and, in production, the self-ping).

Jobs are kept in a module registry so they can be listed and run by hand
from the development debug routes. A job registered before start_scheduler()
is scheduled when the scheduler starts; one registered later is scheduled
immediately. A job that raises is logged by the listener and the scheduler
keeps running.
"""

import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Coroutine[Any, Any, Any]]


@dataclass(frozen=True)
class RegisteredJob:
    func: JobFunc
    trigger: BaseTrigger


_scheduler: AsyncIOScheduler | None = None
_job_registry: dict[str, RegisteredJob] = {}


class SchedulerConfig:
    """APScheduler settings shared by every maintenance job."""

    # No timezone: triggers use the host's local time, which the
    # attendance tick compares against

    EXECUTORS = {"default": {"type": "asyncio"}}

    JOB_DEFAULTS = {
        "coalesce": True,
        "max_instances": 1,
        "misfire_grace_time": 300,
    }


def _job_listener(event: JobExecutionEvent) -> None:
    if event.exception:
        logger.error(
            f"[SCHEDULER] {event.job_id} raised: {event.exception}",
            exc_info=event.exception,
        )
    else:
        logger.debug(f"[SCHEDULER] {event.job_id} ran at {datetime.now(UTC).isoformat()}")


def get_scheduler() -> AsyncIOScheduler | None:
    return _scheduler


def _add_to_scheduler(job_id: str, job: RegisteredJob) -> None:
    _scheduler.add_job(job.func, trigger=job.trigger, id=job_id, replace_existing=True)
    logger.info(f"Scheduled job: {job_id}")


async def start_scheduler() -> AsyncIOScheduler:
    """Create the scheduler, add every registered job and start it."""
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        logger.warning("Scheduler already running, returning existing instance")
        return _scheduler

    logger.info("[SCHEDULER] Starting...")

    _scheduler = AsyncIOScheduler(
        executors=SchedulerConfig.EXECUTORS,
        job_defaults=SchedulerConfig.JOB_DEFAULTS,
    )
    _scheduler.add_listener(_job_listener, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    for job_id, job in _job_registry.items():
        _add_to_scheduler(job_id, job)

    _scheduler.start()

    logger.info(f"[SCHEDULER] Running with {len(_job_registry)} job(s)")
    return _scheduler


async def stop_scheduler() -> None:
    """Stop the scheduler without waiting on running jobs."""
    global _scheduler

    if _scheduler is None or not _scheduler.running:
        logger.debug("Scheduler not running, nothing to stop")
        _scheduler = None
        return

    try:
        _scheduler.shutdown(wait=False)
    finally:
        _scheduler = None
    logger.info("[SCHEDULER] Stopped")


def register_job(job_id: str, func: JobFunc, trigger: BaseTrigger) -> None:
    """
    Add `func` to the registry under `job_id`, replacing any previous entry.

    If the scheduler is already running the job is scheduled right away.
    """
    job = RegisteredJob(func=func, trigger=trigger)
    _job_registry[job_id] = job

    if _scheduler is None:
        logger.debug(f"Scheduler not started, job {job_id} will be scheduled on start")
        return

    _add_to_scheduler(job_id, job)


def clear_registry() -> None:
    """Forget every registered job. Used on shutdown and in tests."""
    _job_registry.clear()


async def trigger_job_manually(job_id: str) -> dict[str, Any]:
    """
    Run a registered job now, outside its schedule.

    A job failure is reported in the returned dict (status "error") rather
    than raised.

    Raises:
        ValueError: If job_id is not registered
    """
    job = _job_registry.get(job_id)
    if job is None:
        raise ValueError(f"Job {job_id} not found. Registered: {sorted(_job_registry)}")

    report: dict[str, Any] = {
        "job_id": job_id,
        "executed_at": datetime.now(UTC).isoformat(),
    }
    logger.info(f"[SCHEDULER] Manual run of {job_id}")

    try:
        report["result"] = await job.func()
    except Exception as e:
        logger.error(f"[SCHEDULER] Manual run of {job_id} failed: {e}", exc_info=True)
        report["status"] = "error"
        report["error"] = str(e)
        return report

    report["status"] = "success"
    return report


def _next_run_time(job_id: str) -> str | None:
    if _scheduler is None:
        return None
    scheduled = _scheduler.get_job(job_id)
    if scheduled is None or scheduled.next_run_time is None:
        return None
    return scheduled.next_run_time.isoformat()


def list_registered_jobs() -> list[dict[str, Any]]:
    """Registered jobs with their trigger and next run time (None until started)."""
    return [
        {
            "job_id": job_id,
            "trigger": str(job.trigger),
            "next_run_time": _next_run_time(job_id),
        }
        for job_id, job in _job_registry.items()
    ]
