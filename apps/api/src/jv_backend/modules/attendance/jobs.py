"""
Attendance Background Jobs

Attendance integrity check:
- Polls every 60 minutes and reads the local wall-clock hour on each tick
- Runs the auto-checkout finalizer when the local hour is 04
- A per-day marker keeps it to one run per local calendar day, even when the
  poller fires more than once inside the 04:00 hour

In development the finalizer also runs once at boot.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from apscheduler.triggers.interval import IntervalTrigger

from jv_backend.core.scheduler import register_job

from . import service

logger = logging.getLogger(__name__)

FINALIZE_HOUR = 4
INTEGRITY_CHECK_INTERVAL_MINUTES = 60

JOB_ID_ATTENDANCE_INTEGRITY = "attendance_integrity_check"


@dataclass
class SchedulerTick:
    """Local calendar day the finalizer last ran on."""

    last_fired_on: date | None = None

    def should_fire(self, now: datetime) -> bool:
        return now.hour == FINALIZE_HOUR and self.last_fired_on != now.date()

    def mark(self, now: datetime) -> None:
        self.last_fired_on = now.date()


_tick = SchedulerTick()


async def attendance_integrity_tick(
    now: datetime | None = None,
    tick: SchedulerTick | None = None,
) -> dict[str, Any] | None:
    """
    One poll of the integrity check.

    Args:
        now: Local wall-clock time, defaults to datetime.now()
        tick: Day marker, defaults to the process-wide one

    Returns:
        The finalizer's summary if it ran on this tick, else None
    """
    now = now or datetime.now()
    if tick is None:
        tick = _tick

    if not tick.should_fire(now):
        return None

    logger.info("[SYSTEM] Running scheduled attendance integrity check...")
    result = await service.auto_finalize_orphaned_attendance()
    tick.mark(now)
    return result


async def run_boot_finalization() -> dict[str, Any] | None:
    """Development aid: finalize once at startup. Failures are only logged."""
    logger.info("[DEV] Running startup attendance check...")
    try:
        return await service.auto_finalize_orphaned_attendance()
    except Exception as e:
        logger.error(f"[DEV] Startup attendance check failed: {e}")
        return None


def register_attendance_jobs() -> None:
    """Register the hourly integrity check with the scheduler."""
    register_job(
        job_id=JOB_ID_ATTENDANCE_INTEGRITY,
        func=attendance_integrity_tick,
        trigger=IntervalTrigger(minutes=INTEGRITY_CHECK_INTERVAL_MINUTES),
    )
    logger.info(
        f"Registered job: {JOB_ID_ATTENDANCE_INTEGRITY} "
        f"(interval: {INTEGRITY_CHECK_INTERVAL_MINUTES} min, fires at hour {FINALIZE_HOUR:02d})"
    )
