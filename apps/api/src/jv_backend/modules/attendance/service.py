"""
Attendance Service

Auto-checkout of orphaned attendance logs.

A log left open past its calendar day (forgotten check-out, crashed client,
skipped session) is closed at 23:59:59 UTC of its own date, and its working
hours are computed from the login time. Logs dated today are never touched so
late shifts can still check out normally.

The operation is idempotent: each close is conditional on the log still being
open, so a second run on the same day changes nothing.
"""

import logging
from collections.abc import Callable
from datetime import UTC, date, datetime, time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from jv_backend.core.database import async_session_maker

from . import repository

logger = logging.getLogger(__name__)

AUTO_LOGOUT_TIME = time(23, 59, 59)
HOURS_PRECISION = Decimal("0.01")


def auto_logout_time(day: date) -> datetime:
    """Last second of `day` in UTC."""
    return datetime.combine(day, AUTO_LOGOUT_TIME, tzinfo=UTC)


def compute_working_hours(login_time: datetime | None, logout_time: datetime) -> Decimal:
    """Hours between login and logout, rounded to 2 places and never negative."""
    if login_time is None:
        return Decimal("0.00")
    hours = (logout_time - login_time).total_seconds() / 3600
    return Decimal(str(max(0.0, hours))).quantize(HOURS_PRECISION, rounding=ROUND_HALF_UP)


async def auto_finalize_orphaned_attendance(
    session_factory: Callable[[], AsyncSession] = async_session_maker,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Close every open log dated before today (UTC).

    A failure on one log is logged and counted; the remaining logs are still
    processed.

    Args:
        session_factory: Async session factory
        now: Current time, defaults to now in UTC

    Returns:
        Dict with executed_at, processed (logs closed by this run) and errors
    """
    executed_at = now or datetime.now(UTC)
    today = executed_at.astimezone(UTC).date()

    results: dict[str, Any] = {
        "executed_at": executed_at.isoformat(),
        "processed": 0,
        "errors": 0,
    }

    async with session_factory() as db:
        try:
            orphaned = await repository.get_open_logs_before(db, today)
        except Exception as e:
            logger.error(f"[AUTO_CHECKOUT] Critical Failure: {e}", exc_info=True)
            raise

        if not orphaned:
            logger.debug("[AUTO_CHECKOUT] No orphaned attendance logs.")
            return results

        for log in orphaned:
            logout_time = auto_logout_time(log.date)
            working_hours = compute_working_hours(log.login_time, logout_time)
            try:
                closed = await repository.close_log(db, log.id, logout_time, working_hours)
            except Exception as e:
                await db.rollback()
                logger.error(f"[AUTO_CHECKOUT] Failed to finalize log {log.id}: {e}")
                results["errors"] += 1
                continue

            if closed:
                results["processed"] += 1

    logger.info(f"[AUTO_CHECKOUT] Finalized {results['processed']} orphaned attendance logs.")
    return results
