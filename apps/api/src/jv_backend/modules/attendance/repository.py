"""
Attendance Repository

Database operations used by the attendance finalizer.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import AttendanceLog


async def get_open_logs_before(db: AsyncSession, day: date) -> list[AttendanceLog]:
    """Open logs (no logout_time) dated strictly before `day`, oldest first."""
    result = await db.execute(
        select(AttendanceLog)
        .where(
            AttendanceLog.logout_time.is_(None),
            AttendanceLog.date < day,
        )
        .order_by(AttendanceLog.date, AttendanceLog.id)
    )
    return list(result.scalars().all())


async def close_log(
    db: AsyncSession,
    log_id: UUID,
    logout_time: datetime,
    working_hours: Decimal,
) -> bool:
    """
    Close an open log.

    The update only matches while logout_time is still NULL, so a log closed
    concurrently (by the employee or another run) is left untouched.

    Returns:
        True if this call closed the log
    """
    result = await db.execute(
        update(AttendanceLog)
        .where(
            AttendanceLog.id == log_id,
            AttendanceLog.logout_time.is_(None),
        )
        .values(logout_time=logout_time, working_hours=working_hours)
    )
    await db.commit()
    return result.rowcount > 0
