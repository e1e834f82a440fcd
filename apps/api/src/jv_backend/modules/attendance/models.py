"""
Attendance Models

One row per employee per working day. A row is "open" while logout_time is
NULL; the finalizer closes rows left open past midnight.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, DateTime, Index, Numeric, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from jv_backend.core.database import Base


class AttendanceLog(Base):
    """Work session of one employee on one calendar day."""

    __tablename__ = "attendance_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    # employees is owned by the CRM schema; only the id is referenced here
    employee_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    login_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    logout_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    working_hours: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=0, server_default="0")
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("employee_id", "date", name="uq_attendance_employee_date"),
        Index("idx_attendance_employee_date", "employee_id", "date"),
    )

    @property
    def is_open(self) -> bool:
        return self.logout_time is None

    def __repr__(self) -> str:
        return f"<AttendanceLog {self.id} employee={self.employee_id} date={self.date}>"
