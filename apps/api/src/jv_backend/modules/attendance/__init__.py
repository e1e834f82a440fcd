"""
Attendance Module

Integrity maintenance for employee attendance logs:
1. Auto-checkout of logs left open past their calendar day
2. Hourly background job that runs the auto-checkout once a day at 04:00 local time

API Endpoints:
- POST /attendance/auto-checkout - Run the auto-checkout on demand (admin roles)

Background Jobs (via APScheduler):
- attendance_integrity_check: Polls hourly, finalizes at hour 04
"""

from .jobs import register_attendance_jobs, run_boot_finalization
from .router import router

__all__ = ["register_attendance_jobs", "router", "run_boot_finalization"]
