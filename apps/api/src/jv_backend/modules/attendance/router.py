"""
Attendance Router

Mounted at /api/attendance behind the auth gate.

Endpoints:
- POST /api/attendance/auto-checkout - Run the orphaned-log finalizer now (admin roles)
"""

import logging

from fastapi import APIRouter, Depends

from jv_backend.core.auth import ADMIN_ROLES, CurrentUser, require_roles
from jv_backend.modules.attendance import service
from jv_backend.modules.attendance.schemas import AutoCheckoutResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/auto-checkout",
    response_model=AutoCheckoutResponse,
    summary="Finalize Orphaned Attendance",
    description="""
Close every attendance log that was never checked out and is dated before
today (UTC). Logs are closed at 23:59:59 of their own date.

Safe to call repeatedly: already closed logs are not touched.
""",
)
async def auto_checkout(
    user: CurrentUser = Depends(require_roles(*ADMIN_ROLES)),
) -> AutoCheckoutResponse:
    logger.info(f"Manual auto-checkout requested by {user}")
    result = await service.auto_finalize_orphaned_attendance()
    return AutoCheckoutResponse(**result)
