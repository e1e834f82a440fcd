"""
Attendance Schemas
"""

from datetime import datetime

from pydantic import BaseModel, Field


class AutoCheckoutResponse(BaseModel):
    """Summary of one auto-checkout run."""

    executed_at: datetime
    processed: int = Field(..., ge=0, description="Logs closed by this run")
    errors: int = Field(..., ge=0, description="Logs that failed to close")
