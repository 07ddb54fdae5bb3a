"""Booking job schemas."""
from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime


class ExpiredBookingsResult(BaseModel):
    """Outcome of one expired-hold sweep."""

    cancelled: int
    booking_ids: List[str]
    tenant_id: Optional[str] = None
    run_at: datetime
