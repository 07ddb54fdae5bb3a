"""Maintenance job endpoints."""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from courtpay.api.deps import get_expiry_service
from courtpay.schemas.booking import ExpiredBookingsResult
from courtpay.services.expiry_service import ExpiredBookingsService

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/cancel-expired-bookings", response_model=ExpiredBookingsResult)
async def cancel_expired_bookings(
    tenant_id: Optional[str] = Query(None, description="Only sweep this tenant"),
    service: ExpiredBookingsService = Depends(get_expiry_service),
):
    """Run the expired-hold sweep now instead of waiting for the scheduler."""
    return await service.cancel_expired_bookings(tenant_id=tenant_id)
