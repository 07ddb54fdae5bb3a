"""Operator refund endpoints."""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courtpay.api.deps import get_refund_orchestrator
from courtpay.core.database import get_db
from courtpay.models.booking import Booking
from courtpay.schemas.refund import ManualRefundRequest, RefundRequest, RefundResult, RefundStatus
from courtpay.services.refund_orchestrator import RefundOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings/{booking_id}/refunds", tags=["refunds"])


@router.post("", response_model=RefundResult, status_code=201)
async def create_refund(
    booking_id: str,
    refund: ManualRefundRequest,
    db: AsyncSession = Depends(get_db),
    orchestrator: RefundOrchestrator = Depends(get_refund_orchestrator),
):
    """
    Refund a booking's payment by hand.

    Goes through the same idempotent pipeline as automatic refunds, so a
    payment that was already refunded is never refunded again.

    Args:
        booking_id: Booking ID
        refund: External payment id, optional partial amount and reason
        db: Database session

    Returns:
        Refund result (status PENDING while the provider settles it)
    """
    result = await db.execute(select(Booking.tenant_id).where(Booking.id == booking_id))
    tenant_id = result.scalar_one_or_none()

    if tenant_id is None:
        raise HTTPException(status_code=404, detail="Booking not found")

    logger.info(f"Manual refund requested for booking {booking_id}, payment {refund.external_payment_id}")

    outcome = await orchestrator.process_refund(
        RefundRequest(
            booking_id=booking_id,
            amount=refund.amount,
            external_payment_id=refund.external_payment_id,
            reason=refund.reason,
            tenant_id=tenant_id,
        )
    )

    if outcome.already_refunded:
        raise HTTPException(status_code=409, detail=outcome.error)

    if outcome.status == RefundStatus.FAILED:
        raise HTTPException(status_code=502, detail=outcome.error or "Refund failed")

    return outcome
