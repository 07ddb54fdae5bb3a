"""Cancellation of PENDING bookings whose hold expired."""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update

from courtpay.core.database import AsyncSessionLocal
from courtpay.core.timeutils import utcnow
from courtpay.models.booking import Booking
from courtpay.models.enums import BookingStatus
from courtpay.schemas.booking import ExpiredBookingsResult

logger = logging.getLogger(__name__)

EXPIRED_HOLD_REASON = "Timeout: payment not completed within the hold window"


class ExpiredBookingsService:
    """Releases slots held by bookings that were never paid."""

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory

    async def cancel_expired_bookings(
        self,
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ExpiredBookingsResult:
        """
        Cancel every PENDING booking whose hold expired.

        The status and expiry are re-checked by the UPDATE itself, so a booking
        confirmed by a webhook in the meantime is left alone. A payment that
        arrives later for a cancelled booking goes through reactivation.

        Args:
            tenant_id: Restrict the sweep to one tenant
            now: Reference time

        Returns:
            Cancelled booking ids
        """
        now = now or utcnow()

        stmt = (
            update(Booking)
            .where(
                Booking.status == BookingStatus.PENDING.value,
                Booking.expires_at.is_not(None),
                Booking.expires_at < now,
            )
            .values(
                status=BookingStatus.CANCELLED.value,
                cancelled_at=now,
                cancellation_reason=EXPIRED_HOLD_REASON,
                updated_at=now,
            )
            .returning(Booking.id)
            .execution_options(synchronize_session=False)
        )
        if tenant_id:
            stmt = stmt.where(Booking.tenant_id == tenant_id)

        async with self.session_factory() as db:
            result = await db.execute(stmt)
            booking_ids = list(result.scalars().all())
            await db.commit()

        if booking_ids:
            logger.info(
                f"Cancelled {len(booking_ids)} expired bookings"
                + (f" for tenant {tenant_id}" if tenant_id else "")
            )
        else:
            logger.debug("No expired bookings to cancel")

        return ExpiredBookingsResult(
            cancelled=len(booking_ids),
            booking_ids=booking_ids,
            tenant_id=tenant_id,
            run_at=now,
        )


# Singleton instance
expired_bookings_service = ExpiredBookingsService()
