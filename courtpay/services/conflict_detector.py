"""Slot conflict detection.

A booking occupies its slot while it is not cancelled and its hold has not
expired. Half-open ranges ``[start, end)`` overlap iff
``start_a < end_b and start_b < end_a``.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from courtpay.core.timeutils import utcnow
from courtpay.models.booking import Booking
from courtpay.models.enums import BookingStatus

logger = logging.getLogger(__name__)


def live_overlap_clause(booking: Booking, now: datetime):
    """Filter matching live bookings, other than ``booking``, on its court, date and time range."""
    return and_(
        Booking.tenant_id == booking.tenant_id,
        Booking.court_id == booking.court_id,
        Booking.booking_date == booking.booking_date,
        Booking.id != booking.id,
        Booking.status != BookingStatus.CANCELLED.value,
        or_(Booking.expires_at.is_(None), Booking.expires_at > now),
        Booking.start_time < booking.end_time,
        Booking.end_time > booking.start_time,
    )


async def find_conflicting_booking(
    db: AsyncSession,
    booking: Booking,
    now: Optional[datetime] = None,
) -> Optional[Booking]:
    """
    Find a live booking occupying any part of ``booking``'s slot.

    Read-only. Callers that act on the answer must run it inside the same
    transaction as the write that depends on it.

    Args:
        db: Database session
        booking: Booking under evaluation (excluded from the search)
        now: Reference time for hold expiry

    Returns:
        The earliest-starting conflicting booking, or None
    """
    now = now or utcnow()

    result = await db.execute(
        select(Booking)
        .where(live_overlap_clause(booking, now))
        .order_by(Booking.start_time)
        .limit(1)
    )
    conflict = result.scalar_one_or_none()

    if conflict:
        logger.info(
            f"Booking {booking.id} conflicts with booking {conflict.id} "
            f"(court {booking.court_id}, {booking.booking_date} {conflict.start_time}-{conflict.end_time})"
        )

    return conflict


async def has_conflict(
    db: AsyncSession,
    booking: Booking,
    now: Optional[datetime] = None,
) -> bool:
    """Whether another live booking overlaps ``booking``."""
    return await find_conflicting_booking(db, booking, now) is not None
