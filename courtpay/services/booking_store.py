"""Transactional booking transitions driven by provider payments.

Every write that depends on slot occupancy goes through ``BookingStore`` so the
conflict check and the write share one transaction. Within a process the slot
(tenant, court, date) is serialized with an asyncio lock. Across processes the
court row is locked with ``SELECT ... FOR UPDATE`` before the booking row, so
two transactions touching overlapping bookings on one court run one after the
other and the second sees what the first committed.
"""
import logging
import re
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from courtpay.core.database import AsyncSessionLocal
from courtpay.core.exceptions import BookingNotFound
from courtpay.core.locks import KeyedLocks
from courtpay.core.timeutils import utcnow
from courtpay.models.booking import Booking
from courtpay.models.court import Court
from courtpay.models.enums import (
    BookingPaymentStatus,
    BookingStatus,
    PaymentMethod,
    PaymentRecordStatus,
    PaymentType,
)
from courtpay.models.payment import Payment
from courtpay.schemas.webhook import PaymentSnapshot
from courtpay.services.conflict_detector import find_conflicting_booking

logger = logging.getLogger(__name__)

# Soft conflict markers. A late payment on a taken slot keeps the booking
# non-confirmed; the booking reason and the payment notes start with these.
CONFLICT_REASON_PREFIX = "LATE PAYMENT CONFLICT"
CONFLICT_NOTE_PREFIX = "LATE PAYMENT CONFLICT"

_CONFLICTING_ID_PATTERN = re.compile(r"conflicting_booking_id=([^;]+);")


def court_lock_query(court_id: str):
    """Row lock on a court; every occupancy-changing transaction takes it first."""
    return select(Court.id).where(Court.id == court_id).with_for_update()


def external_id_token(external_id: str) -> str:
    """Delimited provenance token written into ledger notes."""
    return f"external_payment_id={external_id};"


class TransitionAction(str, Enum):
    CONFIRMED = "confirmed"  # PENDING -> CONFIRMED
    REACTIVATED = "reactivated"  # CANCELLED -> CONFIRMED
    CONFLICT = "conflict"  # slot taken, booking left non-confirmed, payment flagged
    RECORDED = "recorded"  # booking already CONFIRMED, payment added to the ledger
    DUPLICATE = "duplicate"  # payment already on the ledger
    DUPLICATE_CONFLICT = "duplicate_conflict"  # flagged payment already on the ledger


@dataclass
class TransitionOutcome:
    booking_id: str
    tenant_id: str
    action: TransitionAction
    previous_status: str
    payment_record_id: Optional[str] = None
    amount: Optional[Decimal] = None
    conflicting_booking_id: Optional[str] = None

    @property
    def booking_updated(self) -> bool:
        return self.action in (
            TransitionAction.CONFIRMED,
            TransitionAction.REACTIVATED,
            TransitionAction.CONFLICT,
        )

    @property
    def needs_refund(self) -> bool:
        return self.action in (TransitionAction.CONFLICT, TransitionAction.DUPLICATE_CONFLICT)


class BookingStore:
    """Owns the transactions that move bookings through their lifecycle."""

    def __init__(self, session_factory=AsyncSessionLocal):
        self.session_factory = session_factory
        self._slot_locks = KeyedLocks()

    async def get_tenant_id(self, booking_id: str) -> Optional[str]:
        """Return the tenant owning a booking, or None if the booking is unknown."""
        async with self.session_factory() as db:
            result = await db.execute(select(Booking.tenant_id).where(Booking.id == booking_id))
            return result.scalar_one_or_none()

    async def _slot_key(self, booking_id: str) -> Optional[Tuple[str, str, str]]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Booking.tenant_id, Booking.court_id, Booking.booking_date).where(
                    Booking.id == booking_id
                )
            )
            row = result.first()

        if row is None:
            return None
        return (row.tenant_id, row.court_id, str(row.booking_date))

    async def apply_approved_payment(
        self,
        booking_id: str,
        payment: PaymentSnapshot,
        now=None,
    ) -> TransitionOutcome:
        """
        Apply an approved provider payment to its booking.

        The court and booking row locks, the conflict check, the booking update and the
        PAYMENT ledger row all happen in a single transaction.

        Args:
            booking_id: Booking recovered from the payment's external reference
            payment: Approved payment snapshot
            now: Reference time for hold expiry

        Returns:
            What happened to the booking

        Raises:
            BookingNotFound: No booking with that id
        """
        now = now or utcnow()

        slot = await self._slot_key(booking_id)
        if slot is None:
            raise BookingNotFound(f"Booking {booking_id} not found (payment {payment.id})")

        async with self._slot_locks.hold(slot):
            async with self.session_factory() as db:
                async with db.begin():
                    await self._lock_court(db, slot[1])
                    booking = await self._lock_booking(db, booking_id)
                    if booking is None:
                        raise BookingNotFound(f"Booking {booking_id} not found (payment {payment.id})")

                    outcome = await self._transition(db, booking, payment, now)

        logger.info(
            f"Booking {booking_id}: payment {payment.id} -> {outcome.action.value} "
            f"(was {outcome.previous_status})"
        )
        return outcome

    async def _lock_court(self, db: AsyncSession, court_id: str) -> None:
        await db.execute(court_lock_query(court_id))

    async def _lock_booking(self, db: AsyncSession, booking_id: str) -> Optional[Booking]:
        result = await db.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .options(selectinload(Booking.payments))
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _transition(
        self,
        db: AsyncSession,
        booking: Booking,
        payment: PaymentSnapshot,
        now,
    ) -> TransitionOutcome:
        previous_status = booking.status
        amount = payment.transaction_amount if payment.transaction_amount is not None else booking.deposit_amount

        outcome = TransitionOutcome(
            booking_id=booking.id,
            tenant_id=booking.tenant_id,
            action=TransitionAction.DUPLICATE,
            previous_status=previous_status,
            amount=amount,
        )

        existing = self._find_payment_record(booking, payment.id)
        if existing is not None:
            outcome.payment_record_id = existing.id
            outcome.amount = existing.amount
            if existing.notes and existing.notes.startswith(CONFLICT_NOTE_PREFIX):
                outcome.action = TransitionAction.DUPLICATE_CONFLICT
                match = _CONFLICTING_ID_PATTERN.search(existing.notes)
                outcome.conflicting_booking_id = match.group(1) if match else None
            logger.info(f"Payment {payment.id} already recorded for booking {booking.id}")
            return outcome

        if booking.status == BookingStatus.CONFIRMED.value:
            record = self._add_payment(
                db,
                booking,
                payment,
                amount,
                f"Approved payment for an already confirmed booking - payment {payment.id}",
            )
            outcome.action = TransitionAction.RECORDED
            outcome.payment_record_id = record.id
            return outcome

        conflict = await find_conflicting_booking(db, booking, now)

        if conflict is not None:
            self._flag_conflict(booking, payment, conflict, now)
            record = self._add_payment(
                db,
                booking,
                payment,
                amount,
                f"{CONFLICT_NOTE_PREFIX}: slot already taken by booking {conflict.id}; "
                f"refund required; conflicting_booking_id={conflict.id}",
            )
            outcome.action = TransitionAction.CONFLICT
            outcome.payment_record_id = record.id
            outcome.conflicting_booking_id = conflict.id
            logger.error(
                f"Payment conflict: booking {booking.id}, payment {payment.id}, "
                f"slot taken by booking {conflict.id}"
            )
            return outcome

        if booking.status == BookingStatus.CANCELLED.value:
            booking.cancelled_at = None
            booking.cancellation_reason = None
            outcome.action = TransitionAction.REACTIVATED
            note = f"Late payment approved, booking reactivated - payment {payment.id}"
        else:
            outcome.action = TransitionAction.CONFIRMED
            note = f"Payment approved via webhook - payment {payment.id}"

        booking.status = BookingStatus.CONFIRMED.value
        booking.payment_status = BookingPaymentStatus.DEPOSIT_PAID.value
        booking.expires_at = None
        booking.updated_at = now

        record = self._add_payment(db, booking, payment, amount, note)
        outcome.payment_record_id = record.id
        return outcome

    @staticmethod
    def _find_payment_record(booking: Booking, external_id: str) -> Optional[Payment]:
        for record in booking.payments:
            if record.payment_type == PaymentType.PAYMENT.value and record.reference_number == external_id:
                return record
        return None

    @staticmethod
    def _flag_conflict(booking: Booking, payment: PaymentSnapshot, conflict: Booking, now) -> None:
        reason = (
            f"{CONFLICT_REASON_PREFIX}: payment {payment.id} approved after the slot "
            f"was taken by booking {conflict.id}; refund issued"
        )
        if booking.cancellation_reason:
            booking.cancellation_reason = f"{booking.cancellation_reason} | {reason}"
        else:
            booking.cancellation_reason = reason

        # A PENDING hold whose slot was resold is closed here too
        booking.status = BookingStatus.CANCELLED.value
        if booking.cancelled_at is None:
            booking.cancelled_at = now
        booking.updated_at = now

    @staticmethod
    def _add_payment(
        db: AsyncSession,
        booking: Booking,
        payment: PaymentSnapshot,
        amount: Decimal,
        note: str,
    ) -> Payment:
        record = Payment(
            id=str(uuid.uuid4()),
            tenant_id=booking.tenant_id,
            booking_id=booking.id,
            amount=amount,
            payment_method=PaymentMethod.CARD.value,
            payment_type=PaymentType.PAYMENT.value,
            reference_number=payment.id,
            status=PaymentRecordStatus.COMPLETED.value,
            notes=f"{note}; {external_id_token(payment.id)}",
        )
        db.add(record)
        booking.payments.append(record)
        return record


# Singleton instance
booking_store = BookingStore()
