"""Tests for transactional booking transitions."""
import asyncio
from datetime import time, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from courtpay.core.exceptions import BookingNotFound
from courtpay.models.enums import BookingPaymentStatus, BookingStatus, PaymentType
from courtpay.models.payment import Payment
from courtpay.schemas.webhook import PaymentSnapshot
from courtpay.services.booking_store import (
    CONFLICT_NOTE_PREFIX,
    CONFLICT_REASON_PREFIX,
    BookingStore,
    TransitionAction,
)

from conftest import create_booking, get_booking


def approved(payment_id, booking_id, amount="5000"):
    return PaymentSnapshot(
        id=payment_id,
        status="approved",
        transaction_amount=Decimal(amount) if amount is not None else None,
        external_reference=booking_id,
    )


async def payments_for(session_factory, booking_id):
    async with session_factory() as db:
        result = await db.execute(select(Payment).where(Payment.booking_id == booking_id))
        return list(result.scalars().all())


class TestApplyApprovedPayment:
    async def test_pending_booking_is_confirmed(self, session_factory, court):
        booking = await create_booking(session_factory, court)
        store = BookingStore(session_factory)

        outcome = await store.apply_approved_payment(booking.id, approved("mp-1", booking.id))

        assert outcome.action == TransitionAction.CONFIRMED
        assert outcome.booking_updated
        assert not outcome.needs_refund

        refreshed = await get_booking(session_factory, booking.id)
        assert refreshed.status == BookingStatus.CONFIRMED.value
        assert refreshed.payment_status == BookingPaymentStatus.DEPOSIT_PAID.value
        assert refreshed.expires_at is None

        payments = await payments_for(session_factory, booking.id)
        assert len(payments) == 1
        assert payments[0].id == outcome.payment_record_id
        assert payments[0].payment_type == PaymentType.PAYMENT.value
        assert payments[0].reference_number == "mp-1"
        assert payments[0].status == "completed"
        assert payments[0].amount == Decimal("5000")
        assert "external_payment_id=mp-1;" in payments[0].notes

    async def test_amount_falls_back_to_deposit(self, session_factory, court):
        booking = await create_booking(session_factory, court, deposit_amount=Decimal("1234.50"))
        store = BookingStore(session_factory)

        await store.apply_approved_payment(booking.id, approved("mp-1", booking.id, amount=None))

        payments = await payments_for(session_factory, booking.id)
        assert payments[0].amount == Decimal("1234.50")

    async def test_cancelled_booking_is_reactivated_when_free(self, session_factory, court):
        booking = await create_booking(
            session_factory,
            court,
            status=BookingStatus.CANCELLED,
            expires_in=timedelta(minutes=-30),
            cancellation_reason="Timeout",
        )
        store = BookingStore(session_factory)

        outcome = await store.apply_approved_payment(booking.id, approved("mp-1", booking.id))

        assert outcome.action == TransitionAction.REACTIVATED
        refreshed = await get_booking(session_factory, booking.id)
        assert refreshed.status == BookingStatus.CONFIRMED.value
        assert refreshed.cancelled_at is None
        assert refreshed.cancellation_reason is None
        assert refreshed.expires_at is None

    async def test_cancelled_booking_on_taken_slot_is_flagged(self, session_factory, court):
        booking = await create_booking(
            session_factory, court, status=BookingStatus.CANCELLED, cancellation_reason="Timeout"
        )
        other = await create_booking(
            session_factory, court, time(9, 30), time(11, 0), status=BookingStatus.CONFIRMED, expires_in=None
        )
        store = BookingStore(session_factory)

        outcome = await store.apply_approved_payment(booking.id, approved("mp-1", booking.id))

        assert outcome.action == TransitionAction.CONFLICT
        assert outcome.needs_refund
        assert outcome.conflicting_booking_id == other.id

        refreshed = await get_booking(session_factory, booking.id)
        assert refreshed.status == BookingStatus.CANCELLED.value
        assert refreshed.cancellation_reason.startswith("Timeout | ")
        assert CONFLICT_REASON_PREFIX in refreshed.cancellation_reason

        payments = await payments_for(session_factory, booking.id)
        assert len(payments) == 1
        assert payments[0].notes.startswith(CONFLICT_NOTE_PREFIX)
        assert payments[0].status == "completed"

    async def test_pending_booking_with_expired_hold_on_resold_slot(self, session_factory, court):
        booking = await create_booking(session_factory, court, expires_in=timedelta(minutes=-5))
        await create_booking(session_factory, court, status=BookingStatus.CONFIRMED, expires_in=None)
        store = BookingStore(session_factory)

        outcome = await store.apply_approved_payment(booking.id, approved("mp-1", booking.id))

        assert outcome.action == TransitionAction.CONFLICT
        refreshed = await get_booking(session_factory, booking.id)
        assert refreshed.status == BookingStatus.CANCELLED.value
        assert refreshed.cancelled_at is not None

    async def test_duplicate_payment_is_recorded_once(self, session_factory, court):
        booking = await create_booking(session_factory, court)
        store = BookingStore(session_factory)

        await store.apply_approved_payment(booking.id, approved("mp-1", booking.id))
        outcome = await store.apply_approved_payment(booking.id, approved("mp-1", booking.id))

        assert outcome.action == TransitionAction.DUPLICATE
        assert not outcome.booking_updated
        assert len(await payments_for(session_factory, booking.id)) == 1

    async def test_duplicate_conflict_still_needs_refund(self, session_factory, court):
        booking = await create_booking(session_factory, court, status=BookingStatus.CANCELLED)
        other = await create_booking(session_factory, court, status=BookingStatus.CONFIRMED, expires_in=None)
        store = BookingStore(session_factory)

        await store.apply_approved_payment(booking.id, approved("mp-1", booking.id))
        outcome = await store.apply_approved_payment(booking.id, approved("mp-1", booking.id))

        assert outcome.action == TransitionAction.DUPLICATE_CONFLICT
        assert outcome.needs_refund
        assert outcome.conflicting_booking_id == other.id
        assert len(await payments_for(session_factory, booking.id)) == 1

    async def test_new_payment_on_confirmed_booking_is_recorded(self, session_factory, court):
        booking = await create_booking(session_factory, court, status=BookingStatus.CONFIRMED, expires_in=None)
        store = BookingStore(session_factory)

        outcome = await store.apply_approved_payment(booking.id, approved("mp-2", booking.id))

        assert outcome.action == TransitionAction.RECORDED
        assert not outcome.booking_updated
        refreshed = await get_booking(session_factory, booking.id)
        assert refreshed.status == BookingStatus.CONFIRMED.value
        assert len(await payments_for(session_factory, booking.id)) == 1

    async def test_unknown_booking(self, session_factory):
        store = BookingStore(session_factory)

        with pytest.raises(BookingNotFound):
            await store.apply_approved_payment("missing", approved("mp-1", "missing"))

    async def test_get_tenant_id(self, session_factory, tenant, court):
        booking = await create_booking(session_factory, court)
        store = BookingStore(session_factory)

        assert await store.get_tenant_id(booking.id) == tenant.id
        assert await store.get_tenant_id("missing") is None


class TestConcurrency:
    async def test_overlapping_approvals_confirm_only_one(self, session_factory, court):
        first = await create_booking(session_factory, court, status=BookingStatus.CANCELLED)
        second = await create_booking(session_factory, court, time(11, 0), time(12, 0), status=BookingStatus.CANCELLED)
        store = BookingStore(session_factory)

        outcomes = await asyncio.gather(
            store.apply_approved_payment(first.id, approved("mp-1", first.id)),
            store.apply_approved_payment(second.id, approved("mp-2", second.id)),
        )

        actions = sorted(outcome.action.value for outcome in outcomes)
        assert actions == [TransitionAction.CONFLICT.value, TransitionAction.REACTIVATED.value]

        statuses = [
            (await get_booking(session_factory, booking.id)).status for booking in (first, second)
        ]
        assert statuses.count(BookingStatus.CONFIRMED.value) == 1

    async def test_concurrent_duplicate_deliveries(self, session_factory, court):
        booking = await create_booking(session_factory, court)
        store = BookingStore(session_factory)

        outcomes = await asyncio.gather(
            *[store.apply_approved_payment(booking.id, approved("mp-1", booking.id)) for _ in range(3)]
        )

        actions = [outcome.action for outcome in outcomes]
        assert actions.count(TransitionAction.CONFIRMED) == 1
        assert actions.count(TransitionAction.DUPLICATE) == 2
        assert len(await payments_for(session_factory, booking.id)) == 1


class TestRowLocks:
    def test_court_lock_query_is_select_for_update(self):
        from sqlalchemy.dialects import postgresql

        from courtpay.services.booking_store import court_lock_query

        sql = str(court_lock_query("court-1").compile(dialect=postgresql.dialect()))

        assert "FROM courts" in sql
        assert sql.rstrip().endswith("FOR UPDATE")

    async def test_court_is_locked_before_booking_and_conflict_check(self, session_factory, court, monkeypatch):
        import courtpay.services.booking_store as booking_store_module

        booking = await create_booking(session_factory, court, status=BookingStatus.CANCELLED)
        store = BookingStore(session_factory)
        events = []

        original_lock_court = store._lock_court
        original_lock_booking = store._lock_booking
        original_find = booking_store_module.find_conflicting_booking

        async def lock_court(db, court_id):
            events.append(("court", court_id))
            await original_lock_court(db, court_id)

        async def lock_booking(db, booking_id):
            events.append(("booking", booking_id))
            return await original_lock_booking(db, booking_id)

        async def find(db, target, now=None):
            events.append(("conflict_check", target.id))
            return await original_find(db, target, now)

        monkeypatch.setattr(store, "_lock_court", lock_court)
        monkeypatch.setattr(store, "_lock_booking", lock_booking)
        monkeypatch.setattr(booking_store_module, "find_conflicting_booking", find)

        await store.apply_approved_payment(booking.id, approved("mp-1", booking.id))

        assert events == [
            ("court", court.id),
            ("booking", booking.id),
            ("conflict_check", booking.id),
        ]

    async def test_slot_lock_entries_are_released(self, session_factory, court):
        booking = await create_booking(session_factory, court)
        store = BookingStore(session_factory)

        await store.apply_approved_payment(booking.id, approved("mp-1", booking.id))

        assert len(store._slot_locks) == 0
