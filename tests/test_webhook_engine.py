"""End-to-end reconciliation tests for the webhook engine."""
from datetime import time, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from courtpay.core.exceptions import InsufficientBalance, MalformedWebhook, ProviderUnavailable
from courtpay.models.admin_notification import AdminNotification
from courtpay.models.enums import BookingStatus, PaymentType
from courtpay.models.payment import Payment
from courtpay.schemas.webhook import PaymentSnapshot
from courtpay.services.booking_store import BookingStore
from courtpay.services.credential_resolver import CredentialResolver
from courtpay.services.notification_dispatcher import (
    ADDITIONAL_PAYMENT,
    PAYMENT_CONFLICT,
    NotificationDispatcher,
)
from courtpay.services.payment_gateway import MockPaymentGateway
from courtpay.services.provider_factory import PaymentProviderFactory
from courtpay.services.refund_orchestrator import RefundOrchestrator
from courtpay.services.webhook_engine import WebhookEngine, parse_envelope

from conftest import TEST_KEY, create_booking, get_booking


class FailingRefundGateway(MockPaymentGateway):
    async def refund(self, external_id, amount=None):
        self.refund_calls.append((external_id, amount))
        raise InsufficientBalance("Insufficient balance in collector account", external_id=external_id)


class UnreachableGateway(MockPaymentGateway):
    async def fetch_payment(self, external_id):
        raise ProviderUnavailable("Request timed out", external_id=external_id)


@pytest.fixture
def providers(session_factory):
    return PaymentProviderFactory(
        resolver=CredentialResolver(session_factory=session_factory, encryption_key=TEST_KEY),
        global_access_token=None,
    )


@pytest.fixture
def gateway(providers, tenant):
    gateway = MockPaymentGateway()
    providers.set_tenant_provider(tenant.id, gateway)
    return gateway


@pytest.fixture
def engine_under_test(session_factory, providers):
    return WebhookEngine(
        store=BookingStore(session_factory=session_factory),
        providers=providers,
        refunds=RefundOrchestrator(session_factory=session_factory, providers=providers),
        notifier=NotificationDispatcher(session_factory=session_factory, slack_webhook_url=None),
    )


def payment_webhook(payment_id="mp-1", status="approved", booking_id=None, amount=5000, **extra):
    data = {"id": payment_id, "status": status, "transaction_amount": amount}
    if booking_id is not None:
        data["external_reference"] = booking_id
    data.update(extra)
    return {"type": "payment", "action": "payment.updated", "data": data}


async def ledger(session_factory, booking_id, payment_type):
    async with session_factory() as db:
        result = await db.execute(
            select(Payment).where(Payment.booking_id == booking_id, Payment.payment_type == payment_type.value)
        )
        return list(result.scalars().all())


async def notifications(session_factory):
    async with session_factory() as db:
        result = await db.execute(select(AdminNotification))
        return list(result.scalars().all())


async def occupy_slot(session_factory, court):
    return await create_booking(session_factory, court, start=time(10, 0), end=time(11, 30),
                                status=BookingStatus.CONFIRMED, expires_in=None)


class TestParseEnvelope:
    def test_accepts_payment_envelope(self):
        envelope = parse_envelope({"type": "payment", "data": {"id": 123}})
        assert envelope.type == "payment"
        assert envelope.data == {"id": 123}

    @pytest.mark.parametrize("payload", [
        None,
        [],
        "payment",
        {"data": {"id": "1"}},
        {"type": "", "data": {"id": "1"}},
        {"type": "payment"},
        {"type": "payment", "data": "1"},
    ])
    def test_rejects_malformed(self, payload):
        with pytest.raises(MalformedWebhook):
            parse_envelope(payload)


class TestConfirmation:
    async def test_pending_booking_is_confirmed(self, engine_under_test, session_factory, court, gateway):
        booking = await create_booking(session_factory, court)

        result = await engine_under_test.handle(payment_webhook(booking_id=booking.id))

        assert result.processed
        assert result.booking_updated
        assert result.booking_id == booking.id
        assert result.error is None

        stored = await get_booking(session_factory, booking.id)
        assert stored.status == BookingStatus.CONFIRMED.value
        assert stored.payment_status == "DEPOSIT_PAID"
        assert stored.expires_at is None

        payments = await ledger(session_factory, booking.id, PaymentType.PAYMENT)
        assert len(payments) == 1
        assert payments[0].reference_number == "mp-1"
        assert payments[0].amount == Decimal("5000")

    async def test_cancelled_booking_on_free_slot_is_reactivated(self, engine_under_test, session_factory, court, gateway):
        booking = await create_booking(
            session_factory, court, status=BookingStatus.CANCELLED, cancellation_reason="Timeout"
        )

        result = await engine_under_test.handle(payment_webhook(booking_id=booking.id))

        assert result.processed
        assert result.booking_updated
        stored = await get_booking(session_factory, booking.id)
        assert stored.status == BookingStatus.CONFIRMED.value
        assert stored.cancelled_at is None
        assert stored.cancellation_reason is None
        assert gateway.refund_calls == []
        assert await notifications(session_factory) == []

    async def test_non_approved_payment_changes_nothing(self, engine_under_test, session_factory, court, gateway):
        booking = await create_booking(session_factory, court)

        result = await engine_under_test.handle(payment_webhook(booking_id=booking.id, status="pending"))

        assert result.processed
        assert not result.booking_updated
        assert result.booking_id == booking.id
        assert (await get_booking(session_factory, booking.id)).status == BookingStatus.PENDING.value
        assert await ledger(session_factory, booking.id, PaymentType.PAYMENT) == []

    async def test_numeric_ids_are_accepted(self, engine_under_test, session_factory, court, gateway):
        booking = await create_booking(session_factory, court)

        result = await engine_under_test.handle(payment_webhook(payment_id=98765, booking_id=booking.id))

        assert result.processed
        payments = await ledger(session_factory, booking.id, PaymentType.PAYMENT)
        assert payments[0].reference_number == "98765"

    async def test_duplicate_approval_is_idempotent(self, engine_under_test, session_factory, court, gateway):
        booking = await create_booking(session_factory, court)
        webhook = payment_webhook(booking_id=booking.id)

        first = await engine_under_test.handle(webhook)
        second = await engine_under_test.handle(webhook)

        assert first.booking_updated
        assert second.processed
        assert not second.booking_updated
        assert len(await ledger(session_factory, booking.id, PaymentType.PAYMENT)) == 1

    async def test_second_payment_on_confirmed_booking_is_flagged(
        self, engine_under_test, session_factory, court, gateway, tenant
    ):
        booking = await create_booking(session_factory, court)
        await engine_under_test.handle(payment_webhook(payment_id="mp-1", booking_id=booking.id))

        result = await engine_under_test.handle(payment_webhook(payment_id="mp-2", booking_id=booking.id))

        assert result.processed
        assert not result.booking_updated
        assert "Additional payment mp-2" in result.error
        assert len(await ledger(session_factory, booking.id, PaymentType.PAYMENT)) == 2
        assert gateway.refund_calls == []

        sent = await notifications(session_factory)
        assert len(sent) == 1
        assert sent[0].type == ADDITIONAL_PAYMENT
        assert sent[0].severity == "warning"
        assert sent[0].tenant_id == tenant.id
        assert sent[0].details["payment_id"] == "mp-2"


class TestLatePaymentConflict:
    async def test_refunds_and_notifies(self, engine_under_test, session_factory, court, gateway, tenant):
        other = await occupy_slot(session_factory, court)
        booking = await create_booking(
            session_factory, court, start=time(11, 0), end=time(12, 0),
            status=BookingStatus.CANCELLED, cancellation_reason="Timeout",
        )

        result = await engine_under_test.handle(payment_webhook(booking_id=booking.id))

        assert result.processed
        assert result.booking_updated
        assert "slot is taken" in result.error
        assert other.id in result.error

        stored = await get_booking(session_factory, booking.id)
        assert stored.status == BookingStatus.CANCELLED.value
        assert stored.cancellation_reason.startswith("Timeout | LATE PAYMENT CONFLICT")
        assert (await get_booking(session_factory, other.id)).status == BookingStatus.CONFIRMED.value

        assert gateway.refund_calls == [("mp-1", None)]
        refunds = await ledger(session_factory, booking.id, PaymentType.REFUND)
        assert len(refunds) == 1
        assert refunds[0].status == "completed"

        sent = await notifications(session_factory)
        assert len(sent) == 1
        assert sent[0].type == PAYMENT_CONFLICT
        assert sent[0].severity == "error"
        assert sent[0].tenant_id == tenant.id
        assert sent[0].details["conflicting_booking_id"] == other.id
        assert sent[0].details["refund_status"] == "success"

    async def test_failed_refund_raises_critical_notification(
        self, engine_under_test, session_factory, court, providers, tenant
    ):
        gateway = FailingRefundGateway()
        providers.set_tenant_provider(tenant.id, gateway)
        await occupy_slot(session_factory, court)
        booking = await create_booking(session_factory, court, status=BookingStatus.CANCELLED)

        result = await engine_under_test.handle(payment_webhook(booking_id=booking.id))

        assert result.processed
        assert "refund failed" in result.error

        refunds = await ledger(session_factory, booking.id, PaymentType.REFUND)
        assert [r.status for r in refunds] == ["failed"]

        sent = await notifications(session_factory)
        assert len(sent) == 1
        assert sent[0].severity == "critical"
        assert "Insufficient balance" in sent[0].details["refund_error"]
        assert "Manual refund required" in sent[0].message

    async def test_disabled_tenant_refund_is_escalated_not_settled(self, engine_under_test, session_factory, court):
        # the court's tenant has Mercado Pago disabled
        await occupy_slot(session_factory, court)
        booking = await create_booking(session_factory, court, status=BookingStatus.CANCELLED)

        result = await engine_under_test.handle(payment_webhook(booking_id=booking.id))

        assert result.processed
        assert "refund failed" in result.error

        refunds = await ledger(session_factory, booking.id, PaymentType.REFUND)
        assert [(r.status, r.reference_number.startswith("pending_")) for r in refunds] == [("failed", True)]

        [notification] = await notifications(session_factory)
        assert notification.severity == "critical"
        assert "Payments are disabled for tenant" in notification.details["refund_error"]
        assert "refunded automatically" not in notification.message

    async def test_expired_hold_on_resold_slot(self, engine_under_test, session_factory, court, gateway):
        await occupy_slot(session_factory, court)
        booking = await create_booking(session_factory, court, expires_in=timedelta(minutes=-5))

        result = await engine_under_test.handle(payment_webhook(booking_id=booking.id))

        assert result.processed
        assert gateway.refund_calls == [("mp-1", None)]
        stored = await get_booking(session_factory, booking.id)
        assert stored.status == BookingStatus.CANCELLED.value
        assert stored.cancellation_reason.startswith("LATE PAYMENT CONFLICT")

    async def test_duplicate_delivery_does_not_refund_twice(self, engine_under_test, session_factory, court, gateway):
        await occupy_slot(session_factory, court)
        booking = await create_booking(session_factory, court, status=BookingStatus.CANCELLED)
        webhook = payment_webhook(booking_id=booking.id)

        first = await engine_under_test.handle(webhook)
        second = await engine_under_test.handle(webhook)

        assert first.processed
        assert second.processed
        assert not second.booking_updated
        assert "previously refunded" in second.error

        assert len(gateway.refund_calls) == 1
        assert len(await ledger(session_factory, booking.id, PaymentType.REFUND)) == 1
        assert len(await ledger(session_factory, booking.id, PaymentType.PAYMENT)) == 1
        assert len(await notifications(session_factory)) == 1


class TestSnapshotResolution:
    async def test_id_only_notification_is_fetched_from_global_provider(
        self, engine_under_test, session_factory, court, providers
    ):
        booking = await create_booking(session_factory, court)
        providers.get_global_provider().register_payment(
            PaymentSnapshot(id="mp-7", status="approved", transaction_amount=Decimal("4200"),
                            external_reference=booking.id)
        )

        result = await engine_under_test.handle({"type": "payment", "data": {"id": "mp-7"}})

        assert result.processed
        assert result.booking_updated
        payments = await ledger(session_factory, booking.id, PaymentType.PAYMENT)
        assert payments[0].amount == Decimal("4200")

    async def test_id_only_notification_uses_tenant_provider_when_booking_is_named(
        self, engine_under_test, session_factory, court, gateway
    ):
        booking = await create_booking(session_factory, court)
        gateway.register_payment(PaymentSnapshot(id="mp-8", status="approved", external_reference=booking.id))

        result = await engine_under_test.handle(
            {"type": "payment", "data": {"id": "mp-8", "external_reference": booking.id}}
        )

        assert result.processed
        assert result.booking_updated
        # Falls back to the deposit when the provider reports no amount
        payments = await ledger(session_factory, booking.id, PaymentType.PAYMENT)
        assert payments[0].amount == Decimal("5000")

    async def test_unknown_payment_is_not_retried(self, engine_under_test):
        result = await engine_under_test.handle({"type": "payment", "data": {"id": "nope"}})

        assert not result.processed
        assert not result.retryable
        assert "not found" in result.error

    async def test_unreachable_provider_is_retryable(self, engine_under_test, session_factory, court, providers, tenant):
        providers.set_tenant_provider(tenant.id, UnreachableGateway())
        booking = await create_booking(session_factory, court)

        result = await engine_under_test.handle(
            {"type": "payment", "data": {"id": "mp-9", "external_reference": booking.id}}
        )

        assert not result.processed
        assert result.retryable
        assert (await get_booking(session_factory, booking.id)).status == BookingStatus.PENDING.value


class TestRejections:
    async def test_non_payment_event_is_acknowledged(self, engine_under_test):
        result = await engine_under_test.handle({"type": "merchant_order", "data": {"id": "1"}})

        assert result.processed
        assert not result.booking_updated
        assert result.booking_id is None

    async def test_malformed_envelope(self, engine_under_test):
        result = await engine_under_test.handle({"data": {"id": "1"}})

        assert not result.processed
        assert not result.retryable
        assert "Invalid webhook format" in result.error

    async def test_missing_payment_id(self, engine_under_test):
        result = await engine_under_test.handle({"type": "payment", "data": {"status": "approved"}})

        assert not result.processed
        assert not result.retryable

    async def test_missing_booking_reference(self, engine_under_test):
        result = await engine_under_test.handle(payment_webhook())

        assert not result.processed
        assert not result.retryable
        assert "no booking reference" in result.error

    async def test_unknown_booking(self, engine_under_test, gateway):
        result = await engine_under_test.handle(payment_webhook(booking_id="missing-booking"))

        assert not result.processed
        assert not result.retryable
        assert "missing-booking" in result.error

    async def test_unknown_booking_with_non_approved_payment(self, engine_under_test):
        result = await engine_under_test.handle(payment_webhook(booking_id="missing-booking", status="rejected"))

        assert not result.processed
        assert "not found" in result.error

    async def test_unexpected_error_is_retryable(self, engine_under_test, monkeypatch):
        async def explode(envelope):
            raise RuntimeError("boom")

        monkeypatch.setattr(engine_under_test, "resolve_snapshot", explode)

        result = await engine_under_test.handle(payment_webhook(booking_id="b-1"))

        assert not result.processed
        assert result.retryable
        assert result.error == "Internal error: boom"
