"""Payment webhook reconciliation.

Turns one provider notification into at most one booking transition:

1. Validate the envelope; only ``type == "payment"`` is reconciled.
2. Normalize the payload into a ``PaymentSnapshot``. Inline data is used as
   is, id-only notifications are fetched from the provider of the booking's
   tenant when the envelope already names the booking, else from the global
   provider.
3. Recover the booking id from the snapshot's external reference.
4. Apply approved payments through the booking store (one transaction,
   conflict check included).
5. On a soft conflict, refund the payment and notify operators.

6. A further payment on an already confirmed booking is recorded and
   reported to operators as a possible double charge.

``handle`` never raises. ``processed=False`` tells the delivering side to
retry; ``processed=True`` with ``error`` set is a handled outcome worth a
look.
"""
import logging
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from courtpay.core.exceptions import (
    BookingNotFound,
    CredentialError,
    GatewayError,
    MalformedWebhook,
    MissingBookingReference,
    PaymentNotFound,
    ProviderUnavailable,
)
from courtpay.schemas.notification import AdditionalPaymentNotice, PaymentConflictNotice
from courtpay.schemas.refund import RefundRequest, RefundResult, RefundStatus
from courtpay.schemas.webhook import PaymentSnapshot, WebhookEnvelope, WebhookResult
from courtpay.services.booking_store import (
    BookingStore,
    TransitionAction,
    TransitionOutcome,
    booking_store,
)
from courtpay.services.notification_dispatcher import NotificationDispatcher, notification_dispatcher
from courtpay.services.provider_factory import PaymentProviderFactory, provider_factory
from courtpay.services.refund_orchestrator import RefundOrchestrator, refund_orchestrator

logger = logging.getLogger(__name__)

LATE_PAYMENT_REFUND_REASON = "Late payment received but the court was already taken"


def parse_envelope(payload: Any) -> WebhookEnvelope:
    """Validate the raw notification body."""
    if not isinstance(payload, dict):
        raise MalformedWebhook("Webhook body must be a JSON object")

    try:
        envelope = WebhookEnvelope.model_validate(payload)
    except ValidationError as e:
        raise MalformedWebhook(f"Invalid webhook format: {e.errors()[0]['msg']}") from e

    return envelope


class WebhookEngine:
    """Reconciles payment notifications against bookings."""

    def __init__(
        self,
        store: BookingStore = booking_store,
        providers: PaymentProviderFactory = provider_factory,
        refunds: RefundOrchestrator = refund_orchestrator,
        notifier: NotificationDispatcher = notification_dispatcher,
    ):
        self.store = store
        self.providers = providers
        self.refunds = refunds
        self.notifier = notifier

    async def handle(self, payload: Any) -> WebhookResult:
        """
        Reconcile one notification.

        Args:
            payload: Decoded webhook body

        Returns:
            Structured result, never an exception
        """
        try:
            return await self._handle(payload)

        except (MalformedWebhook, MissingBookingReference) as e:
            logger.error(f"Rejected webhook: {e}")
            return WebhookResult(processed=False, error=str(e))

        except (BookingNotFound, PaymentNotFound) as e:
            logger.error(f"Webhook references an unknown entity: {e}")
            return WebhookResult(processed=False, error=str(e))

        except (ProviderUnavailable, CredentialError, SQLAlchemyError) as e:
            logger.warning(f"Transient failure while reconciling webhook: {e}")
            return WebhookResult(processed=False, error=str(e), retryable=True)

        except GatewayError as e:
            logger.error(f"Payment provider error while reconciling webhook: {e}")
            return WebhookResult(processed=False, error=str(e))

        except Exception as e:
            logger.error(f"Unexpected error reconciling webhook: {e}", exc_info=True)
            return WebhookResult(processed=False, error=f"Internal error: {e}", retryable=True)

    async def _handle(self, payload: Any) -> WebhookResult:
        envelope = parse_envelope(payload)

        if envelope.type != "payment":
            logger.info(f"Ignoring webhook of type '{envelope.type}'")
            return WebhookResult(processed=True)

        snapshot = await self.resolve_snapshot(envelope)

        booking_id = snapshot.external_reference
        if not booking_id:
            raise MissingBookingReference(f"Payment {snapshot.id} has no booking reference")

        if not snapshot.is_approved:
            if await self.store.get_tenant_id(booking_id) is None:
                raise BookingNotFound(f"Booking {booking_id} not found (payment {snapshot.id})")

            logger.info(f"Payment {snapshot.id} for booking {booking_id} is '{snapshot.status}', no change")
            return WebhookResult(processed=True, booking_id=booking_id)

        outcome = await self.store.apply_approved_payment(booking_id, snapshot)

        if outcome.needs_refund:
            return await self._compensate(outcome, snapshot)

        if outcome.action == TransitionAction.RECORDED:
            return await self._flag_additional_payment(outcome, snapshot)

        return WebhookResult(
            processed=True,
            booking_updated=outcome.booking_updated,
            booking_id=booking_id,
        )

    async def resolve_snapshot(self, envelope: WebhookEnvelope) -> PaymentSnapshot:
        """
        Build the canonical payment snapshot for a notification.

        Raises:
            MalformedWebhook: The payload has no payment id or invalid inline data
            PaymentNotFound: The provider does not know the payment
            ProviderUnavailable: The provider could not be reached
        """
        data = envelope.data
        if data.get("id") in (None, ""):
            raise MalformedWebhook("Webhook data has no payment id")

        if data.get("status"):
            try:
                return PaymentSnapshot.model_validate(data)
            except ValidationError as e:
                raise MalformedWebhook(f"Invalid payment data for {data.get('id')}: {e.errors()[0]['msg']}") from e

        external_id = str(data["id"])
        tenant_id = await self._tenant_hint(data.get("external_reference"))

        provider = await self.providers.get_provider(tenant_id)
        logger.info(
            f"Fetching payment {external_id} via {provider.name} provider"
            + (f" of tenant {tenant_id}" if tenant_id else " (global)")
        )
        return await provider.fetch_payment(external_id)

    async def _tenant_hint(self, booking_id: Optional[Any]) -> Optional[str]:
        if not booking_id:
            return None
        return await self.store.get_tenant_id(str(booking_id))

    async def _compensate(self, outcome: TransitionOutcome, snapshot: PaymentSnapshot) -> WebhookResult:
        """Refund a payment that landed on a taken slot and tell operators."""
        refund = await self.refunds.process_refund(
            RefundRequest(
                booking_id=outcome.booking_id,
                external_payment_id=snapshot.id,
                reason=LATE_PAYMENT_REFUND_REASON,
                tenant_id=outcome.tenant_id,
            )
        )

        if outcome.action == TransitionAction.DUPLICATE_CONFLICT and refund.already_refunded:
            logger.info(f"Duplicate webhook for conflicting payment {snapshot.id}: {refund.error}")
            return WebhookResult(
                processed=True,
                booking_id=outcome.booking_id,
                error=f"Late payment {snapshot.id} on a taken slot: {refund.error}",
            )

        refund_status = self._refund_status(refund)

        await self.notifier.notify_payment_conflict(
            PaymentConflictNotice(
                booking_id=outcome.booking_id,
                payment_id=snapshot.id,
                tenant_id=outcome.tenant_id,
                conflicting_booking_id=outcome.conflicting_booking_id,
                refund_status=refund_status,
                refund_error=refund.error if refund_status != "success" else None,
            )
        )

        return WebhookResult(
            processed=True,
            booking_updated=outcome.booking_updated,
            booking_id=outcome.booking_id,
            error=(
                f"Late payment {snapshot.id} received but the slot is taken by booking "
                f"{outcome.conflicting_booking_id}; refund {refund_status}"
            ),
        )

    async def _flag_additional_payment(self, outcome: TransitionOutcome, snapshot: PaymentSnapshot) -> WebhookResult:
        await self.notifier.notify_additional_payment(
            AdditionalPaymentNotice(
                booking_id=outcome.booking_id,
                payment_id=snapshot.id,
                tenant_id=outcome.tenant_id,
                amount=outcome.amount,
            )
        )

        return WebhookResult(
            processed=True,
            booking_id=outcome.booking_id,
            error=f"Additional payment {snapshot.id} recorded for already confirmed booking {outcome.booking_id}",
        )

    @staticmethod
    def _refund_status(refund: RefundResult) -> str:
        if refund.success or refund.already_refunded:
            return "success"
        if refund.status == RefundStatus.PENDING:
            return "pending"
        return "failed"


# Singleton instance
webhook_engine = WebhookEngine()
