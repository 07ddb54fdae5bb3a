"""Idempotent refund pipeline.

Every refund attempt leaves a REFUND row on the ledger: it is committed as
``pending`` before the provider is called and updated in place to
``completed`` or ``failed`` afterwards. A completed REFUND row for a booking
and external payment id blocks any further refund of that payment.
"""
import logging
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from courtpay.core.database import AsyncSessionLocal
from courtpay.core.exceptions import AlreadyRefunded, CredentialError, GatewayError
from courtpay.core.locks import KeyedLocks
from courtpay.core.timeutils import utcnow
from courtpay.models.booking import Booking
from courtpay.models.enums import PaymentMethod, PaymentRecordStatus, PaymentType
from courtpay.models.payment import Payment
from courtpay.schemas.refund import RefundOutcome, RefundRequest, RefundResult, RefundStatus
from courtpay.services.booking_store import external_id_token
from courtpay.services.provider_factory import PaymentProviderFactory, provider_factory

logger = logging.getLogger(__name__)


class RefundOrchestrator:
    """Records, issues and settles refunds."""

    def __init__(
        self,
        session_factory=AsyncSessionLocal,
        providers: PaymentProviderFactory = provider_factory,
    ):
        self.session_factory = session_factory
        self.providers = providers
        self._payment_locks = KeyedLocks()

    async def process_refund(self, request: RefundRequest) -> RefundResult:
        """
        Refund a provider payment at most once.

        Refunds of the same external payment are serialized within the process,
        so two concurrent calls cannot both pass the idempotency check.

        Args:
            request: Refund request

        Returns:
            Refund result. ``success`` reflects the provider outcome; a ledger
            write that failed after a successful refund is reported in
            ``ledger_error``.
        """
        async with self._payment_locks.hold(request.external_payment_id):
            return await self._process(request)

    async def _process(self, request: RefundRequest) -> RefundResult:
        booking_id = request.booking_id
        external_id = request.external_payment_id

        tenant_id = request.tenant_id or await self._resolve_tenant_id(booking_id)
        if not tenant_id:
            logger.error(f"Cannot refund payment {external_id}: booking {booking_id} has no tenant")
            return RefundResult(
                success=False,
                status=RefundStatus.FAILED,
                error=f"Could not resolve the tenant for booking {booking_id}",
            )

        existing = await self._find_completed_refund(booking_id, external_id)
        if existing is not None:
            logger.warning(
                f"Payment {external_id} for booking {booking_id} was previously refunded "
                f"(refund {existing.reference_number}); skipping"
            )
            return RefundResult(
                success=False,
                refund_id=existing.reference_number,
                status=RefundStatus.COMPLETED,
                error=f"Payment {external_id} was previously refunded. Refund ID: {existing.reference_number}",
                already_refunded=True,
                ledger_record_id=existing.id,
            )

        try:
            record_id = await self._record_pending(request, tenant_id)
        except SQLAlchemyError as e:
            logger.error(f"Failed to record pending refund for booking {booking_id}: {e}", exc_info=True)
            return RefundResult(
                success=False,
                status=RefundStatus.FAILED,
                error=f"Could not record the refund for booking {booking_id}: {e}",
            )

        try:
            provider = await self.providers.get_provider(tenant_id)
            outcome = await provider.refund(external_id, request.amount)
        except (GatewayError, CredentialError) as e:
            logger.error(f"Refund of payment {external_id} for booking {booking_id} failed: {e}")
            ledger_error = await self._settle(
                record_id,
                request,
                status=PaymentRecordStatus.FAILED,
                reference=None,
                note=f"Refund failed. Error: {e}",
            )
            return RefundResult(
                success=False,
                status=RefundStatus.FAILED,
                error=str(e),
                already_refunded=isinstance(e, AlreadyRefunded),
                ledger_record_id=record_id,
                ledger_error=ledger_error,
            )

        return await self._finish(record_id, request, outcome)

    async def _finish(self, record_id: str, request: RefundRequest, outcome: RefundOutcome) -> RefundResult:
        completed = outcome.status == RefundStatus.COMPLETED

        if completed:
            note = f"Refund completed. Refund ID: {outcome.refund_id}"
            status = PaymentRecordStatus.COMPLETED
        else:
            # The provider accepted the refund but has not settled it yet
            note = f"Refund accepted by provider, not settled ({outcome.provider_status}). Refund ID: {outcome.refund_id}"
            status = PaymentRecordStatus.PENDING

        ledger_error = await self._settle(
            record_id,
            request,
            status=status,
            reference=outcome.refund_id,
            note=note,
        )

        logger.info(
            f"Refund {outcome.refund_id} for payment {request.external_payment_id} "
            f"(booking {request.booking_id}): {outcome.status.value}"
        )

        return RefundResult(
            success=completed,
            refund_id=outcome.refund_id,
            status=outcome.status,
            error=None if completed else f"Refund {outcome.refund_id} is still pending at the provider",
            ledger_record_id=record_id,
            ledger_error=ledger_error,
        )

    async def _resolve_tenant_id(self, booking_id: str) -> Optional[str]:
        async with self.session_factory() as db:
            result = await db.execute(select(Booking.tenant_id).where(Booking.id == booking_id))
            return result.scalar_one_or_none()

    async def _find_completed_refund(self, booking_id: str, external_id: str) -> Optional[Payment]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Payment)
                .where(
                    Payment.booking_id == booking_id,
                    Payment.payment_type == PaymentType.REFUND.value,
                    Payment.status == PaymentRecordStatus.COMPLETED.value,
                    or_(
                        Payment.reference_number == external_id,
                        Payment.notes.contains(external_id_token(external_id)),
                    ),
                )
                .order_by(Payment.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def _refund_amount(self, db, request: RefundRequest) -> Decimal:
        if request.amount is not None:
            return request.amount

        result = await db.execute(
            select(Payment.amount).where(
                Payment.booking_id == request.booking_id,
                Payment.payment_type == PaymentType.PAYMENT.value,
                Payment.reference_number == request.external_payment_id,
            )
        )
        amount = result.scalars().first()
        if amount is not None:
            return amount

        result = await db.execute(select(Booking.deposit_amount).where(Booking.id == request.booking_id))
        return result.scalar_one_or_none() or Decimal("0")

    async def _record_pending(self, request: RefundRequest, tenant_id: str) -> str:
        async with self.session_factory() as db:
            record = Payment(
                id=str(uuid.uuid4()),
                tenant_id=tenant_id,
                booking_id=request.booking_id,
                amount=await self._refund_amount(db, request),
                payment_method=PaymentMethod.CARD.value,
                payment_type=PaymentType.REFUND.value,
                reference_number=f"pending_{int(utcnow().timestamp() * 1000)}",
                status=PaymentRecordStatus.PENDING.value,
                notes=self._notes("Refund in progress", request),
            )
            db.add(record)
            await db.commit()
            return record.id

    async def _settle(
        self,
        record_id: str,
        request: RefundRequest,
        status: PaymentRecordStatus,
        reference: Optional[str],
        note: str,
    ) -> Optional[str]:
        """Update the REFUND row in place. Returns an error message instead of raising."""
        try:
            async with self.session_factory() as db:
                record = await db.get(Payment, record_id)
                if record is None:
                    return f"Refund record {record_id} disappeared before it could be updated"

                record.status = status.value
                if reference:
                    record.reference_number = reference
                record.notes = self._notes(note, request)
                record.updated_at = utcnow()
                await db.commit()
        except SQLAlchemyError as e:
            logger.error(
                f"Refund of payment {request.external_payment_id} ended {status.value} "
                f"but ledger row {record_id} could not be updated: {e}",
                exc_info=True,
            )
            return f"Ledger update failed for refund record {record_id}: {e}"

        return None

    @staticmethod
    def _notes(state: str, request: RefundRequest) -> str:
        return f"{state}. Reason: {request.reason}. {external_id_token(request.external_payment_id)}"


# Singleton instance
refund_orchestrator = RefundOrchestrator()
