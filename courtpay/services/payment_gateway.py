"""Payment provider gateway.

Thin interface over the external payment API: fetch a payment by id and
refund it. ``MercadoPagoGateway`` talks to the real REST API;
``MockPaymentGateway`` is the in-memory stand-in used when no credentials are
configured, and applies the same refund rules so the rest of the pipeline
behaves identically with or without a live provider.
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Type

import httpx

from courtpay.core.config import settings
from courtpay.core.exceptions import (
    AlreadyRefunded,
    GatewayError,
    InsufficientBalance,
    PaymentNotFound,
    ProviderError,
    ProviderUnavailable,
    RefundWindowExpired,
)
from courtpay.core.timeutils import ensure_utc, utcnow
from courtpay.schemas.refund import RefundOutcome, RefundStatus
from courtpay.schemas.webhook import PaymentSnapshot, RefundRecord

logger = logging.getLogger(__name__)


# Mercado Pago does not return structured codes for these refund failures,
# so they are recognised from the error text. First match wins.
ERROR_CLASSIFICATION: List[Tuple[Tuple[str, ...], Type[GatewayError]]] = [
    (("already refunded", "ya fue reembolsado", "refunded"), AlreadyRefunded),
    (("insufficient", "insuficiente", "balance", "saldo"), InsufficientBalance),
    (("expired", "expirado", "180"), RefundWindowExpired),
    (("not found", "not_found", "no encontrado"), PaymentNotFound),
]


def classify_provider_error(message: str, external_id: Optional[str] = None) -> GatewayError:
    """
    Map provider error text to a gateway exception.

    Args:
        message: Error text returned by the provider
        external_id: Payment id the call was about

    Returns:
        The matching GatewayError subclass instance, ProviderError if none match
    """
    lowered = (message or "").lower()
    for patterns, error_class in ERROR_CLASSIFICATION:
        if any(pattern in lowered for pattern in patterns):
            return error_class(message, external_id=external_id)
    return ProviderError(message or "Unknown provider error", external_id=external_id)


def check_refundable(
    payment: PaymentSnapshot,
    amount: Optional[Decimal] = None,
    now: Optional[datetime] = None,
    window_days: int = settings.REFUND_WINDOW_DAYS,
) -> Optional[Decimal]:
    """
    Validate a refund request against a payment snapshot.

    Args:
        payment: Current provider view of the payment
        amount: Partial amount, or None for the unrefunded remainder
        now: Reference time
        window_days: Refund period from approval

    Returns:
        The amount to send to the provider (None for a full refund)

    Raises:
        ProviderError: Payment is not approved or amount exceeds what is left
        RefundWindowExpired: Approval is older than the refund window
        AlreadyRefunded: Nothing is left to refund
    """
    now = now or utcnow()

    if not payment.is_approved:
        raise ProviderError(
            f"Cannot refund payment {payment.id} with status '{payment.status}'; only approved payments can be refunded",
            external_id=payment.id,
        )

    if payment.date_approved is None:
        raise RefundWindowExpired(
            f"Payment {payment.id} has no approval date; the refund window cannot be checked",
            external_id=payment.id,
        )

    days_since_approval = (now - ensure_utc(payment.date_approved)).days
    if days_since_approval > window_days:
        raise RefundWindowExpired(
            f"Payment {payment.id} was approved {days_since_approval} days ago; "
            f"refunds are only allowed within {window_days} days",
            external_id=payment.id,
        )

    total = payment.transaction_amount or Decimal("0")
    refunded = payment.refunded_amount
    if total > 0 and refunded >= total:
        raise AlreadyRefunded(
            f"Payment {payment.id} was already fully refunded ({refunded} of {total})",
            external_id=payment.id,
        )

    if amount is not None and total > 0 and amount > total - refunded:
        raise ProviderError(
            f"Requested refund {amount} exceeds the refundable amount {total - refunded} "
            f"({refunded} of {total} already refunded)",
            external_id=payment.id,
        )

    return amount


class PaymentGateway(ABC):
    """Interface every payment provider implementation offers."""

    name = "base"

    @abstractmethod
    async def fetch_payment(self, external_id: str) -> PaymentSnapshot:
        """Return the provider's view of a payment or raise PaymentNotFound."""

    @abstractmethod
    async def refund(self, external_id: str, amount: Optional[Decimal] = None) -> RefundOutcome:
        """Refund a payment, partially when amount is given."""


class MercadoPagoGateway(PaymentGateway):
    """Gateway backed by the Mercado Pago REST API."""

    name = "mercadopago"

    def __init__(
        self,
        access_token: str,
        environment: str = "sandbox",
        base_url: str = settings.MERCADOPAGO_API_BASE_URL,
        timeout: float = settings.PROVIDER_TIMEOUT_SECONDS,
        max_retries: int = settings.PROVIDER_MAX_RETRIES,
        retry_backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not access_token:
            raise ValueError("A Mercado Pago access token is required")

        self.access_token = access_token
        self.environment = environment
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.retry_backoff_seconds = retry_backoff_seconds
        self._transport = transport

        self.endpoints = {
            "payment": "/v1/payments/{payment_id}",
            "refunds": "/v1/payments/{payment_id}/refunds",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.access_token}"},
        )

    async def _make_request(
        self,
        method: str,
        path: str,
        external_id: str,
        json_data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Make an HTTP request with retry logic.

        Connection failures, timeouts and 5xx answers are retried with
        exponential backoff. 4xx answers are classified and raised at once.

        Raises:
            ProviderUnavailable: If the provider cannot be reached after retries
            GatewayError: For any classified provider error
        """
        async with self._client() as client:
            for attempt in range(self.max_retries):
                try:
                    logger.info(
                        f"Making {method} request to {path} (attempt {attempt + 1}/{self.max_retries})"
                    )
                    response = await client.request(method, path, json=json_data, headers=headers)

                    if response.status_code >= 500:
                        raise ProviderUnavailable(
                            f"Mercado Pago answered {response.status_code} for payment {external_id}",
                            external_id=external_id,
                        )

                    if response.status_code == 404:
                        raise PaymentNotFound(
                            f"Payment {external_id} not found at Mercado Pago",
                            external_id=external_id,
                        )

                    if response.status_code >= 400:
                        raise classify_provider_error(self._error_message(response), external_id)

                    return response.json()

                except (httpx.TransportError, ProviderUnavailable) as e:
                    logger.warning(
                        f"Request for payment {external_id} failed (attempt {attempt + 1}/{self.max_retries}): {e}"
                    )

                    if attempt == self.max_retries - 1:
                        if isinstance(e, ProviderUnavailable):
                            raise
                        raise ProviderUnavailable(
                            f"Mercado Pago unreachable for payment {external_id}: {e}",
                            external_id=external_id,
                        ) from e

                    # Exponential backoff
                    await asyncio.sleep(self.retry_backoff_seconds * 2 ** attempt)

        raise ProviderUnavailable("Max retries exceeded", external_id=external_id)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text

        message = body.get("message") or body.get("error") or ""
        causes = body.get("cause") or []
        details = [c.get("description", "") for c in causes if isinstance(c, dict)]
        return " ".join([message] + details).strip() or response.text

    async def fetch_payment(self, external_id: str) -> PaymentSnapshot:
        """
        Fetch a payment from Mercado Pago.

        Args:
            external_id: Mercado Pago payment id

        Returns:
            Normalized payment snapshot
        """
        logger.info(f"Fetching payment {external_id} from Mercado Pago ({self.environment})")

        path = self.endpoints["payment"].format(payment_id=external_id)
        data = await self._make_request("GET", path, external_id)
        return PaymentSnapshot.model_validate(data)

    async def refund(self, external_id: str, amount: Optional[Decimal] = None) -> RefundOutcome:
        """
        Refund a payment at Mercado Pago.

        The payment is fetched first to check its status, the refund window and
        the remaining balance. One idempotency key is used across retries so a
        retried call cannot refund twice.

        Args:
            external_id: Mercado Pago payment id
            amount: Partial refund amount, None for the full remainder

        Returns:
            Provider refund outcome
        """
        payment = await self.fetch_payment(external_id)
        amount = check_refundable(payment, amount)

        body: Dict[str, Any] = {}
        if amount is not None:
            body["amount"] = float(amount)

        idempotency_key = str(uuid.uuid4())
        path = self.endpoints["refunds"].format(payment_id=external_id)

        logger.info(
            f"Requesting {'partial' if amount is not None else 'full'} refund for payment {external_id}"
        )
        data = await self._make_request(
            "POST",
            path,
            external_id,
            json_data=body,
            headers={"X-Idempotency-Key": idempotency_key},
        )

        refund_id = data.get("id")
        if not refund_id:
            raise ProviderError(
                f"Refund for payment {external_id} returned no refund id",
                external_id=external_id,
            )

        provider_status = data.get("status")
        completed = provider_status in ("approved", "refunded")

        return RefundOutcome(
            refund_id=str(refund_id),
            status=RefundStatus.COMPLETED if completed else RefundStatus.PENDING,
            amount=data.get("amount"),
            provider_status=provider_status,
        )


class MockPaymentGateway(PaymentGateway):
    """
    Deterministic in-memory gateway for development and tests.

    Payments registered with ``register_payment`` are returned by
    ``fetch_payment`` and refunds against them obey ``check_refundable``.
    Refunds for unknown payments succeed, as a sandbox would.
    """

    name = "mock"

    def __init__(self):
        self.payments: Dict[str, PaymentSnapshot] = {}
        self.refund_calls: List[Tuple[str, Optional[Decimal]]] = []

    def register_payment(self, payment: PaymentSnapshot) -> None:
        self.payments[payment.id] = payment

    async def fetch_payment(self, external_id: str) -> PaymentSnapshot:
        payment = self.payments.get(external_id)
        if payment is None:
            raise PaymentNotFound(f"Payment {external_id} not found", external_id=external_id)
        return payment

    async def refund(self, external_id: str, amount: Optional[Decimal] = None) -> RefundOutcome:
        self.refund_calls.append((external_id, amount))
        refund_id = f"mock_refund_{external_id}_{len(self.refund_calls)}"

        payment = self.payments.get(external_id)
        if payment is not None:
            amount = check_refundable(payment, amount)
            refunded = amount if amount is not None else (
                (payment.transaction_amount or Decimal("0")) - payment.refunded_amount
            )
            self.payments[external_id] = payment.model_copy(
                update={"refunds": payment.refunds + [RefundRecord(id=refund_id, amount=refunded, status="approved")]}
            )

        logger.info(f"Mock refund {refund_id} for payment {external_id} (amount={amount})")

        return RefundOutcome(
            refund_id=refund_id,
            status=RefundStatus.COMPLETED,
            amount=amount,
            provider_status="approved",
        )


class DisabledPaymentGateway(PaymentGateway):
    """
    Gateway handed out for tenants whose payments are switched off.

    Every call fails, so a refund for such a tenant ends ``failed`` on the
    ledger and is escalated instead of being recorded as settled.
    """

    name = "disabled"

    def __init__(self, tenant_id: str, reason: str):
        self.tenant_id = tenant_id
        self.reason = reason

    def _error(self, external_id: str) -> ProviderError:
        return ProviderError(
            f"Payments are disabled for tenant {self.tenant_id} ({self.reason})",
            external_id=external_id,
        )

    async def fetch_payment(self, external_id: str) -> PaymentSnapshot:
        raise self._error(external_id)

    async def refund(self, external_id: str, amount: Optional[Decimal] = None) -> RefundOutcome:
        logger.error(f"Refund of payment {external_id} refused: payments are disabled for tenant {self.tenant_id}")
        raise self._error(external_id)
