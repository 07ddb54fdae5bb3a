"""Webhook and payment snapshot schemas."""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal


def _to_str(value: Any) -> Any:
    # Mercado Pago sends ids as numbers in some payloads and strings in others
    if value is None or isinstance(value, str):
        return value
    return str(value)


class WebhookEnvelope(BaseModel):
    """Inbound provider notification. Only ``type == "payment"`` is reconciled."""

    type: str = Field(min_length=1)
    data: Dict[str, Any]

    model_config = ConfigDict(extra="allow")


class RefundRecord(BaseModel):
    """A refund already applied to a payment at the provider."""

    id: str
    amount: Decimal = Decimal("0")
    status: Optional[str] = None

    coerce_id = field_validator("id", mode="before")(_to_str)


class PaymentSnapshot(BaseModel):
    """Canonical view of a provider payment, built once at the ingestion boundary."""

    id: str
    status: str = ""  # provider vocabulary: approved, pending, rejected, ...
    transaction_amount: Optional[Decimal] = None
    date_approved: Optional[datetime] = None
    external_reference: Optional[str] = None
    refunds: List[RefundRecord] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    coerce_ids = field_validator("id", "external_reference", mode="before")(_to_str)

    @field_validator("refunds", mode="before")
    @classmethod
    def default_refunds(cls, value):
        return value or []

    @field_validator("status", mode="before")
    @classmethod
    def default_status(cls, value):
        return value or ""

    @property
    def refunded_amount(self) -> Decimal:
        return sum((r.amount for r in self.refunds), Decimal("0"))

    @property
    def is_approved(self) -> bool:
        return self.status == "approved"


class WebhookResult(BaseModel):
    """
    Outcome of reconciling one notification.

    ``processed=False`` means the delivering side should retry; ``processed=True``
    with ``error`` set is a handled outcome that operators should look at.
    """

    processed: bool
    booking_updated: bool = False
    booking_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
