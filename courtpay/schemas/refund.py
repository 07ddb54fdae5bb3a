"""Refund schemas."""
from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional
from decimal import Decimal


class RefundStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class RefundRequest(BaseModel):
    """Input to the refund orchestrator."""

    booking_id: str
    amount: Optional[Decimal] = Field(default=None, gt=0)  # None: refund the unrefunded remainder
    external_payment_id: str
    reason: str
    tenant_id: Optional[str] = None


class RefundOutcome(BaseModel):
    """What the provider answered to a refund call."""

    refund_id: str
    status: RefundStatus
    amount: Optional[Decimal] = None
    provider_status: Optional[str] = None


class RefundResult(BaseModel):
    """Result of the refund pipeline, ledger bookkeeping included."""

    success: bool
    refund_id: Optional[str] = None
    status: RefundStatus
    error: Optional[str] = None
    already_refunded: bool = False
    ledger_record_id: Optional[str] = None
    ledger_error: Optional[str] = None  # gateway outcome stands, but the ledger row was not updated


class ManualRefundRequest(BaseModel):
    """Operator-triggered refund for a booking."""

    external_payment_id: str
    amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: str = Field(min_length=3)
