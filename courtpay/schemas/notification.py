"""Operator notification schemas."""
from pydantic import BaseModel
from decimal import Decimal
from typing import Optional, Literal, Dict, Any


class PaymentConflictNotice(BaseModel):
    """A late payment landed on a slot that another booking now occupies."""

    booking_id: str
    payment_id: str
    tenant_id: Optional[str] = None
    conflicting_booking_id: Optional[str] = None
    refund_status: Literal["success", "failed", "pending"]
    refund_error: Optional[str] = None


class AdditionalPaymentNotice(BaseModel):
    """A second approved payment arrived for a booking that was already confirmed."""

    booking_id: str
    payment_id: str
    tenant_id: Optional[str] = None
    amount: Optional[Decimal] = None


class NotificationCreate(BaseModel):
    type: str
    severity: Literal["info", "warning", "error", "critical"] = "info"
    title: str
    message: str
    tenant_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
