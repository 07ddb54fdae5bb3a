"""Payment ledger model."""
import uuid

from sqlalchemy import Column, String, ForeignKey, DateTime, Numeric, Text, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from courtpay.core.database import Base
from courtpay.models.enums import PaymentMethod, PaymentRecordStatus


class Payment(Base):
    """Ledger entry attached to a booking. Rows are updated in place until settled and never deleted."""

    __tablename__ = "payments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    payment_method = Column(String, nullable=False, default=PaymentMethod.CARD.value)
    payment_type = Column(String, nullable=False)  # PAYMENT, REFUND
    reference_number = Column(String, nullable=True)  # provider payment or refund id
    status = Column(String, nullable=False, default=PaymentRecordStatus.PENDING.value)  # pending, completed, failed
    notes = Column(Text, nullable=True)  # provenance
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    booking = relationship("Booking", back_populates="payments")

    __table_args__ = (
        Index("ix_payments_booking_type", "booking_id", "payment_type"),
    )
