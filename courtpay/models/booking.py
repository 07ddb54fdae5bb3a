"""Booking model."""
import uuid

from sqlalchemy import Column, String, ForeignKey, DateTime, Date, Time, Numeric, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from courtpay.core.database import Base
from courtpay.models.enums import BookingStatus, BookingPaymentStatus


class Booking(Base):
    """A reservation of one court for one date and contiguous time range."""

    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=False, index=True)
    court_id = Column(String(36), ForeignKey("courts.id"), nullable=False, index=True)
    booking_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)  # exclusive
    status = Column(String, nullable=False, default=BookingStatus.PENDING.value)  # PENDING, CONFIRMED, CANCELLED
    payment_status = Column(String, nullable=False, default=BookingPaymentStatus.PENDING.value)
    deposit_amount = Column(Numeric(10, 2), nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=True)  # NULL: the hold does not expire
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    tenant = relationship("Tenant", back_populates="bookings")
    court = relationship("Court", back_populates="bookings")
    payments = relationship("Payment", back_populates="booking", order_by="Payment.created_at")

    # Slot lookups for the conflict detector and the expiry sweep
    __table_args__ = (
        Index("ix_bookings_slot", "tenant_id", "court_id", "booking_date"),
        Index("ix_bookings_status_expires", "status", "expires_at"),
    )
