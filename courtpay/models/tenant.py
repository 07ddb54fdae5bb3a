"""Tenant model."""
import uuid

from sqlalchemy import Column, String, Boolean, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from courtpay.core.database import Base


class Tenant(Base):
    """A club whose courts, bookings and payment credentials are isolated from other clubs."""

    __tablename__ = "tenants"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Mercado Pago integration. Secrets are stored as iv:authTag:ciphertext
    mercadopago_enabled = Column(Boolean, default=False, nullable=False)
    mercadopago_access_token = Column(String, nullable=True)
    mercadopago_public_key = Column(String, nullable=True)
    mercadopago_webhook_secret = Column(String, nullable=True)
    mercadopago_environment = Column(String, nullable=True, default="sandbox")  # sandbox, production

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    courts = relationship("Court", back_populates="tenant", cascade="all, delete-orphan")
    bookings = relationship("Booking", back_populates="tenant")
