"""Operator notification model."""
import uuid

from sqlalchemy import Column, String, Boolean, ForeignKey, DateTime, Text, JSON
from sqlalchemy.sql import func
from courtpay.core.database import Base


class AdminNotification(Base):
    """A message for club operators, e.g. a late payment that needs a refund."""

    __tablename__ = "admin_notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), ForeignKey("tenants.id"), nullable=True, index=True)
    type = Column(String, nullable=False, index=True)  # e.g. PAYMENT_CONFLICT
    severity = Column(String, nullable=False, default="info")  # info, warning, error, critical
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
