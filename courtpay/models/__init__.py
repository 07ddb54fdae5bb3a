"""Database models."""
from courtpay.models.tenant import Tenant
from courtpay.models.court import Court
from courtpay.models.booking import Booking
from courtpay.models.payment import Payment
from courtpay.models.admin_notification import AdminNotification

__all__ = ["Tenant", "Court", "Booking", "Payment", "AdminNotification"]
