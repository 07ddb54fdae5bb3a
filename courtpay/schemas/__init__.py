"""API schemas."""
from courtpay.schemas.webhook import (
    WebhookEnvelope,
    PaymentSnapshot,
    RefundRecord,
    WebhookResult,
)
from courtpay.schemas.refund import (
    RefundStatus,
    RefundRequest,
    RefundOutcome,
    RefundResult,
    ManualRefundRequest,
)
from courtpay.schemas.tenant import (
    TenantCredentials,
    TenantPaymentSettingsUpdate,
    TenantPaymentSettings,
)
from courtpay.schemas.notification import (
    PaymentConflictNotice,
    NotificationCreate,
)
from courtpay.schemas.booking import ExpiredBookingsResult

__all__ = [
    "WebhookEnvelope",
    "PaymentSnapshot",
    "RefundRecord",
    "WebhookResult",
    "RefundStatus",
    "RefundRequest",
    "RefundOutcome",
    "RefundResult",
    "ManualRefundRequest",
    "TenantCredentials",
    "TenantPaymentSettingsUpdate",
    "TenantPaymentSettings",
    "PaymentConflictNotice",
    "NotificationCreate",
    "ExpiredBookingsResult",
]
