"""Operator notifications.

Best effort: a notification that cannot be stored or delivered is logged and
dropped, it never fails the reconciliation that produced it.
"""
import logging
from typing import Optional

import httpx

from courtpay.core.config import settings
from courtpay.core.database import AsyncSessionLocal
from courtpay.models.admin_notification import AdminNotification
from courtpay.models.enums import NotificationSeverity
from courtpay.schemas.notification import AdditionalPaymentNotice, NotificationCreate, PaymentConflictNotice

logger = logging.getLogger(__name__)

PAYMENT_CONFLICT = "PAYMENT_CONFLICT"
ADDITIONAL_PAYMENT = "ADDITIONAL_PAYMENT"

LOG_LEVELS = {
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

SEVERITY_EMOJI = {
    "info": ":information_source:",
    "warning": ":warning:",
    "error": ":x:",
    "critical": ":rotating_light:",
}


class NotificationDispatcher:
    """Stores operator notifications and relays them to Slack when configured."""

    def __init__(
        self,
        session_factory=AsyncSessionLocal,
        slack_webhook_url: Optional[str] = settings.SLACK_WEBHOOK_URL,
        timeout: float = settings.PROVIDER_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session_factory = session_factory
        self.slack_webhook_url = slack_webhook_url
        self.timeout = timeout
        self._transport = transport

    async def notify_payment_conflict(self, notice: PaymentConflictNotice) -> bool:
        """
        Tell operators that a late payment hit an occupied slot.

        Severity is critical when the compensating refund failed, since money
        is then held without a slot until someone acts.

        Args:
            notice: Conflict details

        Returns:
            True if the notification was stored
        """
        severity = (
            NotificationSeverity.CRITICAL if notice.refund_status == "failed" else NotificationSeverity.ERROR
        )

        if notice.refund_status == "success":
            refund_text = "The payment was refunded automatically."
        elif notice.refund_status == "pending":
            refund_text = "A refund was issued and is waiting for the provider to settle it."
        else:
            refund_text = f"The automatic refund FAILED: {notice.refund_error or 'unknown error'}. Manual refund required."

        message = (
            f"Payment {notice.payment_id} was approved for booking {notice.booking_id} "
            f"after its slot was taken"
        )
        if notice.conflicting_booking_id:
            message += f" by booking {notice.conflicting_booking_id}"
        message += f". {refund_text}"

        return await self.dispatch(
            NotificationCreate(
                type=PAYMENT_CONFLICT,
                severity=severity.value,
                title="Late payment on an occupied slot",
                message=message,
                tenant_id=notice.tenant_id,
                details=notice.model_dump(),
            )
        )

    async def notify_additional_payment(self, notice: AdditionalPaymentNotice) -> bool:
        """Tell operators that a confirmed booking was paid again, possibly a double charge."""
        amount_text = f" of {notice.amount}" if notice.amount is not None else ""

        return await self.dispatch(
            NotificationCreate(
                type=ADDITIONAL_PAYMENT,
                severity=NotificationSeverity.WARNING.value,
                title="Additional payment on a confirmed booking",
                message=(
                    f"Payment {notice.payment_id}{amount_text} was approved for booking {notice.booking_id}, "
                    f"which was already confirmed. Check whether the customer was charged twice."
                ),
                tenant_id=notice.tenant_id,
                details=notice.model_dump(mode="json"),
            )
        )

    async def dispatch(self, notification: NotificationCreate) -> bool:
        """Store a notification and relay it. Never raises."""
        logger.log(LOG_LEVELS[notification.severity], f"[{notification.type}] {notification.message}")

        stored = await self._store(notification)
        if self.slack_webhook_url:
            await self._send_slack(notification)
        return stored

    async def _store(self, notification: NotificationCreate) -> bool:
        try:
            async with self.session_factory() as db:
                db.add(AdminNotification(**notification.model_dump()))
                await db.commit()
            return True
        except Exception as e:
            logger.error(f"Failed to store {notification.type} notification: {e}", exc_info=True)
            return False

    async def _send_slack(self, notification: NotificationCreate) -> bool:
        payload = {
            "text": (
                f"{SEVERITY_EMOJI.get(notification.severity, '')} *{notification.title}* "
                f"({notification.severity})\n{notification.message}"
            )
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.slack_webhook_url, json=payload)
                response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error(f"Failed to send {notification.type} notification to Slack: {e}")
            return False


# Singleton instance
notification_dispatcher = NotificationDispatcher()
