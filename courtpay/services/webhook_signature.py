"""Mercado Pago webhook signature validation.

Mercado Pago signs notifications with HMAC-SHA256 over the manifest
``id:<data.id>;request-id:<x-request-id>;ts:<ts>;`` and sends
``x-signature: ts=<ts>,v1=<hex digest>``. The global secret is tried first,
then the webhook secret of the tenant owning the referenced booking.
Request ids of notifications that validated and were processed are remembered
for a few minutes so a captured notification cannot be replayed. A delivery
that failed and is retried keeps its request id usable.
"""
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple

from courtpay.core.cache import TTLCache
from courtpay.core.config import settings
from courtpay.core.exceptions import CredentialError

logger = logging.getLogger(__name__)

# Resolves (tenant_id, webhook_secret) for a booking id
TenantSecretLookup = Callable[[str], Awaitable[Tuple[Optional[str], Optional[str]]]]


@dataclass
class SignatureCheck:
    valid: bool
    error: Optional[str] = None
    tenant_id: Optional[str] = None
    skipped: bool = False
    request_id: Optional[str] = None  # set when a signature was verified


def parse_signature_header(header: str) -> Dict[str, str]:
    """Split ``ts=...,v1=...`` into a dict."""
    parts = {}
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def build_manifest(data_id: str, request_id: str, ts: str) -> str:
    # Mercado Pago lowercases alphanumeric payment ids in the manifest
    return f"id:{data_id.lower()};request-id:{request_id};ts:{ts};"


def compute_signature(secret: str, data_id: str, request_id: str, ts: str) -> str:
    manifest = build_manifest(data_id, request_id, ts)
    return hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()


def signature_matches(secret: str, header: str, data_id: str, request_id: str) -> bool:
    parts = parse_signature_header(header)
    ts = parts.get("ts")
    received = parts.get("v1")
    if not ts or not received:
        return False

    expected = compute_signature(secret, data_id, request_id, ts)
    return hmac.compare_digest(expected, received)


class WebhookSignatureValidator:
    """Validates signatures and rejects replays."""

    def __init__(
        self,
        global_secret: Optional[str] = settings.MERCADOPAGO_WEBHOOK_SECRET,
        replay_ttl_seconds: float = settings.WEBHOOK_REPLAY_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 1000,
    ):
        self.global_secret = global_secret
        self.max_entries = max_entries
        self._seen: TTLCache[bool] = TTLCache(replay_ttl_seconds, clock=clock)

    async def validate(
        self,
        signature: Optional[str],
        request_id: Optional[str],
        data_id: Optional[str],
        booking_id: Optional[str] = None,
        tenant_secret_lookup: Optional[TenantSecretLookup] = None,
    ) -> SignatureCheck:
        """
        Check a notification's signature headers.

        Validation is skipped only when neither a global secret nor a secret
        of the booking's tenant is configured. With a secret configured,
        missing headers are a failure. A request id is not marked as seen
        here; call ``remember`` once the notification has been processed.

        Args:
            signature: ``x-signature`` header
            request_id: ``x-request-id`` header
            data_id: Payment id from the body
            booking_id: External reference from the body, used to find the tenant secret
            tenant_secret_lookup: Async callable returning (tenant_id, secret) for a booking

        Returns:
            Validation outcome
        """
        has_headers = bool(signature and request_id and data_id)

        if has_headers and request_id in self._seen:
            logger.warning(f"Webhook with request id {request_id} was already processed recently")
            return SignatureCheck(valid=False, error="Webhook already processed recently")

        if has_headers and self.global_secret:
            if signature_matches(self.global_secret, signature, data_id, request_id):
                return SignatureCheck(valid=True, request_id=request_id)

        tenant_id, tenant_secret, lookup_failed = await self._tenant_secret(booking_id, tenant_secret_lookup)

        if not (self.global_secret or tenant_secret or lookup_failed):
            logger.warning("No webhook secret configured, skipping signature validation")
            return SignatureCheck(valid=True, skipped=True, tenant_id=tenant_id)

        if not has_headers:
            logger.warning(f"Signature headers missing on payment webhook (booking {booking_id})")
            return SignatureCheck(valid=False, error="Missing signature headers", tenant_id=tenant_id)

        if tenant_secret and signature_matches(tenant_secret, signature, data_id, request_id):
            logger.info(f"Webhook validated with the secret of tenant {tenant_id}")
            return SignatureCheck(valid=True, tenant_id=tenant_id, request_id=request_id)

        return SignatureCheck(valid=False, error="Invalid signature", tenant_id=tenant_id)

    @staticmethod
    async def _tenant_secret(
        booking_id: Optional[str],
        lookup: Optional[TenantSecretLookup],
    ) -> Tuple[Optional[str], Optional[str], bool]:
        """Return (tenant_id, secret, lookup_failed) for the booking's tenant."""
        if not booking_id or lookup is None:
            return None, None, False

        try:
            tenant_id, secret = await lookup(booking_id)
        except CredentialError as e:
            # A secret that exists but cannot be read still counts as configured
            logger.error(f"Could not load tenant webhook secret for booking {booking_id}: {e}")
            return e.tenant_id, None, True

        return tenant_id, secret, False

    def remember(self, request_id: str) -> None:
        """Reject further deliveries of request_id for the replay window."""
        self._seen.set(request_id, True)
        if len(self._seen) > self.max_entries:
            self._seen.purge_expired()

    def reset(self) -> None:
        self._seen.clear()


# Singleton instance
webhook_signature_validator = WebhookSignatureValidator()
