"""Service dependencies for the API routers, overridable in tests."""
from courtpay.services.booking_store import BookingStore, booking_store
from courtpay.services.credential_resolver import CredentialResolver, credential_resolver
from courtpay.services.expiry_service import ExpiredBookingsService, expired_bookings_service
from courtpay.services.provider_factory import PaymentProviderFactory, provider_factory
from courtpay.services.refund_orchestrator import RefundOrchestrator, refund_orchestrator
from courtpay.services.webhook_engine import WebhookEngine, webhook_engine
from courtpay.services.webhook_signature import WebhookSignatureValidator, webhook_signature_validator


def get_webhook_engine() -> WebhookEngine:
    return webhook_engine


def get_signature_validator() -> WebhookSignatureValidator:
    return webhook_signature_validator


def get_booking_store() -> BookingStore:
    return booking_store


def get_credential_resolver() -> CredentialResolver:
    return credential_resolver


def get_provider_factory() -> PaymentProviderFactory:
    return provider_factory


def get_refund_orchestrator() -> RefundOrchestrator:
    return refund_orchestrator


def get_expiry_service() -> ExpiredBookingsService:
    return expired_bookings_service
