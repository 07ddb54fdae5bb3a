"""Domain exceptions.

Services raise these; the webhook engine and the refund orchestrator turn them
into structured results and the API routers turn them into HTTP errors.
"""


# Credential resolution

class CredentialError(Exception):
    """Base class for tenant credential resolution failures."""

    def __init__(self, tenant_id: str, message: str):
        self.tenant_id = tenant_id
        super().__init__(message)


class TenantInactive(CredentialError):
    """The tenant exists but is deactivated."""


class ProviderDisabled(CredentialError):
    """The tenant has the payment provider explicitly turned off."""


class CredentialsMissing(CredentialError):
    """The tenant has no access token configured."""


class TenantNotFound(CredentialsMissing):
    """No tenant row exists for the id."""


class DecryptionFailed(CredentialError):
    """An encrypted secret could not be decrypted."""


class EncryptionError(Exception):
    """Raised by the low-level credential encryption helpers."""


class EncryptionKeyMissing(EncryptionError):
    """CREDENTIAL_ENCRYPTION_KEY is not configured or malformed."""


# Payment provider gateway

class GatewayError(Exception):
    """Base class for payment provider failures."""

    def __init__(self, message: str, external_id: str = None):
        self.external_id = external_id
        super().__init__(message)


class PaymentNotFound(GatewayError):
    """The provider does not know the payment id."""


class AlreadyRefunded(GatewayError):
    """The payment has no unrefunded balance left."""


class RefundWindowExpired(GatewayError):
    """The provider refund period elapsed since approval."""


class InsufficientBalance(GatewayError):
    """The collector account cannot cover the refund."""


class ProviderError(GatewayError):
    """Unclassified provider failure; the message is the provider's text."""


class ProviderUnavailable(GatewayError):
    """Timeout or connection failure; the call may be retried."""


# Reconciliation

class ReconciliationError(Exception):
    """Base class for failures that stop a webhook from being reconciled."""


class MalformedWebhook(ReconciliationError):
    """The envelope lacks a type or a data payload."""


class MissingBookingReference(ReconciliationError):
    """The payment carries no external reference to a booking."""


class BookingNotFound(ReconciliationError):
    """The referenced booking does not exist."""
