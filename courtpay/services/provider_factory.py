"""Selects the payment gateway a tenant's calls must go through."""
import logging
import time
from typing import Callable, Optional

from courtpay.core.cache import TTLCache
from courtpay.core.config import settings
from courtpay.core.exceptions import (
    CredentialsMissing,
    ProviderDisabled,
    TenantInactive,
)
from courtpay.services.credential_resolver import CredentialResolver, credential_resolver
from courtpay.services.payment_gateway import (
    DisabledPaymentGateway,
    MercadoPagoGateway,
    MockPaymentGateway,
    PaymentGateway,
)

logger = logging.getLogger(__name__)


class PaymentProviderFactory:
    """
    Hands out payment gateways per tenant.

    - Tenant credentials resolve: a MercadoPagoGateway bound to them, cached.
    - Tenant inactive or provider disabled: a DisabledPaymentGateway whose
      calls all fail. Such a tenant must never transact with someone else's
      credentials, and its refunds must not look settled.
    - Tenant unknown or without credentials: the shared global gateway built
      from settings, or the stand-in when no global token is configured.
    - Decryption failures propagate; they are not a reason to switch accounts.
    - Entries expire with the credential cache TTL, so changes made by
      another process are picked up.
    """

    def __init__(
        self,
        resolver: CredentialResolver = credential_resolver,
        global_access_token: Optional[str] = settings.MERCADOPAGO_ACCESS_TOKEN,
        global_environment: str = settings.MERCADOPAGO_ENVIRONMENT,
        provider_name: str = settings.PAYMENT_PROVIDER,
        gateway_class: Callable[..., PaymentGateway] = MercadoPagoGateway,
        ttl_seconds: Optional[float] = settings.CREDENTIAL_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.resolver = resolver
        self.global_access_token = global_access_token
        self.global_environment = global_environment
        self.provider_name = provider_name
        self.gateway_class = gateway_class
        self._tenant_providers: TTLCache[PaymentGateway] = TTLCache(ttl_seconds, clock=clock)
        self._global_provider: Optional[PaymentGateway] = None

    async def get_provider(self, tenant_id: Optional[str] = None) -> PaymentGateway:
        """
        Return the gateway for a tenant, or the global one when no tenant is given.

        Args:
            tenant_id: Tenant ID

        Returns:
            Payment gateway
        """
        if not tenant_id:
            return self.get_global_provider()

        cached = self._tenant_providers.get(tenant_id)
        if cached is not None:
            return cached

        try:
            credentials = await self.resolver.resolve(tenant_id)
            provider = self.gateway_class(
                access_token=credentials.access_token,
                environment=credentials.environment,
            )
            logger.info(f"Using tenant credentials for tenant {tenant_id} ({credentials.environment})")
        except (TenantInactive, ProviderDisabled) as e:
            logger.warning(f"Payments blocked for tenant {tenant_id}: {e}")
            provider = DisabledPaymentGateway(tenant_id, reason=str(e))
        except CredentialsMissing as e:
            logger.warning(f"No credentials for tenant {tenant_id}, using global provider: {e}")
            provider = self.get_global_provider()

        self._tenant_providers.set(tenant_id, provider)
        return provider

    def get_global_provider(self) -> PaymentGateway:
        """Return the process-wide gateway built from settings."""
        if self._global_provider is not None:
            return self._global_provider

        use_real = self.global_access_token and self.provider_name in ("mercadopago", "")
        if use_real:
            self._global_provider = self.gateway_class(
                access_token=self.global_access_token,
                environment=self.global_environment,
            )
            logger.info(f"Global payment provider: Mercado Pago ({self.global_environment})")
        else:
            self._global_provider = MockPaymentGateway()
            logger.info("Global payment provider: stand-in (no Mercado Pago token configured)")

        return self._global_provider

    def set_tenant_provider(self, tenant_id: str, provider: PaymentGateway) -> None:
        """Pin a gateway for a tenant."""
        self._tenant_providers.set(tenant_id, provider)

    def invalidate(self, tenant_id: str) -> None:
        """Drop both the cached gateway and the cached credentials of a tenant."""
        self._tenant_providers.invalidate(tenant_id)
        self.resolver.invalidate(tenant_id)
        logger.info(f"Invalidated payment provider cache for tenant {tenant_id}")

    def reset(self) -> None:
        self._tenant_providers.clear()
        self._global_provider = None
        self.resolver.clear()


# Singleton instance
provider_factory = PaymentProviderFactory()
