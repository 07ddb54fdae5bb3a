"""Per-tenant payment provider credentials.

Credentials live encrypted on the tenant row. The resolver decrypts them on
demand and keeps a short-lived copy per tenant so that webhook bursts do not
hit the database and the cipher on every call. Anything that changes a
tenant's payment settings must call ``invalidate``.
"""
import logging
import time
from typing import Callable, Optional

from sqlalchemy import select

from courtpay.core.cache import TTLCache
from courtpay.core.config import settings
from courtpay.core.database import AsyncSessionLocal
from courtpay.core.encryption import decrypt_credential, looks_encrypted
from courtpay.core.exceptions import (
    CredentialsMissing,
    DecryptionFailed,
    EncryptionError,
    ProviderDisabled,
    TenantInactive,
    TenantNotFound,
)
from courtpay.models.tenant import Tenant
from courtpay.schemas.tenant import TenantCredentials

logger = logging.getLogger(__name__)

ACCESS_TOKEN_PREFIXES = ("APP_USR-", "TEST-")


class CredentialResolver:
    """Resolves and caches decrypted Mercado Pago credentials per tenant."""

    def __init__(
        self,
        session_factory=AsyncSessionLocal,
        ttl_seconds: float = settings.CREDENTIAL_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        encryption_key: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.encryption_key = encryption_key
        self._cache: TTLCache[TenantCredentials] = TTLCache(ttl_seconds, clock=clock)

    async def resolve(self, tenant_id: str) -> TenantCredentials:
        """
        Return the decrypted credentials for a tenant.

        Args:
            tenant_id: Tenant ID

        Returns:
            Decrypted credentials

        Raises:
            TenantNotFound: No such tenant
            TenantInactive: Tenant is deactivated
            ProviderDisabled: Mercado Pago is turned off for the tenant
            CredentialsMissing: No access token configured
            DecryptionFailed: A secret looks encrypted but cannot be decrypted
        """
        self._cache.purge_expired()

        cached = self._cache.get(tenant_id)
        if cached is not None:
            return cached

        tenant = await self._load_tenant(tenant_id)

        if tenant is None:
            raise TenantNotFound(tenant_id, f"Tenant {tenant_id} not found")

        if not tenant.is_active:
            raise TenantInactive(
                tenant_id,
                f"Tenant {tenant_id} is inactive; its payment credentials cannot be used",
            )

        if not tenant.mercadopago_enabled:
            raise ProviderDisabled(
                tenant_id,
                f"Mercado Pago is not enabled for tenant {tenant_id}",
            )

        if not tenant.mercadopago_access_token:
            raise CredentialsMissing(
                tenant_id,
                f"Tenant {tenant_id} has no Mercado Pago access token configured",
            )

        access_token = self._decrypt_field(tenant_id, "access_token", tenant.mercadopago_access_token)
        public_key = self._decrypt_field(tenant_id, "public_key", tenant.mercadopago_public_key)
        webhook_secret = self._decrypt_field(tenant_id, "webhook_secret", tenant.mercadopago_webhook_secret)

        if not access_token.startswith(ACCESS_TOKEN_PREFIXES):
            logger.warning(
                f"Access token for tenant {tenant_id} does not have the expected APP_USR-/TEST- prefix"
            )

        credentials = TenantCredentials(
            access_token=access_token,
            public_key=public_key,
            webhook_secret=webhook_secret,
            environment=tenant.mercadopago_environment or "sandbox",
        )

        self._cache.set(tenant_id, credentials)
        logger.debug(f"Cached credentials for tenant {tenant_id}")

        return credentials

    async def get_webhook_secret(self, tenant_id: str) -> Optional[str]:
        """
        Return a tenant's decrypted webhook secret, whatever its payment status.

        Notifications for an inactive or disabled tenant still have to be
        authenticated with its secret.

        Raises:
            DecryptionFailed: The secret looks encrypted but cannot be decrypted
        """
        cached = self._cache.get(tenant_id)
        if cached is not None:
            return cached.webhook_secret

        tenant = await self._load_tenant(tenant_id)
        if tenant is None:
            return None
        return self._decrypt_field(tenant_id, "webhook_secret", tenant.mercadopago_webhook_secret)

    async def _load_tenant(self, tenant_id: str) -> Optional[Tenant]:
        async with self.session_factory() as db:
            result = await db.execute(select(Tenant).where(Tenant.id == tenant_id))
            return result.scalar_one_or_none()

    def _decrypt_field(self, tenant_id: str, field: str, value: Optional[str]) -> Optional[str]:
        """
        Decrypt one secret.

        Values without the iv:tag:ciphertext shape predate encryption and are
        returned unchanged. Values with that shape must decrypt; a missing key
        or a failed authentication is a hard error.
        """
        if not value:
            return None

        if not looks_encrypted(value):
            logger.warning(f"Tenant {tenant_id} {field} is stored unencrypted, using it as is")
            return value

        try:
            return decrypt_credential(value, self.encryption_key)
        except EncryptionError as e:
            logger.error(f"Failed to decrypt {field} for tenant {tenant_id}: {e}")
            raise DecryptionFailed(
                tenant_id,
                f"Could not decrypt {field} for tenant {tenant_id}: {e}",
            ) from e

    def invalidate(self, tenant_id: str) -> None:
        """Drop the cached credentials of one tenant."""
        self._cache.invalidate(tenant_id)

    def clear(self) -> None:
        self._cache.clear()


# Singleton instance
credential_resolver = CredentialResolver()
