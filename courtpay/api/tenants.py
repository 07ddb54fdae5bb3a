"""Tenant payment settings endpoints."""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from courtpay.api.deps import get_provider_factory
from courtpay.core.database import get_db
from courtpay.core.encryption import encrypt_credential
from courtpay.core.exceptions import EncryptionError
from courtpay.models.tenant import Tenant
from courtpay.schemas.tenant import TenantPaymentSettings, TenantPaymentSettingsUpdate
from courtpay.services.provider_factory import PaymentProviderFactory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenants/{tenant_id}/payment-settings", tags=["tenants"])

SECRET_FIELDS = (
    "mercadopago_access_token",
    "mercadopago_public_key",
    "mercadopago_webhook_secret",
)


def to_payment_settings(tenant: Tenant) -> TenantPaymentSettings:
    return TenantPaymentSettings(
        id=tenant.id,
        name=tenant.name,
        is_active=tenant.is_active,
        mercadopago_enabled=tenant.mercadopago_enabled,
        mercadopago_environment=tenant.mercadopago_environment,
        has_access_token=bool(tenant.mercadopago_access_token),
        has_public_key=bool(tenant.mercadopago_public_key),
        has_webhook_secret=bool(tenant.mercadopago_webhook_secret),
        updated_at=tenant.updated_at,
    )


async def _get_tenant(db: AsyncSession, tenant_id: str) -> Tenant:
    result = await db.execute(select(Tenant).where(Tenant.id == tenant_id))
    tenant = result.scalar_one_or_none()

    if not tenant:
        raise HTTPException(status_code=404, detail="Tenant not found")

    return tenant


@router.get("", response_model=TenantPaymentSettings)
async def get_payment_settings(
    tenant_id: str,
    db: AsyncSession = Depends(get_db),
):
    """
    Get a tenant's payment settings. Secrets are reported as present or absent only.

    Args:
        tenant_id: Tenant ID
        db: Database session

    Returns:
        Payment settings
    """
    tenant = await _get_tenant(db, tenant_id)
    return to_payment_settings(tenant)


@router.patch("", response_model=TenantPaymentSettings)
async def update_payment_settings(
    tenant_id: str,
    update: TenantPaymentSettingsUpdate,
    db: AsyncSession = Depends(get_db),
    providers: PaymentProviderFactory = Depends(get_provider_factory),
):
    """
    Update a tenant's payment settings.

    Secrets are encrypted before they are stored; an empty string removes a
    secret. Cached credentials and providers of the tenant are dropped once
    the change is committed.

    Args:
        tenant_id: Tenant ID
        update: Fields to change
        db: Database session

    Returns:
        Updated payment settings
    """
    tenant = await _get_tenant(db, tenant_id)

    update_data = update.model_dump(exclude_unset=True)
    for field, value in update_data.items():
        if field in SECRET_FIELDS and value:
            try:
                value = encrypt_credential(value)
            except EncryptionError as e:
                logger.error(f"Cannot store {field} for tenant {tenant_id}: {e}")
                raise HTTPException(status_code=500, detail=f"Credential encryption failed: {e}")
        elif field in SECRET_FIELDS:
            value = None

        setattr(tenant, field, value)

    await db.commit()
    await db.refresh(tenant)

    providers.invalidate(tenant_id)
    logger.info(f"Updated payment settings for tenant {tenant_id}: {', '.join(sorted(update_data)) or 'no changes'}")

    return to_payment_settings(tenant)
