"""Tenant payment settings schemas."""
from pydantic import BaseModel, ConfigDict
from typing import Optional, Literal
from datetime import datetime


class TenantCredentials(BaseModel):
    """Decrypted payment provider credentials for one tenant."""

    access_token: str
    public_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    environment: Literal["sandbox", "production"] = "sandbox"

    model_config = ConfigDict(frozen=True)


class TenantPaymentSettingsUpdate(BaseModel):
    """Fields an operator can change. An empty string clears a secret."""

    is_active: Optional[bool] = None
    mercadopago_enabled: Optional[bool] = None
    mercadopago_environment: Optional[Literal["sandbox", "production"]] = None
    mercadopago_access_token: Optional[str] = None
    mercadopago_public_key: Optional[str] = None
    mercadopago_webhook_secret: Optional[str] = None


class TenantPaymentSettings(BaseModel):
    """Payment settings as exposed by the API. Secrets are never returned."""

    id: str
    name: str
    is_active: bool
    mercadopago_enabled: bool
    mercadopago_environment: Optional[str] = None
    has_access_token: bool
    has_public_key: bool
    has_webhook_secret: bool
    updated_at: Optional[datetime] = None
