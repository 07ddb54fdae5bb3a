"""Payment webhook endpoints."""
import logging
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request

from courtpay.api.deps import (
    get_booking_store,
    get_credential_resolver,
    get_signature_validator,
    get_webhook_engine,
)
from courtpay.services.booking_store import BookingStore
from courtpay.services.credential_resolver import CredentialResolver
from courtpay.services.webhook_engine import WebhookEngine
from courtpay.services.webhook_signature import WebhookSignatureValidator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def tenant_secret_lookup(store: BookingStore, resolver: CredentialResolver):
    """Build the lookup the signature validator uses to find a tenant's webhook secret."""

    async def lookup(booking_id: str) -> Tuple[Optional[str], Optional[str]]:
        tenant_id = await store.get_tenant_id(booking_id)
        if tenant_id is None:
            return None, None
        return tenant_id, await resolver.get_webhook_secret(tenant_id)

    return lookup


@router.post("/payments")
async def receive_payment_webhook(
    request: Request,
    engine: WebhookEngine = Depends(get_webhook_engine),
    validator: WebhookSignatureValidator = Depends(get_signature_validator),
    store: BookingStore = Depends(get_booking_store),
    resolver: CredentialResolver = Depends(get_credential_resolver),
):
    """
    Receive a payment notification from Mercado Pago.

    The signature is required whenever a global or tenant secret is
    configured. The request id is only marked as seen once the notification
    was processed, so a delivery answered with 503 can be retried.

    The response status tells the provider whether to retry: 2xx means
    handled, 503 means try again later, 400 and 401 mean the notification
    will never be accepted as sent.

    Returns:
        Reconciliation outcome
    """
    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid webhook format")

    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook format")

    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    data_id = data.get("id")
    booking_id = data.get("external_reference")

    check = await validator.validate(
        signature=request.headers.get("x-signature"),
        request_id=request.headers.get("x-request-id"),
        data_id=str(data_id) if data_id is not None else None,
        booking_id=str(booking_id) if booking_id else None,
        tenant_secret_lookup=tenant_secret_lookup(store, resolver),
    )
    if not check.valid:
        raise HTTPException(status_code=401, detail=check.error or "Invalid signature")

    result = await engine.handle(body)

    if not result.processed:
        raise HTTPException(
            status_code=503 if result.retryable else 400,
            detail=result.error or "Error processing webhook",
        )

    if check.request_id:
        validator.remember(check.request_id)

    return {
        "success": True,
        "processed": result.processed,
        "booking_updated": result.booking_updated,
        "booking_id": result.booking_id,
        "message": result.error or "Webhook processed successfully",
    }


@router.get("/payments")
async def payment_webhook_status():
    """Liveness of the webhook endpoint."""
    return {
        "message": "Webhook endpoint active",
        "provider": "mercadopago",
    }
