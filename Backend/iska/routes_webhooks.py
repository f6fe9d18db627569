"""
Payment-provider webhooks that provision tenants.

STRIPE:
    checkout.session.completed  plan from metadata.plan_type, else inferred
                                from amount_total (cents)
    payment_intent.succeeded    only for platform plan intents
                                (metadata.plan = starter|lifetime)

PAYPAL:
    PAYMENT.CAPTURE.COMPLETED   plan inferred from resource.amount.value,
                                payer email stored lowercased for claiming

Any other event type is acknowledged with {"received": true}. Redelivery of
an event returns the tenant created the first time.
"""

import json
import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import Settings, get_settings
from .core.db import get_session
from .core.errors import InputInvalid, NotConfigured
from .core.http import get_http_client
from .credentials import PAYPAL_KEYS, resolve_credentials
from .paypal_client import PayPalClient
from .plans import infer_plan_from_amount, infer_plan_from_minor_units, normalize_plan
from .provisioning import PAYPAL_LEDGER, STRIPE_LEDGER, ProvisioningRequest, provision_tenant
from .schemas import PayPalWebhookEvent
from .stripe_client import verify_webhook_event

logger = logging.getLogger(__name__)

router = APIRouter()

PAYPAL_CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"


def _clean_email(value) -> Optional[str]:
    email = (value or "").strip().lower() if isinstance(value, str) else ""
    return email or None


def stripe_provisioning_request(event: dict) -> Optional[ProvisioningRequest]:
    """Map a verified Stripe event to a provisioning request, or None to ignore it."""
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    if event_type == "checkout.session.completed":
        session_id = obj.get("id")
        if not session_id:
            return None
        plan = normalize_plan(metadata.get("plan_type")) or infer_plan_from_minor_units(obj.get("amount_total"))
        email = obj.get("customer_email") or (obj.get("customer_details") or {}).get("email")
        return ProvisioningRequest(
            idempotency_key=session_id,
            customer_email=_clean_email(email),
            plan=plan,
            stripe_customer_id=obj.get("customer"),
            stripe_subscription_id=obj.get("subscription"),
        )

    if event_type == "payment_intent.succeeded":
        plan = normalize_plan(metadata.get("plan"))
        if not plan or not obj.get("id"):
            # Booking payments also raise this event; they do not create tenants.
            return None
        return ProvisioningRequest(
            idempotency_key=obj["id"],
            customer_email=_clean_email(metadata.get("customer_email")),
            plan=plan,
            stripe_customer_id=obj.get("customer"),
        )

    return None


@router.post("/stripe-webhook")
async def stripe_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    if not settings.stripe_webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET not set")
        raise NotConfigured("Webhook not configured")

    signature = request.headers.get("stripe-signature")
    if not signature:
        raise InputInvalid("Missing stripe-signature")

    payload = await request.body()
    event = verify_webhook_event(payload, signature, settings.stripe_webhook_secret)

    provisioning = stripe_provisioning_request(event)
    if provisioning is None:
        logger.debug(f"Stripe event {event.get('type')} ignored")
        return {"received": True}

    tenant_id = await provision_tenant(session, STRIPE_LEDGER, provisioning)
    return {"received": True, "tenant_id": str(tenant_id)}


def paypal_provisioning_request(event: PayPalWebhookEvent) -> ProvisioningRequest:
    resource = event.resource or {}
    capture_id = resource.get("id")
    if not capture_id:
        raise InputInvalid("Missing resource.id")
    amount = (resource.get("amount") or {}).get("value")
    payer = resource.get("payer") or {}
    return ProvisioningRequest(
        idempotency_key=str(capture_id),
        customer_email=_clean_email(payer.get("email_address")),
        plan=infer_plan_from_amount(amount),
    )


@router.post("/paypal-webhook")
async def paypal_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    raw = await request.body()
    try:
        data = json.loads(raw)
        event = PayPalWebhookEvent.model_validate(data)
    except (ValueError, ValidationError) as e:
        raise InputInvalid("Invalid JSON") from e

    if event.event_type != PAYPAL_CAPTURE_COMPLETED:
        return {"received": True}

    if settings.paypal_webhook_id:
        creds = await resolve_credentials(session, settings, None, PAYPAL_KEYS)
        client = PayPalClient(
            http, creds["paypal_client_id"], creds["paypal_client_secret"], settings.paypal_api_base
        )
        verified = await client.verify_webhook_signature(request.headers, data, settings.paypal_webhook_id)
        if not verified:
            logger.warning(f"PayPal webhook {event.id} failed signature verification")
            raise InputInvalid("Invalid signature")

    provisioning = paypal_provisioning_request(event)
    tenant_id = await provision_tenant(session, PAYPAL_LEDGER, provisioning)
    return {"received": True, "tenant_id": str(tenant_id)}
