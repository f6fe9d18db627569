"""
Payment endpoints called by the booking and pricing pages.

Provider credentials come from the tenant's site_settings when the request
names a tenant that has a full set, otherwise from the platform defaults.
Platform plan purchases (`plan=starter|lifetime`) always use the platform
Stripe key at the fixed plan price.
"""

import logging

import httpx
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import Settings, get_settings
from .core.db import get_session
from .core.errors import InputInvalid
from .core.http import get_http_client
from .credentials import MPESA_KEYS, PAYPAL_KEYS, STRIPE_KEYS, resolve_credentials
from .mpesa_client import MpesaClient
from .paypal_client import PayPalClient
from .plans import PLAN_CURRENCY, PLAN_PRICES, normalize_plan
from .schemas import (
    CapturePaypalOrderRequest,
    CreatePaypalOrderRequest,
    CreateStripePaymentIntentRequest,
    MpesaStkPushRequest,
    MpesaStkQueryRequest,
)
from .stripe_client import create_payment_intent, to_minor_units

logger = logging.getLogger(__name__)

router = APIRouter()


async def _paypal_client(session, settings: Settings, http, tenant_id) -> PayPalClient:
    creds = await resolve_credentials(session, settings, tenant_id, PAYPAL_KEYS)
    return PayPalClient(http, creds["paypal_client_id"], creds["paypal_client_secret"], settings.paypal_api_base)


async def _mpesa_client(session, settings: Settings, http, tenant_id) -> MpesaClient:
    creds = await resolve_credentials(session, settings, tenant_id, MPESA_KEYS)
    return MpesaClient.from_credentials(http, creds, settings.mpesa_api_base)


# === PayPal ===

@router.post("/create-paypal-order")
async def create_paypal_order(
    body: CreatePaypalOrderRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    client = await _paypal_client(session, settings, http, body.tenant_id)
    order_id = await client.create_order(body.amount, body.currency.upper())
    logger.info(f"PayPal order {order_id} created (tenant={body.tenant_id})")
    return {"orderID": order_id}


@router.post("/capture-paypal-order")
async def capture_paypal_order(
    body: CapturePaypalOrderRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    client = await _paypal_client(session, settings, http, body.tenant_id)
    capture = await client.capture_order(body.order_id)

    logger.info(f"PayPal order {body.order_id} capture status {capture.status}")
    return {"success": capture.completed, "orderID": body.order_id, "details": capture.details}


# === Stripe ===

@router.post("/create-stripe-payment-intent")
async def create_stripe_payment_intent(
    body: CreateStripePaymentIntentRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    plan = normalize_plan(body.plan)
    if plan:
        # Platform subscription: fixed price, platform account.
        amount = PLAN_PRICES[plan]
        currency = PLAN_CURRENCY
        tenant_id = None
        metadata = {"plan": plan, "customer_email": (body.customer_email or "").strip().lower()}
    else:
        if body.amount is None or body.amount <= 0:
            raise InputInvalid("Invalid amount")
        amount = body.amount
        currency = body.currency
        tenant_id = body.tenant_id
        metadata = {"tenant_id": tenant_id or ""}

    creds = await resolve_credentials(session, settings, tenant_id, STRIPE_KEYS)
    result = await create_payment_intent(
        http,
        creds["stripe_secret_key"],
        to_minor_units(amount),
        currency,
        metadata,
    )
    logger.info(f"Stripe payment intent {result['paymentIntentId']} created (plan={plan}, tenant={tenant_id})")
    return result


# === M-Pesa ===

@router.post("/mpesa-stk-push")
async def mpesa_stk_push(
    body: MpesaStkPushRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    client = await _mpesa_client(session, settings, http, body.tenant_id)
    result = await client.stk_push(body.phone, body.amount, settings.mpesa_callback_url)

    logger.info(f"M-Pesa STK push sent for tenant {body.tenant_id}: {result.checkout_request_id}")
    return {
        "success": True,
        "checkoutRequestID": result.checkout_request_id,
        "message": "Check your phone to enter M-Pesa PIN",
    }


@router.post("/mpesa-stk-query")
async def mpesa_stk_query(
    body: MpesaStkQueryRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    client = await _mpesa_client(session, settings, http, body.tenant_id)
    result = await client.stk_query(body.checkout_request_id)

    return {"paid": result.paid, "resultCode": result.result_code, "resultDesc": result.result_desc}
