"""
Stripe access: payment intents over REST, webhook events via the SDK.

The secret key is used directly as a bearer credential; there is no token
exchange. Webhook signatures are checked with the `stripe` library so clock
skew tolerance follows the SDK default (300 seconds).
"""

import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import httpx
import stripe

from .core.errors import InputInvalid, UpstreamFailure

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com/v1"
DEFAULT_TOLERANCE_SECONDS = 300


def to_minor_units(amount: Decimal) -> int:
    """Dollars -> cents, half-up."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


async def create_payment_intent(
    http: httpx.AsyncClient,
    secret_key: str,
    amount_minor: int,
    currency: str,
    metadata: Optional[dict[str, str]] = None,
) -> dict[str, str]:
    """
    Create a payment intent with automatic payment methods.

    Returns:
        {"clientSecret": ..., "paymentIntentId": ...}
    """
    form = {
        "amount": str(amount_minor),
        "currency": currency[:3].lower(),
        "automatic_payment_methods[enabled]": "true",
    }
    for key, value in (metadata or {}).items():
        if value:
            form[f"metadata[{key}]"] = value

    try:
        response = await http.post(
            f"{STRIPE_API_BASE}/payment_intents",
            data=form,
            headers={"Authorization": f"Bearer {secret_key}"},
        )
    except httpx.HTTPError as e:
        logger.error(f"Stripe payment intent request failed: {e}")
        raise UpstreamFailure("Failed to create payment") from e

    if response.is_error:
        logger.error(f"Stripe payment intent failed: {response.status_code} {response.text}")
        raise UpstreamFailure("Failed to create payment")

    intent = response.json()
    client_secret = intent.get("client_secret")
    if not client_secret:
        raise UpstreamFailure("No client secret from Stripe")
    return {"clientSecret": client_secret, "paymentIntentId": intent.get("id")}


def verify_webhook_event(
    payload: bytes,
    signature: str,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> dict:
    """
    Check the `stripe-signature` header and return the decoded event.

    Raises:
        InputInvalid: bad signature, stale timestamp or non-JSON body.
    """
    body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    try:
        stripe.WebhookSignature.verify_header(body, signature, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Stripe webhook signature rejected: {e}")
        raise InputInvalid("Invalid signature") from e

    try:
        event = json.loads(body)
    except ValueError as e:
        raise InputInvalid("Invalid payload") from e
    if not isinstance(event, dict):
        raise InputInvalid("Invalid payload")
    return event
