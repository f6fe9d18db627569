"""
PayPal REST client (Orders v2).

Every operation performs its own OAuth2 client-credentials exchange; tokens
are not cached between calls. Provider error bodies are logged, never
returned to the caller.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping
from urllib.parse import quote

import httpx

from .core.errors import UpstreamFailure

logger = logging.getLogger(__name__)

CAPTURE_COMPLETED = "COMPLETED"

# Transmission headers PayPal signs webhook deliveries with.
WEBHOOK_SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


@dataclass
class CaptureResult:
    status: str
    details: dict

    @property
    def completed(self) -> bool:
        return self.status == CAPTURE_COMPLETED


def format_amount(amount: Decimal) -> str:
    return str(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class PayPalClient:
    def __init__(self, http: httpx.AsyncClient, client_id: str, client_secret: str, api_base: str):
        self.http = http
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_base = api_base.rstrip("/")

    async def get_access_token(self) -> str:
        try:
            response = await self.http.post(
                f"{self.api_base}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self.client_id, self.client_secret),
            )
        except httpx.HTTPError as e:
            logger.error(f"PayPal auth request failed: {e}")
            raise UpstreamFailure("PayPal auth failed") from e

        if response.is_error:
            logger.error(f"PayPal auth failed: {response.status_code} {response.text}")
            raise UpstreamFailure("PayPal auth failed")

        token = response.json().get("access_token")
        if not token:
            raise UpstreamFailure("PayPal auth failed")
        return token

    async def _post(self, path: str, token: str, payload: Mapping[str, Any]) -> httpx.Response:
        return await self.http.post(
            f"{self.api_base}{path}",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )

    async def create_order(self, amount: Decimal, currency: str) -> str:
        """Create a CAPTURE-intent order and return its id."""
        token = await self.get_access_token()
        payload = {
            "intent": "CAPTURE",
            "application_context": {"shipping_preference": "NO_SHIPPING"},
            "purchase_units": [
                {"amount": {"currency_code": currency, "value": format_amount(amount)}},
            ],
        }
        try:
            response = await self._post("/v2/checkout/orders", token, payload)
        except httpx.HTTPError as e:
            logger.error(f"PayPal create order request failed: {e}")
            raise UpstreamFailure("Failed to create PayPal order") from e

        if response.is_error:
            logger.error(f"PayPal create order failed: {response.status_code} {response.text}")
            raise UpstreamFailure("Failed to create PayPal order")

        order_id = response.json().get("id")
        if not order_id:
            raise UpstreamFailure("No order ID from PayPal")
        return order_id

    async def capture_order(self, order_id: str) -> CaptureResult:
        token = await self.get_access_token()
        try:
            response = await self._post(
                f"/v2/checkout/orders/{quote(order_id, safe='')}/capture", token, {}
            )
        except httpx.HTTPError as e:
            logger.error(f"PayPal capture request failed: {e}")
            raise UpstreamFailure("Failed to capture PayPal order") from e

        if response.is_error:
            logger.error(f"PayPal capture failed: {response.status_code} {response.text}")
            raise UpstreamFailure("Failed to capture PayPal order")

        details = response.json()
        return CaptureResult(status=str(details.get("status", "")), details=details)

    async def verify_webhook_signature(
        self,
        headers: Mapping[str, str],
        event: dict,
        webhook_id: str,
    ) -> bool:
        """Ask PayPal whether a webhook delivery carries a valid signature."""
        payload: dict[str, Any] = {
            field: headers.get(header, "") for field, header in WEBHOOK_SIGNATURE_HEADERS.items()
        }
        if not all(payload.values()):
            logger.warning("PayPal webhook is missing transmission headers")
            return False
        payload["webhook_id"] = webhook_id
        payload["webhook_event"] = event

        token = await self.get_access_token()
        try:
            response = await self._post("/v1/notifications/verify-webhook-signature", token, payload)
        except httpx.HTTPError as e:
            logger.error(f"PayPal signature verification request failed: {e}")
            raise UpstreamFailure("Could not verify PayPal webhook") from e

        if response.is_error:
            logger.error(
                f"PayPal signature verification failed: {response.status_code} {response.text}"
            )
            raise UpstreamFailure("Could not verify PayPal webhook")
        return response.json().get("verification_status") == "SUCCESS"
