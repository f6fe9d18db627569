"""
M-Pesa Daraja client: STK Push and STK Push Query.

Both calls authenticate with an OAuth2 client-credentials token and sign the
request with password = base64(shortcode + passkey + timestamp), where the
timestamp is YYYYMMDDHHMMSS and is recomputed for every request.
"""

import base64
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

import httpx

from .core.errors import InputInvalid, UpstreamFailure

logger = logging.getLogger(__name__)

KENYA_COUNTRY_CODE = "254"
MIN_PHONE_DIGITS = 9

# Daraja result codes seen on STK query/callback.
RESULT_DESCRIPTIONS = {
    0: "Payment successful",
    1: "Insufficient M-Pesa balance",
    1001: "Another M-Pesa transaction is already in progress for this number",
    1019: "Transaction expired before it was completed",
    1025: "Unable to send the payment prompt, please try again",
    1032: "Payment request cancelled by user",
    1037: "Phone could not be reached to confirm payment",
    2001: "Wrong M-Pesa PIN entered",
    4999: "Payment is still being processed",
}


@dataclass
class StkPushResult:
    checkout_request_id: Optional[str]
    merchant_request_id: Optional[str] = None


@dataclass
class StkQueryResult:
    paid: bool
    result_code: Optional[int]
    result_desc: str


def normalize_msisdn(phone: str) -> str:
    """
    Normalize a Kenyan phone number to 2547XXXXXXXX form.

    Examples:
        "0712 345 678"  -> "254712345678"
        "+254712345678" -> "254712345678"
        "712345678"     -> "254712345678"
    """
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) < MIN_PHONE_DIGITS:
        raise InputInvalid("Invalid phone number")
    if digits.startswith(KENYA_COUNTRY_CODE):
        return digits
    if digits.startswith("0"):
        digits = digits[1:]
    return f"{KENYA_COUNTRY_CODE}{digits}"


def daraja_timestamp(now: Optional[datetime] = None) -> str:
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is not None:
        current = current.astimezone(timezone.utc)
    return current.strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode("ascii")


def whole_shillings(amount: Decimal) -> int:
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _parse_result_code(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def interpret_query_response(data: dict) -> StkQueryResult:
    """
    Read the outcome of an STK query.

    The code may arrive as ResultCode, ResponseCode or inside a callback
    envelope (Body.stkCallback.ResultCode); 0 means the customer paid.
    """
    callback = (data.get("Body") or {}).get("stkCallback") or {}
    raw_code = data.get("ResultCode")
    if raw_code is None:
        raw_code = data.get("ResponseCode")
    if raw_code is None:
        raw_code = callback.get("ResultCode")
    result_code = _parse_result_code(raw_code)
    paid = result_code == 0

    result_desc = (
        data.get("ResultDesc")
        or data.get("ResponseDescription")
        or callback.get("ResultDesc")
        or RESULT_DESCRIPTIONS.get(result_code)
        or ("Payment successful" if paid else "Payment not completed")
    )
    return StkQueryResult(paid=paid, result_code=result_code, result_desc=str(result_desc))


class MpesaClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        consumer_key: str,
        consumer_secret: str,
        shortcode: str,
        passkey: str,
        api_base: str,
    ):
        self.http = http
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.api_base = api_base.rstrip("/")

    @classmethod
    def from_credentials(cls, http: httpx.AsyncClient, credentials: dict[str, str], api_base: str):
        return cls(
            http,
            consumer_key=credentials["mpesa_consumer_key"],
            consumer_secret=credentials["mpesa_consumer_secret"],
            shortcode=credentials["mpesa_shortcode"],
            passkey=credentials["mpesa_passkey"],
            api_base=api_base,
        )

    async def get_access_token(self) -> str:
        try:
            response = await self.http.get(
                f"{self.api_base}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self.consumer_key, self.consumer_secret),
            )
        except httpx.HTTPError as e:
            logger.error(f"M-Pesa auth request failed: {e}")
            raise UpstreamFailure("M-Pesa auth failed") from e

        if response.is_error:
            logger.error(f"M-Pesa auth failed: {response.status_code} {response.text}")
            raise UpstreamFailure("M-Pesa auth failed")

        token = response.json().get("access_token")
        if not token:
            raise UpstreamFailure("No M-Pesa access token")
        return token

    def _signed_fields(self, now: Optional[datetime] = None) -> dict[str, str]:
        timestamp = daraja_timestamp(now)
        return {
            "BusinessShortCode": self.shortcode,
            "Password": stk_password(self.shortcode, self.passkey, timestamp),
            "Timestamp": timestamp,
        }

    async def _post(self, path: str, token: str, payload: dict) -> tuple[httpx.Response, dict]:
        response = await self.http.post(
            f"{self.api_base}{path}",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        try:
            data = response.json()
        except ValueError:
            data = {}
        return response, data if isinstance(data, dict) else {}

    async def stk_push(self, phone: str, amount: Decimal, callback_url: str) -> StkPushResult:
        """Send the pay prompt to the customer's phone."""
        msisdn = normalize_msisdn(phone)
        token = await self.get_access_token()
        payload = {
            **self._signed_fields(),
            "TransactionType": "CustomerPayBillOnline",
            "Amount": whole_shillings(amount),
            "PartyA": msisdn,
            "PartyB": self.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": callback_url,
            "AccountReference": "Booking",
            "TransactionDesc": "Booking payment",
        }
        try:
            response, data = await self._post("/mpesa/stkpush/v1/processrequest", token, payload)
        except httpx.HTTPError as e:
            logger.error(f"M-Pesa STK push request failed: {e}")
            raise UpstreamFailure("STK push failed") from e

        if response.is_error:
            logger.error(f"M-Pesa STK push failed: {response.status_code} {data}")
            message = data.get("errorMessage") or data.get("error") or "STK push failed"
            raise UpstreamFailure(str(message))

        return StkPushResult(
            checkout_request_id=data.get("CheckoutRequestID"),
            merchant_request_id=data.get("MerchantRequestID"),
        )

    async def stk_query(self, checkout_request_id: str) -> StkQueryResult:
        """Check whether the customer completed an STK push."""
        token = await self.get_access_token()
        payload = {**self._signed_fields(), "CheckoutRequestID": checkout_request_id}
        try:
            response, data = await self._post("/mpesa/stkpushquery/v1/query", token, payload)
        except httpx.HTTPError as e:
            logger.error(f"M-Pesa STK query request failed: {e}")
            raise UpstreamFailure("Could not check payment status") from e

        if response.is_error:
            logger.error(f"M-Pesa STK query failed: {response.status_code} {data}")
            message = data.get("errorMessage") or "Could not check payment status"
            raise UpstreamFailure(str(message))

        return interpret_query_response(data)
