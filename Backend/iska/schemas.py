"""
Request bodies for the HTTP handlers.

Client-facing bodies reject unknown fields; provider webhook envelopes keep
whatever extra fields the provider sends.
"""

from decimal import Decimal
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .notifications import BookingDetails, TenantDetails


class StrictBody(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True, populate_by_name=True)


# === Payments ===

class CreatePaypalOrderRequest(StrictBody):
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(default="USD", min_length=3)
    tenant_id: Optional[str] = None


class CapturePaypalOrderRequest(StrictBody):
    order_id: str = Field(..., min_length=1, validation_alias=AliasChoices("orderId", "orderID"))
    tenant_id: Optional[str] = None


class CreateStripePaymentIntentRequest(StrictBody):
    plan: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: str = Field(default="usd", min_length=3)
    customer_email: Optional[str] = None
    tenant_id: Optional[str] = None


class MpesaStkPushRequest(StrictBody):
    tenant_id: str = Field(..., min_length=1)
    phone: str
    amount: Decimal = Field(..., gt=0)


class MpesaStkQueryRequest(StrictBody):
    tenant_id: str = Field(..., min_length=1)
    checkout_request_id: str = Field(..., min_length=1)


# === Tenants ===

class ClaimStripeTenantRequest(StrictBody):
    session_id: str = Field(..., min_length=1, validation_alias=AliasChoices("session_id", "sessionId"))


class ClaimPaypalTenantRequest(StrictBody):
    pass


class TenantByDomainRequest(StrictBody):
    host: str = ""


# === Bookings ===

class CancelBookingRequest(StrictBody):
    cancel_token: str = Field(..., min_length=1, validation_alias=AliasChoices("cancel_token", "token"))


class BookingEmailRequest(StrictBody):
    booking: Optional[BookingDetails] = None
    tenant: Optional[TenantDetails] = None


class BookingReminderRequest(BookingEmailRequest):
    hours_ahead: Optional[float] = Field(default=None, ge=0)


# === Webhooks ===

class PayPalWebhookEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    event_type: Optional[str] = None
    resource: Optional[dict[str, Any]] = None
