"""
Booking endpoints for customers (cancel link) and booking emails.
"""

import logging
from typing import Optional

import httpx
from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from .bookings import business_tz, cancel_booking, get_booking_by_cancel_token
from .core.config import Settings, get_settings
from .core.db import get_session
from .core.errors import InputInvalid, UpstreamFailure
from .core.http import get_http_client
from .notifications import (
    DEFAULT_REMINDER_HOURS,
    details_for,
    notify_quietly,
    send_booking_email,
    send_due_reminders,
)
from .schemas import BookingEmailRequest, BookingReminderRequest, CancelBookingRequest

logger = logging.getLogger(__name__)

router = APIRouter()

NO_EMAIL = {"success": True, "message": "No email provided, skipping"}


# === Cancel link ===

@router.get("/get-booking-by-cancel-token")
async def get_booking_by_cancel_token_route(
    token: str = Query(default=""),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    token = token.strip()
    if not token:
        raise InputInvalid("Missing token")
    return await get_booking_by_cancel_token(session, token, business_tz(settings.business_timezone))


@router.post("/cancel-booking")
async def cancel_booking_route(
    body: CancelBookingRequest,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    outcome = await cancel_booking(session, body.cancel_token, business_tz(settings.business_timezone))

    if outcome.cancelled_now and outcome.booking.tenant_id is not None:
        details = await details_for(session, outcome.booking)
        await notify_quietly(http, settings, "cancellation", details, outcome.tenant_name)
    return {"success": True, "message": outcome.message}


# === Booking emails ===

async def _send(kind: str, body: BookingEmailRequest, http: httpx.AsyncClient, settings: Settings, sent_message: str):
    if body.booking is None or not body.booking.customer_email:
        return NO_EMAIL
    tenant_name = body.tenant.name if body.tenant else None
    try:
        await send_booking_email(http, settings, kind, body.booking, tenant_name)
    except httpx.HTTPError as e:
        logger.error(f"{kind} email to {body.booking.customer_email} failed: {e}")
        raise UpstreamFailure("Failed to send email") from e
    return {"success": True, "message": sent_message}


@router.post("/send-booking-confirmation")
async def send_booking_confirmation(
    body: BookingEmailRequest,
    settings: Settings = Depends(get_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    return await _send("confirmation", body, http, settings, "Confirmation email sent")


@router.post("/send-booking-cancellation")
async def send_booking_cancellation(
    body: BookingEmailRequest,
    settings: Settings = Depends(get_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    return await _send("cancellation", body, http, settings, "Cancellation email sent")


@router.post("/send-booking-no-show")
async def send_booking_no_show(
    body: BookingEmailRequest,
    settings: Settings = Depends(get_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    return await _send("no_show", body, http, settings, "No-show email sent")


@router.post("/send-booking-reminder")
async def send_booking_reminder(
    body: Optional[BookingReminderRequest] = Body(default=None),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    """One reminder when a booking is given; otherwise the scheduled sweep."""
    body = body or BookingReminderRequest()
    if body.booking is not None:
        return await _send("reminder", body, http, settings, "Reminder email sent")

    hours_ahead = body.hours_ahead if body.hours_ahead is not None else DEFAULT_REMINDER_HOURS
    sent, total = await send_due_reminders(
        session, http, settings, business_tz(settings.business_timezone), hours_ahead
    )
    return {"success": True, "sent": sent, "total": total}
