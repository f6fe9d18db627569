"""
Booking Notifications Module

Renders and dispatches the customer emails for a booking:
confirmation, cancellation, no-show and the day-ahead reminder.

All values interpolated into the HTML are escaped. Dispatch goes through
emailer.send_email (Resend when configured, a log line otherwise). Callers
that send an email as a side effect of another operation use
notify_quietly, which logs failures instead of raising them.
"""

import html
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .bookings import DEFAULT_TENANT_NAME, appointment_at, booking_names
from .core.config import Settings
from .emailer import send_email
from .models import Booking, BookingStatus, Tenant

logger = logging.getLogger(__name__)

PLACEHOLDER = "—"
DEFAULT_REMINDER_HOURS = 24
REMINDER_STATUSES = (BookingStatus.CONFIRMED.value, BookingStatus.PENDING.value)


class BookingDetails(BaseModel):
    """Booking fields the templates read; other columns the caller sends are ignored."""
    model_config = ConfigDict(extra="ignore")

    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    booking_date: Optional[Union[date, str]] = None
    booking_time: Optional[Union[time, str]] = None
    service_name: Optional[str] = None
    staff_name: Optional[str] = None
    location_name: Optional[str] = None
    total_price: Optional[Union[Decimal, str]] = None


class TenantDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None


@dataclass
class RenderedEmail:
    to: str
    subject: str
    html: str


# === Formatting ===

def format_booking_date(value: Any) -> str:
    """'2026-01-05' -> 'Monday, January 5, 2026'. Unparseable strings pass through."""
    if value is None or value == "":
        return PLACEHOLDER
    if isinstance(value, datetime):
        value = value.date()
    if not isinstance(value, date):
        try:
            value = date.fromisoformat(str(value)[:10])
        except ValueError:
            return str(value)
    return f"{value:%A}, {value:%B} {value.day}, {value.year}"


def format_booking_time(value: Any) -> str:
    """'14:30' or '14:30:00' -> '2:30 PM'."""
    if value is None or value == "":
        return PLACEHOLDER
    if isinstance(value, time):
        hour, minute = value.hour, value.minute
    else:
        try:
            parts = str(value).split(":")
            hour, minute = int(parts[0]), int(parts[1]) if len(parts) > 1 else 0
        except ValueError:
            return str(value)
    suffix = "PM" if hour >= 12 else "AM"
    return f"{hour % 12 or 12}:{minute:02d} {suffix}"


def format_total(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    if not amount:
        return None
    return f"${amount.quantize(Decimal('1'), rounding=ROUND_HALF_UP)}"


def _e(value: Any) -> str:
    return html.escape(str(value), quote=True)


def _detail_line(label: str, value: Optional[str]) -> str:
    if not value:
        return ""
    return f'<p style="margin: 4px 0;"><strong>{label}:</strong> {_e(value)}</p>'


def _wrap(body: str) -> str:
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 500px; margin: 0 auto; padding: 20px;">'
        f"{body}"
        "</div>"
    )


def _signature(tenant_name: str) -> str:
    return f'<p style="color: #999; font-size: 12px;">{PLACEHOLDER} {_e(tenant_name)}</p>'


# === Templates ===

def render_confirmation(booking: BookingDetails, tenant_name: str) -> RenderedEmail:
    details = "".join(
        [
            _detail_line("Service", booking.service_name),
            _detail_line("Specialist", booking.staff_name),
            _detail_line("Location", booking.location_name),
            _detail_line("Date", format_booking_date(booking.booking_date)),
            _detail_line("Time", format_booking_time(booking.booking_time)),
            _detail_line("Total", format_total(booking.total_price)),
        ]
    )
    body = (
        '<h2 style="color: #333;">Booking Confirmed ✓</h2>'
        f"<p>Hi {_e(booking.customer_name or 'there')},</p>"
        f"<p>Your appointment at <strong>{_e(tenant_name)}</strong> has been confirmed.</p>"
        f'<div style="background: #f5f5f5; padding: 16px; border-radius: 12px; margin: 16px 0;">{details}</div>'
        '<p style="color: #666; font-size: 14px;">We look forward to seeing you!</p>'
        f"{_signature(tenant_name)}"
    )
    return RenderedEmail(booking.customer_email, f"Booking Confirmed - {tenant_name}", _wrap(body))


def render_cancellation(booking: BookingDetails, tenant_name: str) -> RenderedEmail:
    details = "".join(
        [
            _detail_line("Service", booking.service_name),
            _detail_line("Date", format_booking_date(booking.booking_date)),
            _detail_line("Time", format_booking_time(booking.booking_time)),
        ]
    )
    body = (
        '<h2 style="color: #333;">Appointment Cancelled</h2>'
        f"<p>Hi {_e(booking.customer_name or 'there')},</p>"
        f"<p>Your appointment at <strong>{_e(tenant_name)}</strong> has been cancelled.</p>"
        f'<div style="background: #f5f5f5; padding: 16px; border-radius: 12px; margin: 16px 0;">{details}</div>'
        '<p style="color: #666; font-size: 14px;">If you did not request this cancellation or wish to '
        f"rebook, please contact {_e(tenant_name)}.</p>"
        f"{_signature(tenant_name)}"
    )
    return RenderedEmail(booking.customer_email, f"Appointment Cancelled - {tenant_name}", _wrap(body))


def render_no_show(booking: BookingDetails, tenant_name: str) -> RenderedEmail:
    when = f"{format_booking_date(booking.booking_date)} at {format_booking_time(booking.booking_time)}"
    body = (
        '<h2 style="color: #333;">Appointment marked as no-show</h2>'
        f"<p>Hi {_e(booking.customer_name or 'there')},</p>"
        f"<p>Your appointment at <strong>{_e(tenant_name)}</strong> on {_e(when)} was marked as a "
        "no-show because we did not see you.</p>"
        f"{_detail_line('Service', booking.service_name)}"
        '<p style="color: #666; font-size: 14px;">If this was a mistake or you need to reschedule, '
        f"please contact {_e(tenant_name)}.</p>"
        f"{_signature(tenant_name)}"
    )
    return RenderedEmail(booking.customer_email, f"Appointment no-show - {tenant_name}", _wrap(body))


def render_reminder(booking: BookingDetails, tenant_name: str) -> RenderedEmail:
    details = "".join(
        [
            _detail_line("Service", booking.service_name),
            _detail_line("With", booking.staff_name),
            _detail_line("Location", booking.location_name),
            _detail_line("Date", format_booking_date(booking.booking_date)),
            _detail_line("Time", format_booking_time(booking.booking_time)),
        ]
    )
    body = (
        '<h2 style="color: #333;">Reminder: Your appointment</h2>'
        f"<p>Hi {_e(booking.customer_name or 'there')},</p>"
        "<p>This is a reminder that you have an upcoming appointment at "
        f"<strong>{_e(tenant_name)}</strong>.</p>"
        f'<div style="background: #f5f5f5; padding: 16px; border-radius: 12px; margin: 16px 0;">{details}</div>'
        '<p style="color: #666; font-size: 14px;">We look forward to seeing you!</p>'
        f"{_signature(tenant_name)}"
    )
    return RenderedEmail(booking.customer_email, f"Reminder: Your appointment - {tenant_name}", _wrap(body))


TEMPLATES = {
    "confirmation": render_confirmation,
    "cancellation": render_cancellation,
    "no_show": render_no_show,
    "reminder": render_reminder,
}


# === Dispatch ===

async def send_booking_email(
    http: httpx.AsyncClient,
    settings: Settings,
    kind: str,
    booking: BookingDetails,
    tenant_name: Optional[str],
) -> bool:
    """Render the `kind` template and send it. Raises httpx.HTTPError on provider failure."""
    message = TEMPLATES[kind](booking, tenant_name or DEFAULT_TENANT_NAME)
    return await send_email(http, settings, message.to, message.subject, message.html)


async def notify_quietly(
    http: httpx.AsyncClient,
    settings: Settings,
    kind: str,
    booking: BookingDetails,
    tenant_name: Optional[str],
) -> bool:
    """Like send_booking_email, but a failure is logged and reported as False."""
    if not booking.customer_email:
        return False
    try:
        await send_booking_email(http, settings, kind, booking, tenant_name)
    except httpx.HTTPError as e:
        logger.warning(f"{kind} email to {booking.customer_email} failed: {e}")
        return False
    return True


async def details_for(session: AsyncSession, booking: Booking) -> BookingDetails:
    return BookingDetails(
        customer_email=booking.customer_email,
        customer_name=booking.customer_name,
        booking_date=booking.booking_date,
        booking_time=booking.booking_time,
        total_price=booking.total_price,
        **await booking_names(session, booking),
    )


# === Reminder sweep ===

async def collect_due_reminders(
    session: AsyncSession,
    tz,
    hours_ahead: float = DEFAULT_REMINDER_HOURS,
    now: Optional[datetime] = None,
) -> list[tuple[BookingDetails, str]]:
    """
    Bookings with an email whose appointment falls in [now, now + hours_ahead].
    """
    start = now or datetime.now(timezone.utc)
    end = start + timedelta(hours=hours_ahead)
    # Dates are compared loosely first, the exact instant below.
    first_day = start.astimezone(tz).date() - timedelta(days=1)
    last_day = end.astimezone(tz).date() + timedelta(days=1)

    result = await session.execute(
        select(Booking)
        .where(
            Booking.booking_date >= first_day,
            Booking.booking_date <= last_day,
            Booking.status.in_(REMINDER_STATUSES),
        )
        .order_by(Booking.booking_date, Booking.booking_time)
    )

    due: list[tuple[BookingDetails, str]] = []
    tenant_names: dict = {}
    for booking in result.scalars().all():
        if not booking.customer_email:
            continue
        at = appointment_at(booking.booking_date, booking.booking_time, tz)
        if at < start or at > end:
            continue
        if booking.tenant_id not in tenant_names:
            tenant_names[booking.tenant_id] = await session.scalar(
                select(Tenant.name).where(Tenant.id == booking.tenant_id)
            )
        due.append((await details_for(session, booking), tenant_names[booking.tenant_id] or DEFAULT_TENANT_NAME))
    return due


async def send_due_reminders(
    session: AsyncSession,
    http: httpx.AsyncClient,
    settings: Settings,
    tz,
    hours_ahead: float = DEFAULT_REMINDER_HOURS,
    now: Optional[datetime] = None,
) -> tuple[int, int]:
    """Send every due reminder. Returns (sent, total); one failure does not stop the rest."""
    due = await collect_due_reminders(session, tz, hours_ahead, now)
    sent = 0
    for details, tenant_name in due:
        if await notify_quietly(http, settings, "reminder", details, tenant_name):
            sent += 1
    logger.info(f"Reminder sweep: sent {sent}/{len(due)} (next {hours_ahead}h)")
    return sent, len(due)
