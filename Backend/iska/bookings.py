"""
Customer self-service on bookings: look up by cancel token and cancel.

CANCEL POLICY:
    A tenant's `cancel_by_hours` site setting (H, default 24) closes
    self-cancellation H hours before the appointment. A request at or before
    `appointment - H` is accepted; anything later is refused with a message
    telling the customer to contact the business. Booking date and time are
    wall-clock values in BUSINESS_TIMEZONE.
"""

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.errors import InputInvalid, InternalFailure, NotFound
from .models import Booking, BookingStatus, Location, Service, SiteSetting, StaffMember, Tenant

logger = logging.getLogger(__name__)

CANCEL_BY_HOURS_KEY = "cancel_by_hours"
DEFAULT_CANCEL_BY_HOURS = 24
DEFAULT_TENANT_NAME = "Our Business"

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


@dataclass
class CancelOutcome:
    message: str
    booking: Optional[Booking] = None
    tenant_name: Optional[str] = None
    cancelled_now: bool = False


def business_tz(name: str):
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown BUSINESS_TIMEZONE '{name}', using UTC")
        return timezone.utc


def appointment_at(booking_date: date, booking_time: time, tz) -> datetime:
    return datetime.combine(booking_date, booking_time).replace(tzinfo=tz)


def parse_cancel_by_hours(raw: Optional[str]) -> int:
    """
    Read the cancel_by_hours setting.

    Only the leading integer counts ("2.5" -> 2, "12h" -> 12). Missing,
    non-numeric or zero -> 24; negative -> 0.
    """
    match = _LEADING_INT.match(str(raw)) if raw is not None else None
    hours = int(match.group(1)) if match else 0
    if hours == 0:
        return DEFAULT_CANCEL_BY_HOURS
    return max(0, hours)


def cancel_cutoff(appointment: datetime, hours: int) -> datetime:
    return appointment - timedelta(hours=hours)


def cancel_refusal_message(hours: int, for_lookup_page: bool = False) -> str:
    plural = "" if hours == 1 else "s"
    message = (
        f"Cancellation is only allowed at least {hours} hour{plural} before your appointment. "
        f"Please contact the business"
    )
    return message + (" to change your booking." if for_lookup_page else ".")


def cancellation_policy(
    now: datetime,
    appointment: datetime,
    hours: int,
    for_lookup_page: bool = False,
) -> tuple[bool, Optional[str]]:
    """(allowed, message) for cancelling at `now`."""
    if now > cancel_cutoff(appointment, hours):
        return False, cancel_refusal_message(hours, for_lookup_page)
    return True, None


async def get_cancel_by_hours(session: AsyncSession, tenant_id: uuid.UUID) -> int:
    raw = await session.scalar(
        select(SiteSetting.value).where(
            SiteSetting.tenant_id == tenant_id,
            SiteSetting.key == CANCEL_BY_HOURS_KEY,
        )
    )
    return parse_cancel_by_hours(raw)


async def _name_of(session: AsyncSession, model, row_id: Optional[uuid.UUID]) -> Optional[str]:
    if row_id is None:
        return None
    return await session.scalar(select(model.name).where(model.id == row_id))


async def booking_names(session: AsyncSession, booking: Booking) -> dict[str, Optional[str]]:
    """Display names of the service, staff member and location on a booking."""
    return {
        "service_name": await _name_of(session, Service, booking.service_id),
        "staff_name": await _name_of(session, StaffMember, booking.staff_id),
        "location_name": await _name_of(session, Location, booking.location_id),
    }


async def _tenant_name_and_slug(session: AsyncSession, tenant_id) -> tuple[Optional[str], Optional[str]]:
    if tenant_id is None:
        return None, None
    row = (await session.execute(select(Tenant.name, Tenant.slug).where(Tenant.id == tenant_id))).first()
    return (row[0], row[1]) if row else (None, None)


async def _booking_by_token(session: AsyncSession, token: str) -> Optional[Booking]:
    return await session.scalar(select(Booking).where(Booking.cancel_token == token))


async def _policy_for(
    session: AsyncSession,
    booking: Booking,
    tz,
    now: datetime,
    for_lookup_page: bool,
) -> tuple[bool, Optional[str]]:
    if booking.tenant_id is None or booking.booking_date is None or booking.booking_time is None:
        return True, None
    hours = await get_cancel_by_hours(session, booking.tenant_id)
    appointment = appointment_at(booking.booking_date, booking.booking_time, tz)
    return cancellation_policy(now, appointment, hours, for_lookup_page)


async def get_booking_by_cancel_token(
    session: AsyncSession,
    token: str,
    tz,
    now: Optional[datetime] = None,
) -> dict:
    booking = await _booking_by_token(session, token)
    if booking is None or booking.is_cancelled():
        raise NotFound("Booking not found or already cancelled")

    current = now or datetime.now(timezone.utc)
    tenant_name, tenant_slug = await _tenant_name_and_slug(session, booking.tenant_id)
    cancel_allowed, cancel_message = await _policy_for(session, booking, tz, current, True)

    return {
        "booking": {
            "id": str(booking.id),
            "booking_date": booking.booking_date.isoformat(),
            "booking_time": booking.booking_time.strftime("%H:%M:%S"),
            "customer_name": booking.customer_name,
            "status": booking.status,
            **await booking_names(session, booking),
        },
        "tenant_name": tenant_name,
        "tenant_slug": tenant_slug,
        "cancel_allowed": cancel_allowed,
        "cancel_message": cancel_message,
    }


async def cancel_booking(
    session: AsyncSession,
    token: str,
    tz,
    now: Optional[datetime] = None,
) -> CancelOutcome:
    """
    Cancel the booking behind a cancel token.

    Raises:
        NotFound: no booking has this token.
        InputInvalid: the cancellation window has closed.
        InternalFailure: the status update could not be written.
    """
    booking = await _booking_by_token(session, token)
    if booking is None:
        raise NotFound("Booking not found")
    if booking.is_cancelled():
        return CancelOutcome(message="Already cancelled", booking=booking)

    current = now or datetime.now(timezone.utc)
    allowed, message = await _policy_for(session, booking, tz, current, False)
    if not allowed:
        raise InputInvalid(message)

    booking.status = BookingStatus.CANCELLED.value
    try:
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Could not cancel booking {booking.id}: {e}")
        raise InternalFailure("Could not cancel booking") from e
    logger.info(f"Booking {booking.id} cancelled by customer")

    tenant_name, _ = await _tenant_name_and_slug(session, booking.tenant_id)
    return CancelOutcome(
        message="Booking cancelled",
        booking=booking,
        tenant_name=tenant_name or DEFAULT_TENANT_NAME,
        cancelled_now=True,
    )
