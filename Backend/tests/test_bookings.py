"""
Tests for customer booking self-service: cancel policy, lookup by cancel
token, cancellation and its notification email.

Run with: pytest tests/test_bookings.py -v
"""

from datetime import date, datetime, time, timedelta, timezone

import pytest
from sqlalchemy import select

from conftest import split_datetime, utc
from iska.bookings import (
    cancel_booking,
    cancel_refusal_message,
    cancellation_policy,
    get_booking_by_cancel_token,
    parse_cancel_by_hours,
)
from iska.core.errors import InputInvalid, NotFound
from iska.models import Booking, Location, Service, StaffMember

APPOINTMENT = utc(2026, 5, 10, 14, 30)
SECOND = timedelta(seconds=1)


# ============================================================================
# POLICY
# ============================================================================

class TestParseCancelByHours:

    def test_missing_defaults_to_24(self):
        assert parse_cancel_by_hours(None) == 24

    def test_numeric(self):
        assert parse_cancel_by_hours("48") == 48

    def test_zero_defaults_to_24(self):
        assert parse_cancel_by_hours("0") == 24
        assert parse_cancel_by_hours("-0") == 24

    def test_leading_integer_is_used(self):
        assert parse_cancel_by_hours("2.5") == 2
        assert parse_cancel_by_hours("12h") == 12
        assert parse_cancel_by_hours(" 6 ") == 6

    def test_non_numeric_defaults_to_24(self):
        assert parse_cancel_by_hours("two days") == 24

    def test_negative_clamped(self):
        assert parse_cancel_by_hours("-5") == 0


class TestCancellationPolicy:
    """Requests at or before appointment - H are allowed."""

    def test_exactly_at_cutoff_allowed(self):
        cutoff = APPOINTMENT - timedelta(hours=24)
        assert cancellation_policy(cutoff, APPOINTMENT, 24) == (True, None)

    def test_one_second_before_cutoff_allowed(self):
        cutoff = APPOINTMENT - timedelta(hours=24)
        assert cancellation_policy(cutoff - SECOND, APPOINTMENT, 24)[0] is True

    def test_one_second_after_cutoff_refused(self):
        cutoff = APPOINTMENT - timedelta(hours=24)
        allowed, message = cancellation_policy(cutoff + SECOND, APPOINTMENT, 24)
        assert allowed is False
        assert message == (
            "Cancellation is only allowed at least 24 hours before your appointment. "
            "Please contact the business."
        )

    def test_zero_hours_allows_until_start(self):
        assert cancellation_policy(APPOINTMENT, APPOINTMENT, 0)[0] is True
        assert cancellation_policy(APPOINTMENT + SECOND, APPOINTMENT, 0)[0] is False

    def test_lookup_page_wording(self):
        assert cancel_refusal_message(1, for_lookup_page=True) == (
            "Cancellation is only allowed at least 1 hour before your appointment. "
            "Please contact the business to change your booking."
        )


# ============================================================================
# CANCEL
# ============================================================================

@pytest.mark.asyncio
async def test_cancel_before_cutoff(async_session, create_tenant, create_booking):
    tenant_id = await create_tenant(name="Glow Studio")
    await create_booking(tenant_id, date(2026, 5, 10), time(14, 30), cancel_token="tok-1")

    outcome = await cancel_booking(async_session, "tok-1", timezone.utc, now=APPOINTMENT - timedelta(hours=24))

    assert outcome.message == "Booking cancelled"
    assert outcome.cancelled_now is True
    assert outcome.tenant_name == "Glow Studio"
    status = await async_session.scalar(select(Booking.status).where(Booking.cancel_token == "tok-1"))
    assert status == "cancelled"


@pytest.mark.asyncio
async def test_cancel_after_cutoff_refused(async_session, create_tenant, create_booking):
    tenant_id = await create_tenant()
    await create_booking(tenant_id, date(2026, 5, 10), time(14, 30), cancel_token="tok-2")

    with pytest.raises(InputInvalid, match="at least 24 hours"):
        await cancel_booking(async_session, "tok-2", timezone.utc, now=APPOINTMENT - timedelta(hours=24) + SECOND)

    status = await async_session.scalar(select(Booking.status).where(Booking.cancel_token == "tok-2"))
    assert status == "confirmed"


@pytest.mark.asyncio
async def test_cancel_uses_tenant_setting(async_session, create_tenant, create_booking, set_site_setting):
    tenant_id = await create_tenant()
    await set_site_setting(tenant_id, "cancel_by_hours", "2")
    await create_booking(tenant_id, date(2026, 5, 10), time(14, 30), cancel_token="tok-3")

    outcome = await cancel_booking(async_session, "tok-3", timezone.utc, now=APPOINTMENT - timedelta(hours=3))

    assert outcome.cancelled_now is True


@pytest.mark.asyncio
async def test_fractional_setting_uses_whole_hours(async_session, create_tenant, create_booking, set_site_setting):
    tenant_id = await create_tenant()
    await set_site_setting(tenant_id, "cancel_by_hours", "2.5")
    await create_booking(tenant_id, date(2026, 5, 10), time(14, 30), cancel_token="tok-frac")

    outcome = await cancel_booking(async_session, "tok-frac", timezone.utc, now=APPOINTMENT - timedelta(hours=2))

    assert outcome.cancelled_now is True


@pytest.mark.asyncio
async def test_cancel_wall_clock_in_business_timezone(async_session, create_tenant, create_booking):
    from zoneinfo import ZoneInfo

    nairobi = ZoneInfo("Africa/Nairobi")
    tenant_id = await create_tenant()
    # 14:30 in Nairobi is 11:30 UTC.
    await create_booking(tenant_id, date(2026, 5, 10), time(14, 30), cancel_token="tok-tz")

    with pytest.raises(InputInvalid):
        await cancel_booking(async_session, "tok-tz", nairobi, now=utc(2026, 5, 9, 11, 30) + SECOND)


@pytest.mark.asyncio
async def test_cancel_twice(async_session, create_tenant, create_booking):
    tenant_id = await create_tenant()
    await create_booking(tenant_id, date(2026, 5, 10), time(14, 30), cancel_token="tok-4", status="cancelled")

    outcome = await cancel_booking(async_session, "tok-4", timezone.utc, now=APPOINTMENT)

    assert outcome.message == "Already cancelled"
    assert outcome.cancelled_now is False


@pytest.mark.asyncio
async def test_cancel_unknown_token(async_session):
    with pytest.raises(NotFound, match="Booking not found"):
        await cancel_booking(async_session, "nope", timezone.utc)


# ============================================================================
# LOOKUP
# ============================================================================

@pytest.mark.asyncio
async def test_lookup_returns_names_and_policy(async_session, create_tenant, create_booking):
    tenant_id = await create_tenant(slug="glow", name="Glow Studio")
    service = Service(tenant_id=tenant_id, name="Haircut")
    staff = StaffMember(tenant_id=tenant_id, name="Ama")
    location = Location(tenant_id=tenant_id, name="Westlands")
    async_session.add_all([service, staff, location])
    await async_session.commit()
    booking_id = await create_booking(
        tenant_id,
        date(2026, 5, 10),
        time(14, 30),
        cancel_token="tok-5",
        service_id=service.id,
        staff_id=staff.id,
        location_id=location.id,
    )

    result = await get_booking_by_cancel_token(
        async_session, "tok-5", timezone.utc, now=APPOINTMENT - timedelta(hours=1)
    )

    assert result["booking"] == {
        "id": str(booking_id),
        "booking_date": "2026-05-10",
        "booking_time": "14:30:00",
        "customer_name": "Jane Client",
        "status": "confirmed",
        "service_name": "Haircut",
        "staff_name": "Ama",
        "location_name": "Westlands",
    }
    assert result["tenant_name"] == "Glow Studio"
    assert result["tenant_slug"] == "glow"
    assert result["cancel_allowed"] is False
    assert result["cancel_message"].endswith("to change your booking.")


@pytest.mark.asyncio
async def test_lookup_hides_cancelled_booking(async_session, create_tenant, create_booking):
    tenant_id = await create_tenant()
    await create_booking(tenant_id, date(2026, 5, 10), time(14, 30), cancel_token="tok-6", status="cancelled")

    with pytest.raises(NotFound, match="Booking not found or already cancelled"):
        await get_booking_by_cancel_token(async_session, "tok-6", timezone.utc)


# ============================================================================
# ENDPOINTS
# ============================================================================

def far_future():
    return split_datetime(datetime.now(timezone.utc) + timedelta(days=30))


@pytest.mark.asyncio
async def test_lookup_endpoint(client, create_tenant, create_booking):
    tenant_id = await create_tenant(slug="glow")
    await create_booking(tenant_id, *far_future(), cancel_token="tok-7")

    response = await client.get("/get-booking-by-cancel-token", params={"token": "tok-7"})

    assert response.status_code == 200
    body = response.json()
    assert body["tenant_slug"] == "glow"
    assert body["cancel_allowed"] is True
    assert body["cancel_message"] is None


@pytest.mark.asyncio
async def test_lookup_endpoint_errors(client):
    missing = await client.get("/get-booking-by-cancel-token")
    unknown = await client.get("/get-booking-by-cancel-token", params={"token": "nope"})

    assert missing.status_code == 400
    assert missing.json() == {"error": "Missing token"}
    assert unknown.status_code == 404
    assert unknown.json() == {"error": "Booking not found or already cancelled"}


@pytest.mark.asyncio
async def test_cancel_endpoint_sends_email(client, settings, provider_mock, create_tenant, create_booking):
    settings.resend_api_key = "re_test"
    provider_mock.add("POST", "/emails", {"id": "email-1"})
    tenant_id = await create_tenant(name="Glow Studio")
    await create_booking(tenant_id, *far_future(), cancel_token="tok-8")

    response = await client.post("/cancel-booking", json={"token": "tok-8"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Booking cancelled"}
    [email] = provider_mock.sent_to("/emails")
    sent = provider_mock.json_of(email)
    assert sent["to"] == ["jane@client.test"]
    assert sent["subject"] == "Appointment Cancelled - Glow Studio"


@pytest.mark.asyncio
async def test_cancel_endpoint_email_failure_is_not_fatal(
    client, settings, provider_mock, async_session, create_tenant, create_booking
):
    settings.resend_api_key = "re_test"
    provider_mock.add("POST", "/emails", {"message": "boom"}, status_code=500)
    tenant_id = await create_tenant()
    await create_booking(tenant_id, *far_future(), cancel_token="tok-9")

    response = await client.post("/cancel-booking", json={"cancel_token": "tok-9"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "Booking cancelled"}
    status = await async_session.scalar(select(Booking.status).where(Booking.cancel_token == "tok-9"))
    assert status == "cancelled"


@pytest.mark.asyncio
async def test_cancel_endpoint_already_cancelled(client, provider_mock, create_tenant, create_booking):
    tenant_id = await create_tenant()
    await create_booking(tenant_id, *far_future(), cancel_token="tok-10", status="cancelled")

    response = await client.post("/cancel-booking", json={"token": "tok-10"})

    assert response.json() == {"success": True, "message": "Already cancelled"}
    assert provider_mock.requests == []


@pytest.mark.asyncio
async def test_cancel_endpoint_inside_window(client, create_tenant, create_booking):
    tenant_id = await create_tenant()
    soon = split_datetime(datetime.now(timezone.utc) + timedelta(hours=2))
    await create_booking(tenant_id, *soon, cancel_token="tok-11")

    response = await client.post("/cancel-booking", json={"token": "tok-11"})

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["error"].startswith("Cancellation is only allowed at least 24 hours")


@pytest.mark.asyncio
async def test_cancel_endpoint_errors(client):
    unknown = await client.post("/cancel-booking", json={"token": "nope"})
    missing = await client.post("/cancel-booking", json={})

    assert unknown.status_code == 404
    assert unknown.json() == {"error": "Booking not found", "success": False}
    assert missing.status_code == 400
    assert missing.json() == {"error": "Missing cancel_token", "success": False}
