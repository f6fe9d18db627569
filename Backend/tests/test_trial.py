"""
Tests for the free-trial lifecycle: predicates, the scheduled sweep and the
self-service removal, plus their HTTP endpoints.

Run with: pytest tests/test_trial.py -v
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from conftest import SERVICE_ROLE_KEY, bearer, utc
from iska.models import Tenant, TenantSubscription
from iska.trial import (
    grace_deadline,
    is_in_grace_period,
    is_past_grace_period,
    is_trial_expired,
    remove_my_expired_trial,
    sweep_expired_trials,
)

T = utc(2026, 3, 1, 12)
SECOND = timedelta(seconds=1)


# ============================================================================
# PREDICATES
# ============================================================================

class TestTrialPredicates:
    """The predicates partition time around T and T + grace."""

    def test_not_expired_at_end_instant(self):
        assert not is_trial_expired(T, now=T)

    def test_expired_just_after_end(self):
        assert is_trial_expired(T, now=T + SECOND)

    def test_in_grace_just_after_end(self):
        assert is_in_grace_period(T, 7, now=T + SECOND)

    def test_grace_includes_its_last_instant(self):
        deadline = T + timedelta(days=7)
        assert is_in_grace_period(T, 7, now=deadline)
        assert not is_past_grace_period(T, 7, now=deadline)

    def test_past_grace_after_deadline(self):
        after = T + timedelta(days=7) + SECOND
        assert is_past_grace_period(T, 7, now=after)
        assert not is_in_grace_period(T, 7, now=after)

    def test_self_service_window_is_shorter(self):
        now = T + timedelta(days=4)
        assert is_past_grace_period(T, 3, now=now)
        assert is_in_grace_period(T, 7, now=now)

    def test_before_end_nothing_holds(self):
        now = T - SECOND
        assert not is_trial_expired(T, now=now)
        assert not is_in_grace_period(T, 7, now=now)
        assert not is_past_grace_period(T, 7, now=now)

    def test_no_trial_end(self):
        assert not is_trial_expired(None, now=T)
        assert not is_in_grace_period(None, 7, now=T)
        assert not is_past_grace_period(None, 7, now=T)

    def test_naive_datetime_read_as_utc(self):
        naive = T.replace(tzinfo=None)
        assert grace_deadline(naive, 3) == T + timedelta(days=3)
        assert is_trial_expired(naive, now=T + SECOND)


# ============================================================================
# SWEEP
# ============================================================================

async def _tenant_count(session):
    return await session.scalar(select(func.count()).select_from(Tenant))


@pytest.mark.asyncio
async def test_sweep_removes_only_free_trials_past_grace(async_session, create_tenant, create_subscription):
    now = utc(2026, 3, 20)
    expired = await create_tenant(slug="expired")
    await create_subscription(expired, plan="free", trial_ends_at=now - timedelta(days=8))
    in_grace = await create_tenant(slug="in-grace")
    await create_subscription(in_grace, plan="free", trial_ends_at=now - timedelta(days=2))
    paid = await create_tenant(slug="paid")
    await create_subscription(paid, plan="lifetime", trial_ends_at=now - timedelta(days=30))

    removed, tenant_ids = await sweep_expired_trials(async_session, grace_days=7, now=now)

    assert removed == 1
    assert tenant_ids == [expired]
    slugs = set((await async_session.execute(select(Tenant.slug))).scalars().all())
    assert slugs == {"in-grace", "paid"}
    remaining_subs = await async_session.scalar(
        select(func.count()).select_from(TenantSubscription).where(TenantSubscription.tenant_id == expired)
    )
    assert remaining_subs == 0


@pytest.mark.asyncio
async def test_sweep_with_nothing_to_do(async_session):
    removed, tenant_ids = await sweep_expired_trials(async_session, grace_days=7, now=utc(2026, 1, 1))
    assert (removed, tenant_ids) == (0, [])


# ============================================================================
# SELF-SERVICE REMOVAL
# ============================================================================

@pytest.mark.asyncio
async def test_self_service_removes_own_tenant(async_session, create_tenant, create_subscription, grant_role):
    now = utc(2026, 3, 20)
    tenant_id = await create_tenant(slug="mine")
    await create_subscription(tenant_id, plan="free", trial_ends_at=now - timedelta(days=4))
    await grant_role("user-9", tenant_id)

    removed, message = await remove_my_expired_trial(async_session, "user-9", grace_days=3, now=now)

    assert removed is True
    assert message is None
    assert await _tenant_count(async_session) == 0


@pytest.mark.asyncio
async def test_self_service_keeps_tenant_in_grace(async_session, create_tenant, create_subscription, grant_role):
    now = utc(2026, 3, 20)
    tenant_id = await create_tenant(slug="mine")
    await create_subscription(tenant_id, plan="free", trial_ends_at=now - timedelta(days=2))
    await grant_role("user-9", tenant_id)

    removed, message = await remove_my_expired_trial(async_session, "user-9", grace_days=3, now=now)

    assert (removed, message) == (False, "Still in grace period")
    assert await _tenant_count(async_session) == 1


@pytest.mark.asyncio
async def test_self_service_paid_tenant_untouched(async_session, create_tenant, create_subscription, grant_role):
    tenant_id = await create_tenant(slug="paid")
    await create_subscription(tenant_id, plan="starter")
    await grant_role("user-9", tenant_id)

    removed, message = await remove_my_expired_trial(async_session, "user-9", grace_days=3)

    assert (removed, message) == (False, "Not a free trial tenant")


@pytest.mark.asyncio
async def test_self_service_without_tenant(async_session):
    assert await remove_my_expired_trial(async_session, "nobody", grace_days=3) == (False, "No tenant")


# ============================================================================
# ENDPOINTS
# ============================================================================

@pytest.mark.asyncio
async def test_sweep_endpoint_requires_service_role(client, auth_headers):
    response = await client.post("/remove-expired-trial-data")
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}

    response = await client.post("/remove-expired-trial-data", headers=auth_headers())
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_sweep_endpoint_uses_seven_day_grace(client, async_session, create_tenant, create_subscription):
    old = await create_tenant(slug="old")
    await create_subscription(old, plan="free", trial_ends_at=utc(2020, 1, 1))
    recent = await create_tenant(slug="recent")
    await create_subscription(recent, plan="free", trial_ends_at=utc(2099, 1, 1))

    response = await client.post("/remove-expired-trial-data", headers=bearer(SERVICE_ROLE_KEY))

    assert response.status_code == 200
    assert response.json() == {"removed": 1, "tenantIds": [str(old)]}


@pytest.mark.asyncio
async def test_remove_my_expired_trial_endpoint(client, async_session, create_tenant, create_subscription, grant_role, auth_headers):
    tenant_id = await create_tenant(slug="mine")
    await create_subscription(tenant_id, plan="free", trial_ends_at=utc(2020, 1, 1))
    await grant_role("user-5", tenant_id)

    response = await client.post("/remove-my-expired-trial", headers=auth_headers("user-5"))

    assert response.status_code == 200
    assert response.json() == {"removed": True}
    assert await _tenant_count(async_session) == 0


@pytest.mark.asyncio
async def test_remove_my_expired_trial_reports_reason(client, auth_headers):
    response = await client.post("/remove-my-expired-trial", headers=auth_headers("user-without-tenant"))

    assert response.status_code == 200
    assert response.json() == {"removed": False, "message": "No tenant"}


@pytest.mark.asyncio
async def test_remove_my_expired_trial_requires_auth(client):
    response = await client.post("/remove-my-expired-trial")
    assert response.status_code == 401
