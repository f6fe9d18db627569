"""
Free-trial lifecycle.

A free subscription carries `trial_ends_at = T`. With a grace window of G days:

    now <= T              trial running
    T < now <= T + G      expired, in grace (data kept, upgrade prompt)
    now > T + G           past grace (tenant and all its data are removed)

The predicates are pure functions of (trial_ends_at, now, grace_days); naive
datetimes are read as UTC. The sweep and the self-service removal below are
the only callers that delete data.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .models import AppRole, TenantSubscription, UserRole
from .plans import PLAN_FREE
from .tenants import delete_tenant

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _now(now: Optional[datetime]) -> datetime:
    return _as_utc(now) if now is not None else datetime.now(timezone.utc)


def grace_deadline(trial_ends_at: datetime, grace_days: int) -> datetime:
    return _as_utc(trial_ends_at) + timedelta(days=grace_days)


def is_trial_expired(trial_ends_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    if trial_ends_at is None:
        return False
    return _now(now) > _as_utc(trial_ends_at)


def is_in_grace_period(
    trial_ends_at: Optional[datetime],
    grace_days: int,
    now: Optional[datetime] = None,
) -> bool:
    if trial_ends_at is None:
        return False
    current = _now(now)
    return _as_utc(trial_ends_at) < current <= grace_deadline(trial_ends_at, grace_days)


def is_past_grace_period(
    trial_ends_at: Optional[datetime],
    grace_days: int,
    now: Optional[datetime] = None,
) -> bool:
    if trial_ends_at is None:
        return False
    return _now(now) > grace_deadline(trial_ends_at, grace_days)


async def sweep_expired_trials(
    session: AsyncSession,
    grace_days: int,
    now: Optional[datetime] = None,
) -> tuple[int, list[uuid.UUID]]:
    """
    Remove every free-trial tenant that is past its grace period.

    Returns (number of tenants actually removed, ids of all candidates).
    A failed delete is logged and the sweep moves on.
    """
    current = _now(now)
    result = await session.execute(
        select(TenantSubscription.tenant_id, TenantSubscription.trial_ends_at).where(
            TenantSubscription.plan == PLAN_FREE,
            TenantSubscription.trial_ends_at.is_not(None),
        )
    )
    to_remove = [
        tenant_id
        for tenant_id, trial_ends_at in result.all()
        if is_past_grace_period(trial_ends_at, grace_days, current)
    ]

    removed = 0
    for tenant_id in to_remove:
        try:
            await delete_tenant(session, tenant_id)
            removed += 1
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Trial sweep could not remove tenant {tenant_id}: {e}")

    logger.info(f"Trial sweep: {removed}/{len(to_remove)} tenants removed (grace {grace_days}d)")
    return removed, to_remove


async def remove_my_expired_trial(
    session: AsyncSession,
    user_id: str,
    grace_days: int,
    now: Optional[datetime] = None,
) -> tuple[bool, Optional[str]]:
    """
    Remove the caller's own tenant when its free trial is past grace.

    Returns (removed, message); the message explains why nothing was removed.
    """
    result = await session.execute(
        select(UserRole.tenant_id)
        .where(
            UserRole.user_id == user_id,
            UserRole.role == AppRole.TENANT_OWNER.value,
            UserRole.tenant_id.is_not(None),
        )
        .limit(1)
    )
    tenant_id = result.scalar_one_or_none()
    if tenant_id is None:
        return False, "No tenant"

    result = await session.execute(
        select(TenantSubscription).where(TenantSubscription.tenant_id == tenant_id).limit(1)
    )
    subscription = result.scalar_one_or_none()
    if subscription is None or subscription.plan != PLAN_FREE:
        return False, "Not a free trial tenant"
    if subscription.trial_ends_at is None:
        return False, None
    if not is_past_grace_period(subscription.trial_ends_at, grace_days, now):
        return False, "Still in grace period"

    await delete_tenant(session, tenant_id)
    logger.info(f"User {user_id} removed expired trial tenant {tenant_id}")
    return True, None
