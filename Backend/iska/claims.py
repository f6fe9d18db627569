"""
Checkout-to-tenant claims.

A tenant provisioned from an anonymous payment is linked to the signed-in
user who paid for it: by checkout session id for Stripe, by payer email for
PayPal (PayPal events carry no session correlation). Claiming marks the
ledger row and grants the `tenant_owner` role.

`claimed_by_user_id` is write-once. A row owned by someone else is never
reassigned (409), and repeating a claim as the owner returns the same tenant
without adding a second role row.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.errors import Conflict, InputInvalid, InternalFailure, NotFound
from .core.request_context import RequestContext
from .models import AppRole, PaypalTenantClaim, StripeCheckoutTenant, UserRole

logger = logging.getLogger(__name__)

STRIPE_NOT_READY = "Session not found or not yet processed. Try again in a moment."
PAYPAL_NOT_READY = (
    "No unclaimed PayPal payment found for your email. "
    "Complete payment first or try again in a moment."
)


async def _owner_role_for(session: AsyncSession, user_id: str, tenant_id: uuid.UUID) -> Optional[uuid.UUID]:
    return await session.scalar(
        select(UserRole.id).where(
            UserRole.user_id == user_id,
            UserRole.tenant_id == tenant_id,
            UserRole.role == AppRole.TENANT_OWNER.value,
        )
    )


async def grant_tenant_owner(session: AsyncSession, user_id: str, tenant_id: uuid.UUID) -> bool:
    """
    Give `user_id` the tenant_owner role on `tenant_id` unless they have it.

    Returns True when a row was inserted.
    """
    if await _owner_role_for(session, user_id, tenant_id) is not None:
        return False

    session.add(UserRole(user_id=user_id, role=AppRole.TENANT_OWNER.value, tenant_id=tenant_id))
    try:
        await session.commit()
    except IntegrityError:
        # Concurrent claim inserted the same role.
        await session.rollback()
        return False
    logger.info(f"Granted tenant_owner on {tenant_id} to {user_id}")
    return True


async def _mark_claimed(session: AsyncSession, model, row_id: uuid.UUID, user_id: str) -> str:
    """
    Set claimed_by_user_id if still unset; return whoever owns the row afterwards.
    """
    try:
        await session.execute(
            update(model)
            .where(model.id == row_id, model.claimed_by_user_id.is_(None))
            .values(claimed_by_user_id=user_id)
        )
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Could not mark {model.__tablename__} row {row_id} claimed: {e}")
        raise InternalFailure("Could not claim tenant") from e

    return await session.scalar(select(model.claimed_by_user_id).where(model.id == row_id))


async def _finish_claim(session: AsyncSession, model, row_id, tenant_id, ctx: RequestContext) -> uuid.UUID:
    owner = await _mark_claimed(session, model, row_id, ctx.user_id)
    if owner != ctx.user_id:
        logger.warning(f"User {ctx.user_id} tried to claim tenant {tenant_id} owned by {owner}")
        raise Conflict("This payment has already been claimed by another account")

    try:
        await grant_tenant_owner(session, ctx.user_id, tenant_id)
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Could not grant tenant_owner on {tenant_id} to {ctx.user_id}: {e}")
        raise InternalFailure("Could not claim tenant") from e
    return tenant_id


async def claim_stripe_tenant(session: AsyncSession, ctx: RequestContext, session_id: str) -> uuid.UUID:
    result = await session.execute(
        select(StripeCheckoutTenant.id, StripeCheckoutTenant.tenant_id, StripeCheckoutTenant.claimed_by_user_id)
        .where(StripeCheckoutTenant.stripe_session_id == session_id)
        .limit(1)
    )
    row = result.first()
    if row is None:
        raise NotFound(STRIPE_NOT_READY)

    row_id, tenant_id, claimed_by = row
    if claimed_by is not None and claimed_by != ctx.user_id:
        logger.warning(f"Stripe session {session_id} already claimed by another user")
        raise Conflict("This payment has already been claimed by another account")
    return await _finish_claim(session, StripeCheckoutTenant, row_id, tenant_id, ctx)


async def claim_paypal_tenant(session: AsyncSession, ctx: RequestContext) -> uuid.UUID:
    """
    Claim the caller's most recent unclaimed PayPal payment.

    Matching is by the account email (lowercased). When nothing is unclaimed
    but the caller already owns a claim, that tenant is returned again.
    """
    email = ctx.normalized_email
    if not email:
        raise InputInvalid("No email on account; cannot match PayPal payment")

    result = await session.execute(
        select(PaypalTenantClaim.id, PaypalTenantClaim.tenant_id)
        .where(
            PaypalTenantClaim.customer_email == email,
            PaypalTenantClaim.claimed_by_user_id.is_(None),
        )
        .order_by(PaypalTenantClaim.created_at.desc())
        .limit(1)
    )
    row = result.first()
    if row is not None:
        return await _finish_claim(session, PaypalTenantClaim, row[0], row[1], ctx)

    already_mine = await session.scalar(
        select(PaypalTenantClaim.tenant_id)
        .where(
            PaypalTenantClaim.customer_email == email,
            PaypalTenantClaim.claimed_by_user_id == ctx.user_id,
        )
        .order_by(PaypalTenantClaim.created_at.desc())
        .limit(1)
    )
    if already_mine is not None:
        await grant_tenant_owner(session, ctx.user_id, already_mine)
        return already_mine
    raise NotFound(PAYPAL_NOT_READY)
