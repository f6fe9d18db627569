"""
Tenant endpoints: claiming a paid-for tenant, custom-domain routing and
free-trial cleanup.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .claims import claim_paypal_tenant, claim_stripe_tenant
from .core.config import Settings, get_settings
from .core.db import get_session
from .core.errors import InputInvalid, InternalFailure, NotFound
from .core.request_context import RequestContext, get_request_context, require_service_role
from .schemas import ClaimPaypalTenantRequest, ClaimStripeTenantRequest, TenantByDomainRequest
from .tenants import find_slug_by_custom_domain
from .trial import remove_my_expired_trial, sweep_expired_trials

logger = logging.getLogger(__name__)

router = APIRouter()


# === Claims ===

@router.post("/claim-stripe-tenant")
async def claim_stripe_tenant_route(
    body: ClaimStripeTenantRequest,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    tenant_id = await claim_stripe_tenant(session, ctx, body.session_id)
    return {"tenant_id": str(tenant_id)}


@router.post("/claim-paypal-tenant")
async def claim_paypal_tenant_route(
    body: Optional[ClaimPaypalTenantRequest] = Body(default=None),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    tenant_id = await claim_paypal_tenant(session, ctx)
    return {"tenant_id": str(tenant_id)}


# === Custom domains ===

async def _slug_for_host(session: AsyncSession, host: str) -> dict:
    host = (host or "").strip()
    if not host:
        raise InputInvalid("Missing host")
    slug = await find_slug_by_custom_domain(session, host)
    if not slug:
        raise NotFound("Not found")
    return {"slug": slug}


@router.get("/get-tenant-by-domain")
async def get_tenant_by_domain(
    host: str = Query(default=""),
    session: AsyncSession = Depends(get_session),
):
    return await _slug_for_host(session, host)


@router.post("/get-tenant-by-domain")
async def post_tenant_by_domain(
    body: TenantByDomainRequest,
    session: AsyncSession = Depends(get_session),
):
    return await _slug_for_host(session, body.host)


# === Trial cleanup ===

@router.post("/remove-expired-trial-data", dependencies=[Depends(require_service_role)])
async def remove_expired_trial_data(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    removed, tenant_ids = await sweep_expired_trials(session, settings.trial_grace_days)
    return {"removed": removed, "tenantIds": [str(tenant_id) for tenant_id in tenant_ids]}


@router.post("/remove-my-expired-trial")
async def remove_my_expired_trial_route(
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
):
    try:
        removed, message = await remove_my_expired_trial(
            session, ctx.user_id, settings.self_service_trial_grace_days
        )
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Could not remove expired trial for {ctx.user_id}: {e}")
        raise InternalFailure("Failed to remove trial data") from e

    response = {"removed": removed}
    if message:
        response["message"] = message
    return response
