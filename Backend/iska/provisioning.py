"""
Tenant provisioning from a successful payment.

A payment event (Stripe checkout session / payment intent, PayPal capture)
becomes a tenant, its subscription, its deployment config and a claim-ledger
row, keyed by the provider's identifier (the idempotency key).

SAGA:
    tenant -> subscription (pivot) -> deployment_config -> claim

    A failure at or before the pivot undoes the completed steps in reverse
    order; a compensation that fails is logged and the step's error still
    propagates. Steps after the pivot are get-or-create, so a redelivered
    event resumes where the last attempt stopped: the tenant is found again
    through its unique `provisioning_key`.

IDEMPOTENCY:
    The ledger row is looked up first. Unique constraints on the ledger key,
    `tenants.provisioning_key` and `tenant_subscriptions.tenant_id` turn a
    concurrent duplicate insert into "fetch the existing row".
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .core.errors import InternalFailure
from .models import (
    DeploymentConfig,
    DeploymentType,
    OnboardingStatus,
    PaypalTenantClaim,
    StripeCheckoutTenant,
    Tenant,
    TenantStatus,
    TenantSubscription,
)
from .tenants import delete_tenant

logger = logging.getLogger(__name__)

SLUG_SUFFIX_ATTEMPTS = 10
TENANT_INSERT_ATTEMPTS = 3
DEFAULT_BUSINESS_NAME = "My Business"


class ProvisioningFailed(InternalFailure):
    pass


class SlugExhausted(ProvisioningFailed):
    pass


@dataclass(frozen=True)
class ClaimLedger:
    """Where a provider records payment id -> tenant, and how its slugs look."""
    provider: str
    model: type
    key_attr: str
    slug_prefix: str
    slug_key_length: int

    @property
    def key_column(self):
        return getattr(self.model, self.key_attr)


STRIPE_LEDGER = ClaimLedger(
    provider="stripe",
    model=StripeCheckoutTenant,
    key_attr="stripe_session_id",
    slug_prefix="biz-",
    slug_key_length=22,
)
PAYPAL_LEDGER = ClaimLedger(
    provider="paypal",
    model=PaypalTenantClaim,
    key_attr="paypal_capture_id",
    slug_prefix="biz-paypal-",
    slug_key_length=16,
)


@dataclass
class ProvisioningRequest:
    idempotency_key: str
    customer_email: Optional[str]
    plan: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None


@dataclass
class ProvisioningState:
    ledger: ClaimLedger
    request: ProvisioningRequest
    tenant_id: Optional[uuid.UUID] = None
    tenant_created: bool = False
    completed: list[str] = field(default_factory=list)


StepFn = Callable[[AsyncSession, ProvisioningState], Awaitable[None]]


@dataclass
class SagaStep:
    name: str
    action: StepFn
    compensation: Optional[StepFn] = None
    pivot: bool = False


# ────────────────────────────────────────────────────────────────
# Naming
# ────────────────────────────────────────────────────────────────

def base_slug(ledger: ClaimLedger, idempotency_key: str) -> str:
    """
    Deterministic slug for a payment id.

    Examples:
        stripe, "cs_test_a1B2c3"  -> "biz-cs_test_a1B2c3"
        paypal, "CAP-123.456"     -> "biz-paypal-CAP123456"
    """
    sanitized = re.sub(r"\W", "", idempotency_key)
    return f"{ledger.slug_prefix}{sanitized[:ledger.slug_key_length]}"


def slug_candidates(base: str) -> list[str]:
    return [base] + [f"{base}-{n}" for n in range(SLUG_SUFFIX_ATTEMPTS)]


async def find_free_slug(session: AsyncSession, base: str) -> str:
    """First candidate not used by any tenant; SlugExhausted after the last suffix."""
    for candidate in slug_candidates(base):
        taken = await session.scalar(select(Tenant.id).where(Tenant.slug == candidate).limit(1))
        if taken is None:
            return candidate
    logger.error(f"No free slug for base '{base}' after {SLUG_SUFFIX_ATTEMPTS} suffixes")
    raise SlugExhausted("Failed to create tenant")


def business_name_for(email: Optional[str]) -> str:
    local_part = (email or "").split("@")[0].strip()
    if not local_part:
        return DEFAULT_BUSINESS_NAME
    return f"{local_part}'s Business"


# ────────────────────────────────────────────────────────────────
# Lookups
# ────────────────────────────────────────────────────────────────

async def find_claimed_tenant(
    session: AsyncSession,
    ledger: ClaimLedger,
    idempotency_key: str,
) -> Optional[uuid.UUID]:
    return await session.scalar(
        select(ledger.model.tenant_id).where(ledger.key_column == idempotency_key).limit(1)
    )


async def _tenant_by_provisioning_key(session: AsyncSession, key: str) -> Optional[uuid.UUID]:
    return await session.scalar(select(Tenant.id).where(Tenant.provisioning_key == key).limit(1))


async def _subscription_for(session: AsyncSession, tenant_id: uuid.UUID) -> Optional[uuid.UUID]:
    return await session.scalar(
        select(TenantSubscription.id).where(TenantSubscription.tenant_id == tenant_id).limit(1)
    )


async def _deployment_config_for(session: AsyncSession, tenant_id: uuid.UUID) -> Optional[uuid.UUID]:
    return await session.scalar(
        select(DeploymentConfig.id).where(DeploymentConfig.tenant_id == tenant_id).limit(1)
    )


def _provisioning_key(state: ProvisioningState) -> str:
    return f"{state.ledger.provider}:{state.request.idempotency_key}"


# ────────────────────────────────────────────────────────────────
# Steps
# ────────────────────────────────────────────────────────────────

async def _ensure_tenant(session: AsyncSession, state: ProvisioningState) -> None:
    key = _provisioning_key(state)
    existing = await _tenant_by_provisioning_key(session, key)
    if existing is not None:
        logger.info(f"Resuming provisioning of tenant {existing} for {key}")
        state.tenant_id = existing
        return

    request = state.request
    for _ in range(TENANT_INSERT_ATTEMPTS):
        slug = await find_free_slug(session, base_slug(state.ledger, request.idempotency_key))
        tenant = Tenant(
            name=business_name_for(request.customer_email),
            slug=slug,
            business_type="salon",
            deployment_type=DeploymentType.HOSTED.value,
            status=TenantStatus.ACTIVE.value,
            subscription_plan=request.plan,
            onboarding_status=OnboardingStatus.PENDING.value,
            provisioning_key=key,
        )
        session.add(tenant)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            # Either a concurrent delivery created it first or the slug was taken meanwhile.
            existing = await _tenant_by_provisioning_key(session, key)
            if existing is not None:
                state.tenant_id = existing
                return
            logger.warning(f"Slug '{slug}' was taken concurrently; probing again")
            continue
        state.tenant_id = tenant.id
        state.tenant_created = True
        logger.info(f"Created tenant {tenant.id} ({slug}) for {key}")
        return
    raise SlugExhausted("Failed to create tenant")


async def _drop_tenant(session: AsyncSession, state: ProvisioningState) -> None:
    # A resumed tenant belongs to an earlier delivery.
    if state.tenant_created and state.tenant_id is not None:
        await delete_tenant(session, state.tenant_id)


async def _ensure_subscription(session: AsyncSession, state: ProvisioningState) -> None:
    if await _subscription_for(session, state.tenant_id) is not None:
        return
    request = state.request
    session.add(
        TenantSubscription(
            tenant_id=state.tenant_id,
            plan=request.plan,
            status="active",
            stripe_customer_id=request.stripe_customer_id,
            stripe_subscription_id=request.stripe_subscription_id,
        )
    )
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        if await _subscription_for(session, state.tenant_id) is None:
            raise


async def _ensure_deployment_config(session: AsyncSession, state: ProvisioningState) -> None:
    if await _deployment_config_for(session, state.tenant_id) is not None:
        return
    session.add(DeploymentConfig(tenant_id=state.tenant_id, deployment_type=DeploymentType.HOSTED.value))
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        if await _deployment_config_for(session, state.tenant_id) is None:
            raise


async def _ensure_claim(session: AsyncSession, state: ProvisioningState) -> None:
    ledger = state.ledger
    request = state.request
    claimed = await find_claimed_tenant(session, ledger, request.idempotency_key)
    if claimed is not None:
        state.tenant_id = claimed
        return
    session.add(
        ledger.model(
            **{ledger.key_attr: request.idempotency_key},
            tenant_id=state.tenant_id,
            customer_email=request.customer_email,
            plan_type=request.plan,
        )
    )
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        claimed = await find_claimed_tenant(session, ledger, request.idempotency_key)
        if claimed is None:
            raise
        state.tenant_id = claimed


PROVISIONING_STEPS = (
    SagaStep("tenant", _ensure_tenant, compensation=_drop_tenant),
    SagaStep("subscription", _ensure_subscription, pivot=True),
    SagaStep("deployment_config", _ensure_deployment_config),
    SagaStep("claim", _ensure_claim),
)


# ────────────────────────────────────────────────────────────────
# Orchestration
# ────────────────────────────────────────────────────────────────

async def _compensate(session: AsyncSession, state: ProvisioningState, steps: list[SagaStep]) -> None:
    for step in reversed(steps):
        if step.compensation is None:
            continue
        try:
            await step.compensation(session, state)
            logger.info(f"Compensated provisioning step '{step.name}' for {_provisioning_key(state)}")
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Compensation of step '{step.name}' failed for {_provisioning_key(state)}: {e}")


async def run_saga(session: AsyncSession, state: ProvisioningState, steps=PROVISIONING_STEPS) -> None:
    done: list[SagaStep] = []
    past_pivot = False
    for step in steps:
        try:
            await step.action(session, state)
        except Exception as e:
            await session.rollback()
            if past_pivot:
                logger.error(
                    f"Provisioning step '{step.name}' failed after the commit point for "
                    f"{_provisioning_key(state)}; a retry will resume: {e}"
                )
            else:
                logger.error(f"Provisioning step '{step.name}' failed for {_provisioning_key(state)}: {e}")
                await _compensate(session, state, done + [step])
            raise
        done.append(step)
        state.completed.append(step.name)
        if step.pivot:
            past_pivot = True


async def provision_tenant(
    session: AsyncSession,
    ledger: ClaimLedger,
    request: ProvisioningRequest,
) -> uuid.UUID:
    """
    Return the tenant for a payment id, creating it on first delivery.

    Raises:
        ProvisioningFailed: a step failed; rows before the pivot were removed.
    """
    existing = await find_claimed_tenant(session, ledger, request.idempotency_key)
    if existing is not None:
        logger.info(f"{ledger.provider} payment {request.idempotency_key} already provisioned: {existing}")
        return existing

    state = ProvisioningState(ledger=ledger, request=request)
    try:
        await run_saga(session, state)
    except ProvisioningFailed:
        raise
    except SQLAlchemyError as e:
        raise ProvisioningFailed("Failed to create tenant") from e
    return state.tenant_id
