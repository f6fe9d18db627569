"""
Tenant lookups and removal shared by the routing, provisioning and trial modules.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .models import TENANT_SCOPED_MODELS, Tenant, TenantStatus

logger = logging.getLogger(__name__)


async def delete_tenant(session: AsyncSession, tenant_id: uuid.UUID) -> None:
    """
    Hard-delete a tenant and every row scoped to it, then commit.

    Rows are removed child-first so the delete does not depend on the
    database enforcing ON DELETE CASCADE.
    """
    for model in TENANT_SCOPED_MODELS:
        await session.execute(delete(model).where(model.tenant_id == tenant_id))
    await session.execute(delete(Tenant).where(Tenant.id == tenant_id))
    await session.commit()
    logger.info(f"Deleted tenant {tenant_id} and its data")


async def find_slug_by_custom_domain(session: AsyncSession, host: str) -> Optional[str]:
    """Slug of the active tenant whose custom domain equals `host` (case-insensitive)."""
    normalized = host.strip().lower()
    if not normalized:
        return None
    result = await session.execute(
        select(Tenant.slug)
        .where(
            Tenant.custom_domain.is_not(None),
            func.lower(Tenant.custom_domain) == normalized,
            Tenant.status == TenantStatus.ACTIVE.value,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()
