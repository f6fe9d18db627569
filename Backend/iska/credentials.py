"""
Payment-provider credential resolution.

Secrets are looked up per tenant in `site_settings` first. A tenant's own
credentials are used only when every key the provider needs is present;
otherwise the platform-wide values from configuration apply. When neither
source is complete the call fails with NotConfigured (HTTP 503).
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import Settings
from .core.errors import NotConfigured
from .models import SiteSetting

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderKeys:
    """The site_settings keys a provider needs and the Settings fields backing them."""
    provider: str
    setting_keys: tuple[str, ...]
    env_names: tuple[str, ...]


STRIPE_KEYS = ProviderKeys(
    provider="Stripe",
    setting_keys=("stripe_secret_key",),
    env_names=("STRIPE_SECRET_KEY",),
)
PAYPAL_KEYS = ProviderKeys(
    provider="PayPal",
    setting_keys=("paypal_client_id", "paypal_client_secret"),
    env_names=("PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET"),
)
MPESA_KEYS = ProviderKeys(
    provider="M-Pesa",
    setting_keys=("mpesa_consumer_key", "mpesa_consumer_secret", "mpesa_shortcode", "mpesa_passkey"),
    env_names=("MPESA_CONSUMER_KEY", "MPESA_CONSUMER_SECRET", "MPESA_SHORTCODE", "MPESA_PASSKEY"),
)


def _parse_tenant_id(tenant_id: Union[str, uuid.UUID, None]) -> Optional[uuid.UUID]:
    if tenant_id is None or isinstance(tenant_id, uuid.UUID):
        return tenant_id
    try:
        return uuid.UUID(str(tenant_id))
    except ValueError:
        return None


async def load_tenant_settings(
    session: AsyncSession,
    tenant_id: uuid.UUID,
    keys: tuple[str, ...],
) -> dict[str, str]:
    """Non-empty site_settings values for `keys`, keyed by setting name."""
    result = await session.execute(
        select(SiteSetting.key, SiteSetting.value).where(
            SiteSetting.tenant_id == tenant_id,
            SiteSetting.key.in_(keys),
        )
    )
    return {key: value for key, value in result.all() if value}


async def resolve_credentials(
    session: AsyncSession,
    settings: Settings,
    tenant_id: Union[str, uuid.UUID, None],
    keys: ProviderKeys,
) -> dict[str, str]:
    """
    Resolve provider secrets for a tenant, falling back to platform defaults.

    Returns:
        Mapping of setting key -> value containing every key in `keys`.

    Raises:
        NotConfigured: neither the tenant nor the platform has a full set.
    """
    parsed_tenant_id = _parse_tenant_id(tenant_id)
    if parsed_tenant_id is not None:
        values = await load_tenant_settings(session, parsed_tenant_id, keys.setting_keys)
        if all(values.get(key) for key in keys.setting_keys):
            logger.debug(f"Using tenant {parsed_tenant_id} {keys.provider} credentials")
            return values

    # Settings fields share their names with the site_settings keys.
    defaults = {key: getattr(settings, key, "") for key in keys.setting_keys}
    if all(defaults.values()):
        return defaults

    if tenant_id:
        raise NotConfigured(f"Tenant {keys.provider} is not configured")
    raise NotConfigured(f"{' and '.join(keys.env_names)} must be set")
