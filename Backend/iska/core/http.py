from typing import AsyncIterator

import httpx
from fastapi import Depends

from .config import Settings, get_settings


async def get_http_client(settings: Settings = Depends(get_settings)) -> AsyncIterator[httpx.AsyncClient]:
    """Outbound client for provider and email APIs, one per request."""
    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
        yield client
