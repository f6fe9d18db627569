import logging

import httpx

from .core.config import Settings

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


async def send_email(
    http: httpx.AsyncClient,
    settings: Settings,
    to_email: str,
    subject: str,
    html: str,
) -> bool:
    """
    Send one transactional email through Resend.

    Returns True when Resend accepted it, False when Resend is not configured
    and the message was only logged. Non-2xx responses raise httpx.HTTPStatusError.
    """
    if not settings.resend_api_key:
        logger.info(f"Resend is not configured; email not sent. To: {to_email}, Subject: {subject}")
        return False

    payload = {
        "from": settings.resend_from,
        "to": [to_email],
        "subject": subject,
        "html": html,
    }
    headers = {
        "Authorization": f"Bearer {settings.resend_api_key}",
        "Content-Type": "application/json",
    }

    response = await http.post(RESEND_API_URL, json=payload, headers=headers)
    if response.is_error:
        logger.error(f"Resend rejected email to {to_email}: {response.status_code} {response.text}")
    response.raise_for_status()
    return True
