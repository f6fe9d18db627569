"""
Request Context Resolution Module

Resolves who is calling an endpoint from the Authorization header.

AUTH METHODS:
    - User access tokens issued by the hosted auth platform: HS256 JWTs signed
      with SUPABASE_JWT_SECRET, audience "authenticated". `sub` is the user id,
      `email` the account email used for PayPal claim matching.
    - Service role: the bearer equals SUPABASE_SERVICE_ROLE_KEY. Only the
      scheduled trial sweep accepts it.
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Request

from .config import Settings, get_settings
from .errors import Unauthorized

logger = logging.getLogger(__name__)


@dataclass
class RequestContext:
    """Authenticated caller identity."""
    user_id: str
    email: Optional[str] = None
    auth_method: str = "jwt"

    @property
    def normalized_email(self) -> str:
        return (self.email or "").strip().lower()


def extract_bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    token = auth_header[7:].strip()
    return token or None


def verify_access_token(token: str, settings: Settings) -> dict:
    """
    Verify a user access token and return its claims.

    Raises:
        Unauthorized: token is malformed, expired, signed with another key
            or has no `sub` claim.
    """
    if not settings.supabase_jwt_secret:
        logger.error("SUPABASE_JWT_SECRET is not set; cannot verify access tokens")
        raise Unauthorized("Unauthorized")

    try:
        claims = jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=["HS256"],
            audience=settings.supabase_jwt_audience,
            options={"verify_exp": True},
        )
    except jwt.ExpiredSignatureError as e:
        logger.warning("Token verification failed: token has expired")
        raise Unauthorized("Unauthorized") from e
    except jwt.InvalidTokenError as e:
        logger.warning(f"Token verification failed: {e}")
        raise Unauthorized("Unauthorized") from e

    if not claims.get("sub"):
        logger.warning("Token verified but missing 'sub' claim")
        raise Unauthorized("Unauthorized")
    return claims


def resolve_request_context(request: Request, settings: Settings) -> RequestContext:
    token = extract_bearer_token(request)
    if not token:
        raise Unauthorized("Unauthorized")

    claims = verify_access_token(token, settings)
    ctx = RequestContext(user_id=str(claims["sub"]), email=claims.get("email"))
    logger.debug(f"Auth via JWT: {ctx.user_id}")
    return ctx


async def get_request_context(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> RequestContext:
    """FastAPI dependency: the authenticated caller, or 401."""
    return resolve_request_context(request, settings)


async def require_service_role(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> None:
    """FastAPI dependency: the caller must present the service-role key."""
    token = extract_bearer_token(request)
    if not token or not settings.service_role_key:
        raise Unauthorized("Unauthorized")
    if not hmac.compare_digest(token.encode("utf-8"), settings.service_role_key.encode("utf-8")):
        logger.warning("Service-role call rejected: bearer does not match")
        raise Unauthorized("Unauthorized")
