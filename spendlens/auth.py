"""
Authenticated user context.

Services are bound to a user id taken from a verified Supabase access token;
anything that touches user rows calls ``require_user`` before its first read.
"""

import logging
from typing import Optional

import jwt

from .errors import Unauthorized

logger = logging.getLogger(__name__)


def require_user(user_id: Optional[str]) -> str:
    """Return the user id, or raise ``Unauthorized`` when there is none"""
    if not user_id:
        raise Unauthorized("User not authenticated", status_code=401)
    return user_id


def user_id_from_token(access_token: str, secret: str, audience: str = "authenticated") -> str:
    """
    Verify a Supabase access token and return its subject

    Args:
        access_token: HS256 JWT issued by Supabase auth
        secret: Project JWT secret
        audience: Expected ``aud`` claim

    Returns:
        The authenticated user id (``sub`` claim)
    """
    if not access_token:
        raise Unauthorized("Missing access token", status_code=401)
    if not secret:
        raise Unauthorized("Token verification is not configured", status_code=401)

    try:
        claims = jwt.decode(access_token, secret, algorithms=["HS256"], audience=audience)
    except jwt.ExpiredSignatureError as exc:
        logger.warning("Rejected expired access token")
        raise Unauthorized("Access token expired", status_code=401, original_error=exc) from exc
    except jwt.InvalidTokenError as exc:
        logger.warning(f"Rejected invalid access token: {exc}")
        raise Unauthorized("Invalid access token", status_code=401, original_error=exc) from exc

    return require_user(claims.get("sub"))
