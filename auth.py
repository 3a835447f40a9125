"""
Authentication dependencies.

The identity provider verifies users; this service only reads the user id
(and email) out of the token it issued.
"""

import logging
from typing import Optional
from fastapi import Header, Cookie

from auth_utils import decode_jwt
from config.settings import settings, is_local_environment
from utils.errors import unauthenticated

logger = logging.getLogger(__name__)

DEV_USER_HEADER = "X-Innerbloom-Demo-User"


# Dependency for protected routes
async def get_current_user(
    auth_token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None, alias="Authorization"),
    demo_user: Optional[str] = Header(None, alias=DEV_USER_HEADER),
) -> dict:
    """
    Dependency function to get current authenticated user.

    Authentication priority:
    1. Demo user header (development, test and local environments only)
    2. auth_token cookie
    3. Authorization header (Bearer token, scheme is case-insensitive)
    4. Raise unauthenticated (401) if none is usable
    """
    if demo_user and is_local_environment():
        return {"user_id": demo_user.strip(), "email": None}

    token = None
    if auth_token:
        token = auth_token
    elif authorization:
        scheme, _, credentials = authorization.strip().partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            token = credentials.strip()

    if not token:
        raise unauthenticated("Missing authentication token")

    if not settings.jwt_secret_key:
        logger.warning("JWT_SECRET_KEY is not set. Rejecting bearer authentication.")
        raise unauthenticated()

    payload = decode_jwt(token)
    if not payload:
        raise unauthenticated("Invalid or expired token")

    user_id = payload.get("sub")
    if not user_id:
        raise unauthenticated("Invalid token payload")

    return {
        "user_id": str(user_id),
        "email": payload.get("email"),
    }
