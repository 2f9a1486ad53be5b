"""
End-user authentication.

Validates the user's Bearer JWT (HS256, USER_JWT_SECRET) and extracts the
user id from the 'sub' claim. Outside production the X-User-Id header is
accepted for tests and local development.
"""
from fastapi import Header, Request
from typing import Optional
import jwt
import logging

from bookpledge.core.config import settings
from bookpledge.core.errors import AuthError

logger = logging.getLogger(__name__)


def verify_user_jwt(token: str, secret: Optional[str] = None, audience: Optional[str] = None) -> str:
    """
    Verify a user JWT and extract user_id.

    Args:
        token: JWT from Authorization header (Bearer {token})
        secret: Override signing secret (defaults to settings.USER_JWT_SECRET)
        audience: Override expected audience (defaults to settings.USER_JWT_AUDIENCE)

    Returns:
        user_id: The JWT's 'sub' claim

    Raises:
        AuthError: Invalid, expired or unverifiable token
    """
    key = secret or settings.USER_JWT_SECRET
    if not key:
        raise AuthError("User authentication is not configured")

    aud = audience if audience is not None else settings.USER_JWT_AUDIENCE
    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=["HS256"],
            audience=aud or None,
            options={"verify_signature": True, "verify_exp": True, "verify_aud": bool(aud)},
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise AuthError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Invalid token")
    return user_id


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Test/dev only: user ID"),
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header (non-production only)
    3. AuthError (401)
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return verify_user_jwt(auth_header[7:].strip())

    if x_user_id and settings.ENV.lower() != "production":
        return x_user_id

    raise AuthError("Missing Authorization (Bearer JWT) header")
