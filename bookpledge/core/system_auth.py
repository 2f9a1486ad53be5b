"""
System-caller authentication for scheduled/system-only endpoints.

The reaper trigger accepts exactly two secrets: the service-role key and the
cron secret. End-user credentials (JWTs) never match either and are rejected.

``is_system_token`` is a pure function so it can be tested without HTTP:
- comparison is constant-time (``hmac.compare_digest``) against both
  candidates, so neither the matching secret nor its length leaks via timing
- an empty token, or no configured secrets at all, is always rejected
"""
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from bookpledge.core.config import settings
from bookpledge.core.errors import AuthError, PermissionError

logger = logging.getLogger("bookpledge")


@dataclass
class SystemCaller:
    """Authenticated system identity (never an end user)."""
    credential: str  # "service_role" | "cron_secret"


def extract_bearer(header_value: Optional[str]) -> str:
    if not header_value:
        return ""
    value = header_value.strip()
    if value[:7].lower() == "bearer ":
        value = value[7:]
    return value.strip()


def _matches(token: str, secret: Optional[str]) -> bool:
    if not secret:
        return False
    return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))


def match_system_token(token: str, service_role_key: Optional[str], cron_secret: Optional[str]) -> Optional[str]:
    """Return which credential matched ("service_role" / "cron_secret") or None."""
    if not token:
        return None
    if not service_role_key and not cron_secret:
        logger.error("system_auth.no_secrets_configured")
        return None
    # Both comparisons always run
    service_ok = _matches(token, service_role_key)
    cron_ok = _matches(token, cron_secret)
    if service_ok:
        return "service_role"
    if cron_ok:
        return "cron_secret"
    return None


def is_system_token(token: str, service_role_key: Optional[str], cron_secret: Optional[str]) -> bool:
    return match_system_token(token, service_role_key, cron_secret) is not None


def require_system_caller(request: Request) -> SystemCaller:
    """FastAPI dependency guarding system-only routes.

    Raises:
        AuthError (401): no Authorization header
        PermissionError (403): credential is not a system secret
    """
    header = request.headers.get("Authorization")
    if not header:
        logger.warning("system_auth.rejected", extra={"reason": "missing_header", "path": request.url.path})
        raise AuthError("Authorization header required")

    matched = match_system_token(extract_bearer(header), settings.SERVICE_ROLE_KEY, settings.CRON_SECRET)
    if matched is None:
        logger.warning("system_auth.rejected", extra={"reason": "invalid_credentials", "path": request.url.path})
        raise PermissionError("Forbidden: this endpoint is restricted to system use only")

    return SystemCaller(credential=matched)
