"""
Authentication for service-to-service calls.

- X-Admin-Secret: the web app's backend (Edge Functions) calling on behalf
  of an already authenticated user.
- X-Internal-Secret: Cloud Scheduler and operators hitting /internal routes.

The BRy webhook is public; it carries no credentials and only ever causes
a fresh read of provider state.
"""
import logging
import secrets as secrets_module
from typing import Optional

from fastapi import HTTPException, Request, Depends, Header

from app.config import get_settings, Settings

logger = logging.getLogger(__name__)


class AuthenticationError(HTTPException):
    """Custom authentication error."""
    def __init__(self, message: str, code: str = "AUTH_ERROR"):
        super().__init__(
            status_code=401,
            detail={"code": code, "message": message}
        )


class AuthorizationError(HTTPException):
    """Custom authorization error."""
    def __init__(self, message: str, code: str = "FORBIDDEN"):
        super().__init__(
            status_code=403,
            detail={"code": code, "message": message}
        )


class AuthNotConfiguredError(HTTPException):
    """Shared secret missing from configuration; every call is rejected."""
    def __init__(self, message: str, code: str = "AUTH_NOT_CONFIGURED"):
        super().__init__(
            status_code=503,
            detail={"code": code, "message": message}
        )


def get_client_ip(request: Request) -> str:
    """
    Extract client IP address, handling proxies and Cloud Run.
    """
    # Cloud Run / load balancer headers
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # First IP is the original client
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"


async def verify_admin_secret(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> bool:
    """
    Verify admin API secret from X-Admin-Secret header.
    Used for Edge Function -> Cloud Run communication.
    """
    admin_secret = request.headers.get("X-Admin-Secret")

    if not admin_secret:
        raise AuthenticationError(
            "Admin secret required",
            "MISSING_ADMIN_SECRET"
        )

    if not settings.admin_api_secret:
        logger.error("ADMIN_API_SECRET not configured")
        raise AuthNotConfiguredError(
            "Admin authentication not configured",
            "ADMIN_NOT_CONFIGURED"
        )

    # Constant-time comparison
    if not secrets_module.compare_digest(admin_secret, settings.admin_api_secret):
        raise AuthenticationError(
            "Invalid admin secret",
            "INVALID_ADMIN_SECRET"
        )

    return True


async def verify_internal_secret(
    x_internal_secret: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> bool:
    """Verify the X-Internal-Secret header of scheduler/operator calls."""
    if not settings.internal_api_secret:
        if settings.environment == "development" and settings.debug:
            logger.warning("INTERNAL_API_SECRET not configured, allowing internal call (development)")
            return True
        logger.error("INTERNAL_API_SECRET not configured")
        raise AuthNotConfiguredError("Internal authentication not configured", "INTERNAL_NOT_CONFIGURED")

    if not x_internal_secret:
        logger.warning("Internal endpoint called without X-Internal-Secret header")
        raise AuthenticationError("Internal secret required", "MISSING_INTERNAL_SECRET")

    if not secrets_module.compare_digest(x_internal_secret, settings.internal_api_secret):
        logger.warning("Internal secret mismatch")
        raise AuthorizationError("Invalid internal secret", "INVALID_INTERNAL_SECRET")

    return True
