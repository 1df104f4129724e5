"""
Request authentication for the storefront API

User routes trust the X-User-Id header set by the upstream auth layer; admin routes require
X-Admin-Key; scheduled job triggers accept either the admin key or X-Cron-Secret.
"""
import hmac
import logging
from typing import Optional

from fastapi import Header

from api.utils.errors import AuthenticationError, PermissionDeniedError
from config import get_config

logger = logging.getLogger(__name__)


def _matches(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode('utf-8'), expected.encode('utf-8'))


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise AuthenticationError("Missing user identity")
    return x_user_id.strip()


async def require_admin(x_admin_key: Optional[str] = Header(None)) -> str:
    expected = get_config().security.admin_api_key
    if not expected:
        logger.error("❌ ADMIN_API_KEY not configured - admin endpoints disabled")
        raise PermissionDeniedError("Admin API is disabled")
    if not _matches(x_admin_key, expected):
        logger.warning("🚫 Rejected admin request with invalid key")
        raise PermissionDeniedError("Invalid admin key")
    return 'admin'


async def require_admin_or_cron(
    x_admin_key: Optional[str] = Header(None),
    x_cron_secret: Optional[str] = Header(None),
) -> str:
    security = get_config().security
    if _matches(x_admin_key, security.admin_api_key):
        return 'admin'
    if _matches(x_cron_secret, security.cron_secret):
        return 'cron'
    logger.warning("🚫 Rejected job trigger without valid admin key or cron secret")
    raise PermissionDeniedError("Invalid admin key or cron secret")
