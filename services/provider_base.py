"""
Provider adapter contract

Every hosting backend (Hostycare, SmartVPS, manual fulfillment) is wrapped in an adapter that
hides its request/response shapes and status vocabulary behind the same operation set, so the
orchestrator only ever branches on provider identity to pick the adapter instance.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from models.order_models import CatalogItem, Order

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    RATE_LIMITED = 'rate_limited'
    IP_CONFLICT = 'ip_conflict'
    WEAK_PASSWORD = 'weak_password'
    TIMEOUT = 'timeout'
    UNAVAILABLE = 'unavailable'
    INVALID_CONFIGURATION = 'invalid_configuration'
    AUTH_FAILED = 'auth_failed'
    NOT_FOUND = 'not_found'
    MANUAL_REQUIRED = 'manual_required'
    UNKNOWN = 'unknown'


class ProviderError(Exception):
    """Provider call failed; code is the adapter's classification of the vendor response"""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.UNKNOWN, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


# Vendor phrases each adapter recognizes when no HTTP status tells the story
VENDOR_MESSAGE_CODES = (
    ('password strength should not be less than 100', ErrorCode.WEAK_PASSWORD),
    ('the following ip(s) are used by another vps', ErrorCode.IP_CONFLICT),
    ('rate limit', ErrorCode.RATE_LIMITED),
    ('too many requests', ErrorCode.RATE_LIMITED),
    ('server is busy', ErrorCode.UNAVAILABLE),
    ('service temporarily unavailable', ErrorCode.UNAVAILABLE),
    ('timed out', ErrorCode.TIMEOUT),
    ('timeout', ErrorCode.TIMEOUT),
    ('invalid product', ErrorCode.INVALID_CONFIGURATION),
    ('product not found', ErrorCode.INVALID_CONFIGURATION),
    ('no ip available', ErrorCode.UNAVAILABLE),
    ('authentication failed', ErrorCode.AUTH_FAILED),
    ('invalid token', ErrorCode.AUTH_FAILED),
)


def code_for_vendor_message(message: Optional[str]) -> ErrorCode:
    text = (message or '').lower()
    for phrase, code in VENDOR_MESSAGE_CODES:
        if phrase in text:
            return code
    return ErrorCode.UNKNOWN


def code_for_http_status(status_code: int) -> ErrorCode:
    if status_code == 429:
        return ErrorCode.RATE_LIMITED
    if status_code in (401, 403):
        return ErrorCode.AUTH_FAILED
    if status_code == 404:
        return ErrorCode.NOT_FOUND
    if status_code in (408, 504):
        return ErrorCode.TIMEOUT
    if status_code >= 500:
        return ErrorCode.UNAVAILABLE
    if status_code in (400, 422):
        return ErrorCode.INVALID_CONFIGURATION
    return ErrorCode.UNKNOWN


# ====================================================================
# STATUS NORMALIZATION
# ====================================================================

class NormalizedStatus(str, Enum):
    ACTIVE = 'active'
    SUSPENDED = 'suspended'
    PROVISIONING = 'provisioning'
    FAILED = 'failed'
    TERMINATED = 'terminated'
    UNRECOGNIZED = 'unrecognized'


STATUS_TOKENS: Dict[str, NormalizedStatus] = {
    'online': NormalizedStatus.ACTIVE,
    'running': NormalizedStatus.ACTIVE,
    'active': NormalizedStatus.ACTIVE,
    '1': NormalizedStatus.ACTIVE,
    'true': NormalizedStatus.ACTIVE,
    'offline': NormalizedStatus.SUSPENDED,
    'stopped': NormalizedStatus.SUSPENDED,
    'suspended': NormalizedStatus.SUSPENDED,
    '0': NormalizedStatus.SUSPENDED,
    'false': NormalizedStatus.SUSPENDED,
    'installing': NormalizedStatus.PROVISIONING,
    'provisioning': NormalizedStatus.PROVISIONING,
    'building': NormalizedStatus.PROVISIONING,
    'failed': NormalizedStatus.FAILED,
    'error': NormalizedStatus.FAILED,
    'terminated': NormalizedStatus.TERMINATED,
    'deleted': NormalizedStatus.TERMINATED,
}


def normalize_status(token: Any, source: str = 'provider') -> NormalizedStatus:
    """
    Map a backend status token (string, number, boolean or {'status': ...} object) onto the
    normalized vocabulary. Anything not in the table is UNRECOGNIZED and logged; it is never guessed.
    """
    if isinstance(token, dict):
        token = token.get('status', token.get('state'))
    if isinstance(token, bool):
        key = 'true' if token else 'false'
    elif isinstance(token, (int, float)):
        key = str(int(token)) if float(token).is_integer() else str(token)
    elif token is None:
        key = ''
    else:
        key = str(token).strip().lower()

    normalized = STATUS_TOKENS.get(key)
    if normalized is None:
        if key:
            logger.warning(f"⚠️ STATUS: Unrecognized {source} status token {token!r} - left unmapped")
        return NormalizedStatus.UNRECOGNIZED
    return normalized


# ====================================================================
# RESULT TYPES
# ====================================================================

@dataclass
class ProvisionResult:
    success: bool
    service_id: Optional[str] = None
    ip_address: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    os: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        return bool(self.success and self.ip_address and self.username and self.password)

    @classmethod
    def failure(cls, error: str, code: ErrorCode = ErrorCode.UNKNOWN, raw: Optional[Dict[str, Any]] = None) -> 'ProvisionResult':
        return cls(success=False, error=error, error_code=code, raw=raw or {})


@dataclass
class ProviderStatus:
    machine_status: NormalizedStatus = NormalizedStatus.UNRECOGNIZED
    power_status: NormalizedStatus = NormalizedStatus.UNRECOGNIZED
    ip_address: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    os: Optional[str] = None
    expiry_date: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class ProviderAdapter(ABC):
    """Uniform operation set over one hosting backend"""

    name: str = ''
    supports_direct_actions: bool = True

    @abstractmethod
    def is_available(self) -> bool: ...

    def has_provisioning_config(self, order: Order, catalog_item: Optional[CatalogItem] = None) -> bool:
        """False when an order cannot be attempted until an admin configures its product"""
        return True

    @abstractmethod
    async def provision(self, order: Order, catalog_item: Optional[CatalogItem] = None) -> ProvisionResult: ...

    @abstractmethod
    async def renew(self, service_id: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def start(self, service_id: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def stop(self, service_id: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def reboot(self, service_id: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def format(self, service_id: str, os_name: Optional[str] = None) -> Dict[str, Any]: ...

    @abstractmethod
    async def change_password(self, service_id: str, password: str) -> Dict[str, Any]: ...

    @abstractmethod
    async def get_status(self, service_id: str) -> ProviderStatus: ...

    async def suspend(self, service_id: str) -> Dict[str, Any]:
        return await self.stop(service_id)

    async def terminate(self, service_id: str) -> Dict[str, Any]:
        raise ProviderError(f"{self.name} does not support termination via API", ErrorCode.MANUAL_REQUIRED)

    async def close(self) -> None:
        """Release HTTP resources"""
        return None
