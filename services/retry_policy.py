"""
Provisioning retry policy
Structured adapter error codes decide first; vendor-message substrings are the fallback
for errors that arrive without a usable code.
"""

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional, Tuple

from config import ProvisioningConfig
from services.provider_base import ErrorCode

logger = logging.getLogger(__name__)

# Prefix written by the batch runner when it gives up; such orders wait for an admin
MANUAL_REVIEW_PREFIX = 'MANUAL REVIEW: '

RETRYABLE_CODES: FrozenSet[ErrorCode] = frozenset({
    ErrorCode.RATE_LIMITED,
    ErrorCode.IP_CONFLICT,
    ErrorCode.WEAK_PASSWORD,
    ErrorCode.TIMEOUT,
    ErrorCode.UNAVAILABLE,
})

DEFAULT_RETRYABLE_SUBSTRINGS: Tuple[str, ...] = (
    'rate limit',
    'timeout',
    'timed out',
    'password strength should not be less than 100',
    'the following ip(s) are used by another vps',
    'service temporarily unavailable',
    'server is busy',
)


@dataclass(frozen=True)
class BatchProvisionConfig:
    """Per-invocation settings for the batch retry runner"""
    batch_size: int = 5
    max_retries: int = 3
    retry_delay_seconds: float = 5.0
    inter_order_delay_seconds: float = 2.0
    max_processing_seconds: float = 540.0
    retryable_substrings: Tuple[str, ...] = DEFAULT_RETRYABLE_SUBSTRINGS
    retryable_codes: FrozenSet[ErrorCode] = field(default=RETRYABLE_CODES)

    @classmethod
    def from_settings(cls, settings: ProvisioningConfig) -> 'BatchProvisionConfig':
        substrings = tuple(settings.retryable_substrings) or DEFAULT_RETRYABLE_SUBSTRINGS
        return cls(
            batch_size=settings.batch_size,
            max_retries=settings.max_retries,
            retry_delay_seconds=settings.retry_delay_seconds,
            inter_order_delay_seconds=settings.inter_order_delay_seconds,
            max_processing_seconds=settings.max_processing_seconds,
            retryable_substrings=substrings,
        )


def _coerce_code(code) -> Optional[ErrorCode]:
    if code is None or isinstance(code, ErrorCode):
        return code
    try:
        return ErrorCode(str(code))
    except ValueError:
        return None


def is_retryable(
    message: Optional[str],
    code=None,
    retryable_codes: Iterable[ErrorCode] = RETRYABLE_CODES,
    retryable_substrings: Iterable[str] = DEFAULT_RETRYABLE_SUBSTRINGS,
) -> bool:
    """Decide whether a provisioning failure is worth another attempt"""
    text = (message or '').strip()
    if text.startswith(MANUAL_REVIEW_PREFIX):
        return False

    error_code = _coerce_code(code)
    if error_code is not None and error_code != ErrorCode.UNKNOWN:
        return error_code in set(retryable_codes)

    lowered = text.lower()
    matched = any(pattern.lower() in lowered for pattern in retryable_substrings)
    if matched:
        logger.debug(f"🔁 RETRY POLICY: '{text[:80]}' matched a retryable substring")
    return matched


def classify_error(message: Optional[str], code, config: BatchProvisionConfig) -> bool:
    return is_retryable(message, code, config.retryable_codes, config.retryable_substrings)


def manual_review_message(message: Optional[str]) -> str:
    text = message or 'Unknown provisioning error'
    if text.startswith(MANUAL_REVIEW_PREFIX):
        return text
    return f"{MANUAL_REVIEW_PREFIX}{text}"
