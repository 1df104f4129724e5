"""
Server credential helpers
Password/hostname generation for new servers and Fernet encryption for stored passwords
"""

import base64
import hashlib
import logging
import re
import secrets
import string
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

PASSWORD_LENGTH = 12
PASSWORD_SPECIALS = '@#&$'
_WINDOWS_PATTERN = re.compile(r'windows|rdp|vps', re.IGNORECASE)

WINDOWS_OS = 'Windows 2022 64'
LINUX_OS = 'Ubuntu 22'

# Encrypted values are tagged so plaintext rows written before encryption was enabled still read back
ENCRYPTED_PREFIX = 'enc:'


def is_windows_product(product_name: Optional[str]) -> bool:
    return bool(product_name and _WINDOWS_PATTERN.search(product_name))


def determine_os(product_name: Optional[str]) -> str:
    """Operating system implied by the product name"""
    return WINDOWS_OS if is_windows_product(product_name) else LINUX_OS


def default_username(product_name: Optional[str]) -> str:
    return 'administrator' if is_windows_product(product_name) else 'root'


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Random password with at least one upper, lower, digit and special character"""
    alphabet = string.ascii_letters + string.digits + PASSWORD_SPECIALS
    required = [
        secrets.choice(string.ascii_uppercase),
        secrets.choice(string.ascii_lowercase),
        secrets.choice(string.digits),
        secrets.choice(PASSWORD_SPECIALS),
    ]
    rest = [secrets.choice(alphabet) for _ in range(max(length - len(required), 0))]
    chars = required + rest
    secrets.SystemRandom().shuffle(chars)
    return ''.join(chars)


def parse_memory_gb(memory: Optional[str]) -> int:
    """'8GB' -> 8, '4096MB' -> 4 (rounded up), unknown -> 0"""
    if not memory:
        return 0
    match = re.search(r'(\d+(?:\.\d+)?)\s*(gb|mb|g|m)?', str(memory), re.IGNORECASE)
    if not match:
        return 0
    value = float(match.group(1))
    unit = (match.group(2) or 'gb').lower()
    if unit.startswith('m'):
        return int(-(-value // 1024))
    return int(-(-value // 1))


def generate_hostname(product_name: Optional[str], memory: Optional[str]) -> str:
    """'{clean-name}-{mem}gb-{rand6}.com'"""
    clean = re.sub(r'[^a-z0-9]+', '-', (product_name or 'server').lower()).strip('-')[:20] or 'server'
    suffix = ''.join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(6))
    return f"{clean}-{parse_memory_gb(memory)}gb-{suffix}.com"


class CredentialVault:
    """Fernet encryption for server passwords at rest"""

    def __init__(self, secret: Optional[str]):
        self._cipher: Optional[Fernet] = None
        if secret:
            key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())
            self._cipher = Fernet(key)

    @property
    def enabled(self) -> bool:
        return self._cipher is not None

    def encrypt(self, value: Optional[str]) -> Optional[str]:
        if not value or self._cipher is None or value.startswith(ENCRYPTED_PREFIX):
            return value
        return ENCRYPTED_PREFIX + self._cipher.encrypt(value.encode()).decode()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        if not value or not value.startswith(ENCRYPTED_PREFIX):
            return value
        if self._cipher is None:
            logger.error("❌ Encrypted credential found but CREDENTIALS_ENCRYPTION_KEY is not configured")
            return None
        try:
            return self._cipher.decrypt(value[len(ENCRYPTED_PREFIX):].encode()).decode()
        except InvalidToken:
            logger.error("❌ Failed to decrypt stored credential - key mismatch")
            return None
