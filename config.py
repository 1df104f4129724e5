"""
Centralized configuration for the VPS storefront core
Environment-driven settings grouped into sections, loaded once per process
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}={raw!r}, using default {default}")
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid number for {name}={raw!r}, using default {default}")
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    return [item.strip().lower() for item in raw.split(',') if item.strip()]


@dataclass
class DatabaseConfig:
    url: Optional[str] = None
    min_connections: int = 2
    max_connections: int = 10
    strict_errors: bool = False


@dataclass
class PaymentConfig:
    gateway_order: List[str] = field(default_factory=lambda: ['cashfree', 'razorpay', 'upigateway'])
    cashfree_client_id: Optional[str] = None
    cashfree_client_secret: Optional[str] = None
    cashfree_base_url: str = 'https://api.cashfree.com/pg'
    razorpay_key_id: Optional[str] = None
    razorpay_key_secret: Optional[str] = None
    razorpay_webhook_secret: Optional[str] = None
    upigateway_api_key: Optional[str] = None
    upigateway_base_url: str = 'https://api.ekqr.in/api'
    request_timeout_seconds: float = 20.0


@dataclass
class ProviderConfig:
    hostycare_username: Optional[str] = None
    hostycare_api_key: Optional[str] = None
    hostycare_base_url: str = 'https://www.hostycare.com/manage/modules/addons/ProductsReseller/api/index.php'
    hostycare_default_product_id: Optional[str] = None
    smartvps_username: Optional[str] = None
    smartvps_password: Optional[str] = None
    smartvps_base_url: str = 'https://smartvps.online/'
    request_timeout_seconds: float = 25.0


@dataclass
class ProvisioningConfig:
    batch_size: int = 5
    max_retries: int = 3
    retry_delay_seconds: float = 5.0
    inter_order_delay_seconds: float = 2.0
    max_processing_seconds: float = 540.0
    retryable_substrings: List[str] = field(default_factory=list)
    status_sync_limit: int = 10
    status_sync_delay_seconds: float = 0.8


@dataclass
class RenewalConfig:
    renewal_days: int = 30
    renewal_window_days: int = 30
    expired_grace_days: int = 7
    still_pending_minutes: int = 30
    stale_after_minutes: int = 60
    abandoned_order_days: int = 7


@dataclass
class NotificationConfig:
    telegram_bot_token: Optional[str] = None
    admin_group_id: Optional[str] = None


@dataclass
class SecurityConfig:
    admin_api_key: Optional[str] = None
    cron_secret: Optional[str] = None
    credentials_encryption_key: Optional[str] = None


@dataclass
class SchedulerConfig:
    enabled: bool = True
    batch_interval_minutes: int = 5
    recovery_interval_minutes: int = 15
    stale_cleanup_interval_minutes: int = 60
    status_sync_interval_minutes: int = 10


@dataclass
class Config:
    environment: str = 'development'
    public_base_url: Optional[str] = None
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    payment: PaymentConfig = field(default_factory=PaymentConfig)
    providers: ProviderConfig = field(default_factory=ProviderConfig)
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)
    renewal: RenewalConfig = field(default_factory=RenewalConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    @classmethod
    def from_env(cls) -> 'Config':
        """Build configuration from environment variables"""
        return cls(
            environment=os.getenv('ENVIRONMENT', 'development').lower(),
            public_base_url=os.getenv('PUBLIC_BASE_URL'),
            database=DatabaseConfig(
                url=os.getenv('DATABASE_URL'),
                min_connections=_env_int('DB_POOL_MIN', 2),
                max_connections=_env_int('DB_POOL_MAX', 10),
                strict_errors=_env_bool('DB_STRICT_ERRORS', False),
            ),
            payment=PaymentConfig(
                gateway_order=_env_list('PAYMENT_GATEWAY_ORDER', ['cashfree', 'razorpay', 'upigateway']),
                cashfree_client_id=os.getenv('CASHFREE_CLIENT_ID'),
                cashfree_client_secret=os.getenv('CASHFREE_CLIENT_SECRET'),
                cashfree_base_url=os.getenv('CASHFREE_BASE_URL', 'https://api.cashfree.com/pg'),
                razorpay_key_id=os.getenv('RAZORPAY_KEY_ID'),
                razorpay_key_secret=os.getenv('RAZORPAY_KEY_SECRET'),
                razorpay_webhook_secret=os.getenv('RAZORPAY_WEBHOOK_SECRET'),
                upigateway_api_key=os.getenv('UPIGATEWAY_API_KEY'),
                upigateway_base_url=os.getenv('UPIGATEWAY_BASE_URL', 'https://api.ekqr.in/api'),
                request_timeout_seconds=_env_float('PAYMENT_TIMEOUT_SECONDS', 20.0),
            ),
            providers=ProviderConfig(
                hostycare_username=os.getenv('HOSTYCARE_USERNAME'),
                hostycare_api_key=os.getenv('HOSTYCARE_API_KEY'),
                hostycare_base_url=os.getenv(
                    'HOSTYCARE_BASE_URL',
                    'https://www.hostycare.com/manage/modules/addons/ProductsReseller/api/index.php'
                ),
                hostycare_default_product_id=os.getenv('HOSTYCARE_DEFAULT_PRODUCT_ID'),
                smartvps_username=os.getenv('SMARTVPS_USERNAME'),
                smartvps_password=os.getenv('SMARTVPS_PASSWORD'),
                smartvps_base_url=os.getenv('SMARTVPS_BASE_URL', 'https://smartvps.online/'),
                request_timeout_seconds=_env_float('PROVIDER_TIMEOUT_SECONDS', 25.0),
            ),
            provisioning=ProvisioningConfig(
                batch_size=_env_int('PROVISION_BATCH_SIZE', 5),
                max_retries=_env_int('PROVISION_MAX_RETRIES', 3),
                retry_delay_seconds=_env_float('PROVISION_RETRY_DELAY_SECONDS', 5.0),
                inter_order_delay_seconds=_env_float('PROVISION_ORDER_DELAY_SECONDS', 2.0),
                max_processing_seconds=_env_float('PROVISION_MAX_PROCESSING_SECONDS', 540.0),
                retryable_substrings=_env_list('PROVISION_RETRYABLE_ERRORS', []),
                status_sync_limit=_env_int('STATUS_SYNC_LIMIT', 10),
                status_sync_delay_seconds=_env_float('STATUS_SYNC_DELAY_SECONDS', 0.8),
            ),
            renewal=RenewalConfig(
                renewal_days=_env_int('RENEWAL_DAYS', 30),
                renewal_window_days=_env_int('RENEWAL_WINDOW_DAYS', 30),
                expired_grace_days=_env_int('RENEWAL_EXPIRED_GRACE_DAYS', 7),
                still_pending_minutes=_env_int('RENEWAL_STILL_PENDING_MINUTES', 30),
                stale_after_minutes=_env_int('RENEWAL_STALE_AFTER_MINUTES', 60),
                abandoned_order_days=_env_int('ABANDONED_ORDER_DAYS', 7),
            ),
            notifications=NotificationConfig(
                telegram_bot_token=os.getenv('TELEGRAM_BOT_TOKEN'),
                admin_group_id=os.getenv('TELEGRAM_NOTIFY_GROUP_ID'),
            ),
            security=SecurityConfig(
                admin_api_key=os.getenv('ADMIN_API_KEY'),
                cron_secret=os.getenv('CRON_SECRET'),
                credentials_encryption_key=os.getenv('CREDENTIALS_ENCRYPTION_KEY'),
            ),
            scheduler=SchedulerConfig(
                enabled=_env_bool('SCHEDULER_ENABLED', True),
                batch_interval_minutes=_env_int('SCHEDULE_BATCH_MINUTES', 5),
                recovery_interval_minutes=_env_int('SCHEDULE_RECOVERY_MINUTES', 15),
                stale_cleanup_interval_minutes=_env_int('SCHEDULE_STALE_CLEANUP_MINUTES', 60),
                status_sync_interval_minutes=_env_int('SCHEDULE_STATUS_SYNC_MINUTES', 10),
            ),
        )

    def validate(self) -> Dict[str, Any]:
        """Check configuration completeness; issues and warnings are logged at startup"""
        issues: List[str] = []
        warnings: List[str] = []

        if not self.database.url:
            issues.append("DATABASE_URL is not set")

        payment = self.payment
        configured_gateways = [
            name for name, ok in (
                ('cashfree', bool(payment.cashfree_client_id and payment.cashfree_client_secret)),
                ('razorpay', bool(payment.razorpay_key_id and payment.razorpay_key_secret)),
                ('upigateway', bool(payment.upigateway_api_key)),
            ) if ok
        ]
        if not configured_gateways:
            issues.append("No payment gateway credentials configured")
        if payment.razorpay_key_id and not payment.razorpay_webhook_secret:
            warnings.append("RAZORPAY_WEBHOOK_SECRET missing - Razorpay webhooks will be rejected")
        unknown = [name for name in payment.gateway_order if name not in ('cashfree', 'razorpay', 'upigateway')]
        if unknown:
            warnings.append(f"Unknown gateways in PAYMENT_GATEWAY_ORDER: {', '.join(unknown)}")

        providers = self.providers
        if not (providers.hostycare_username and providers.hostycare_api_key):
            warnings.append("Hostycare credentials missing - Hostycare orders will fail provisioning")
        if not (providers.smartvps_username and providers.smartvps_password):
            warnings.append("SmartVPS credentials missing - SmartVPS orders will fail provisioning")

        if not self.security.admin_api_key:
            warnings.append("ADMIN_API_KEY not set - admin endpoints are disabled")
        if not self.security.credentials_encryption_key:
            warnings.append("CREDENTIALS_ENCRYPTION_KEY not set - server passwords stored unencrypted")
        if not self.notifications.telegram_bot_token:
            warnings.append("TELEGRAM_BOT_TOKEN not set - notifications only logged")

        if self.provisioning.batch_size <= 0:
            issues.append("PROVISION_BATCH_SIZE must be positive")
        if self.provisioning.max_retries <= 0:
            issues.append("PROVISION_MAX_RETRIES must be positive")

        return {
            'valid': not issues,
            'issues': issues,
            'warnings': warnings,
            'gateways': configured_gateways,
        }


_config: Optional[Config] = None


def get_config() -> Config:
    """Get the process-wide configuration (built on first use)"""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() re-reads the environment"""
    global _config
    _config = None
