"""Environment detection and public URL helpers"""

import os
import logging

logger = logging.getLogger(__name__)


def get_public_domain() -> str:
    """
    Get the public domain the service is reachable on

    Returns:
        str: Domain (with port for local development)
    """
    environment = os.getenv('ENVIRONMENT', '').lower()

    production_domain = os.getenv('PRODUCTION_DOMAIN')
    if production_domain and environment != 'development':
        return production_domain

    if is_production_environment():
        logger.error("❌ CRITICAL: Production detected but PRODUCTION_DOMAIN not set - gateway callbacks will fail")
    return os.getenv('DEV_DOMAIN') or 'localhost:8000'


def get_public_base_url() -> str:
    """Base URL for redirects and callbacks; PUBLIC_BASE_URL wins when set"""
    explicit = os.getenv('PUBLIC_BASE_URL')
    if explicit:
        return explicit.rstrip('/')
    domain = get_public_domain()
    protocol = 'http' if domain.startswith('localhost') else 'https'
    return f"{protocol}://{domain}"


def get_webhook_url(endpoint: str) -> str:
    """
    Get the complete webhook URL for a specific endpoint

    Args:
        endpoint: The endpoint path (e.g., 'cashfree', 'razorpay', 'upigateway')
    """
    return f"{get_public_base_url()}/api/webhook/{endpoint}"


def is_production_environment() -> bool:
    """True when running in production"""
    environment = os.getenv('ENVIRONMENT', '').lower()
    if environment == 'development':
        return False
    if environment == 'production':
        return True
    return bool(os.getenv('PRODUCTION_DOMAIN'))
