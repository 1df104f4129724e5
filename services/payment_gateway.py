"""
Payment gateway contract shared by the Cashfree, Razorpay and UPI Gateway adapters
"""

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import httpx

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """Gateway call failed or returned an unusable response"""

    def __init__(self, message: str, gateway: Optional[str] = None, status_code: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.gateway = gateway
        self.status_code = status_code
        self.details = details or {}


@dataclass
class CustomerDetails:
    customer_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def phone_or_default(self) -> str:
        # gateways reject empty phone numbers
        return self.phone or '9999999999'


@dataclass
class GatewayOrder:
    gateway: str
    gateway_order_id: str
    reference: str
    amount: float
    payment_url: Optional[str] = None
    payment_session_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'gateway': self.gateway,
            'gateway_order_id': self.gateway_order_id,
            'reference': self.reference,
            'amount': self.amount,
            'payment_url': self.payment_url,
            'payment_session_id': self.payment_session_id,
        }


@dataclass
class PaymentVerification:
    success: bool
    gateway: str
    status: str = 'unknown'
    payment_id: Optional[str] = None
    amount: Optional[float] = None
    payment_method: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    gateway: str
    reference: Optional[str]
    success: bool
    status: str
    payment_id: Optional[str] = None
    amount: Optional[float] = None
    gateway_order_id: Optional[str] = None
    payment_method: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


# Statuses that mean the payment definitively did not go through
FAILURE_STATUSES = frozenset({'failed', 'failure', 'user_dropped', 'cancelled', 'expired'})


def lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {str(k).lower(): v for k, v in headers.items()}


def hmac_sha256(secret: str, message: bytes) -> bytes:
    return hmac.new(secret.encode('utf-8'), message, hashlib.sha256).digest()


def to_amount(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ Unparseable payment amount {value!r}")
        return None


class PaymentGateway(ABC):
    """Order creation, callback verification, status polling and webhook parsing for one gateway"""

    name: str = ''
    # False when inbound webhooks carry no signature and must be confirmed by a status fetch
    signed_webhooks: bool = True

    def __init__(self, timeout: float = 20.0, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self._get_client().request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise PaymentGatewayError(f"{self.name} request timed out", self.name) from e
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"{self.name} connection error: {e}", self.name) from e

    def _json(self, response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            raise PaymentGatewayError(
                f"Invalid JSON from {self.name}: {response.text[:200]}", self.name, response.status_code
            )
        return data if isinstance(data, dict) else {'data': data}

    @abstractmethod
    def is_available(self) -> bool: ...

    @abstractmethod
    async def create_order(self, amount: float, customer: CustomerDetails, return_url: str, reference: str,
                           notify_url: Optional[str] = None, note: Optional[str] = None) -> GatewayOrder: ...

    @abstractmethod
    async def verify(self, callback_payload: Dict[str, Any]) -> PaymentVerification: ...

    @abstractmethod
    async def fetch_payment_status(self, reference: str, created_at: Optional[datetime] = None) -> PaymentVerification: ...

    def status_reference(self, reference: str, gateway_order_id: Optional[str] = None) -> Optional[str]:
        """Identifier this gateway's status API is queried with"""
        return reference

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        return False

    @abstractmethod
    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent: ...
