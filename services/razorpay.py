"""
Razorpay Payment Gateway service
Orders API with checkout-callback signature verification and signed webhooks
"""

import hmac
import json
import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import httpx

from config import PaymentConfig, get_config
from services.payment_gateway import (
    CustomerDetails, GatewayOrder, PaymentGateway, PaymentGatewayError, PaymentVerification, WebhookEvent,
    hmac_sha256, lower_headers
)

logger = logging.getLogger(__name__)

RAZORPAY_BASE_URL = 'https://api.razorpay.com/v1'


def checkout_signature(key_secret: str, order_id: str, payment_id: str) -> str:
    """hex HMAC-SHA256 of '{order_id}|{payment_id}'"""
    return hmac_sha256(key_secret, f"{order_id}|{payment_id}".encode('utf-8')).hex()


class RazorpayService(PaymentGateway):
    name = 'razorpay'

    def __init__(self, settings: Optional[PaymentConfig] = None, client: Optional[httpx.AsyncClient] = None,
                 base_url: str = RAZORPAY_BASE_URL):
        settings = settings or get_config().payment
        super().__init__(settings.request_timeout_seconds, client)
        self.key_id = settings.razorpay_key_id
        self.key_secret = settings.razorpay_key_secret
        self.webhook_secret = settings.razorpay_webhook_secret
        self.base_url = base_url.rstrip('/')

    def is_available(self) -> bool:
        return bool(self.key_id and self.key_secret)

    @property
    def _auth(self):
        return (self.key_id or '', self.key_secret or '')

    async def create_order(self, amount: float, customer: CustomerDetails, return_url: str, reference: str,
                           notify_url: Optional[str] = None, note: Optional[str] = None) -> GatewayOrder:
        if not self.is_available():
            raise PaymentGatewayError("Razorpay is not configured", self.name)

        amount_paise = int(round(float(amount) * 100))
        body = {
            'amount': amount_paise,
            'currency': 'INR',
            'receipt': reference[:40],
            'notes': {
                'reference': reference,
                'customer_id': str(customer.customer_id),
                'customer_email': customer.email or '',
                'description': (note or '')[:250],
            },
        }
        logger.info(f"💳 RAZORPAY: Creating order for {reference} (₹{amount_paise / 100:.2f})")
        response = await self._send('POST', f"{self.base_url}/orders", auth=self._auth, json=body)
        data = self._json(response)
        if response.status_code >= 400 or not data.get('id'):
            error = data.get('error') or {}
            message = error.get('description') if isinstance(error, dict) else str(error)
            message = message or f"Razorpay order creation failed ({response.status_code})"
            logger.error(f"❌ RAZORPAY: {message}")
            raise PaymentGatewayError(message, self.name, response.status_code, data)

        # Razorpay checkout is opened client-side with the order id and key id
        return GatewayOrder(
            gateway=self.name,
            gateway_order_id=data['id'],
            reference=reference,
            amount=amount_paise / 100,
            payment_url=None,
            raw={**data, 'key_id': self.key_id, 'callback_url': return_url},
        )

    def verify_checkout_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not (self.key_secret and order_id and payment_id and signature):
            return False
        expected = checkout_signature(self.key_secret, order_id, payment_id)
        return hmac.compare_digest(expected, signature)

    async def verify(self, callback_payload: Dict[str, Any]) -> PaymentVerification:
        order_id = callback_payload.get('razorpay_order_id')
        payment_id = callback_payload.get('razorpay_payment_id')
        signature = callback_payload.get('razorpay_signature')
        if not self.verify_checkout_signature(order_id, payment_id, signature):
            logger.warning(f"🚫 RAZORPAY: Checkout signature mismatch for order {order_id}")
            return PaymentVerification(success=False, gateway=self.name, status='invalid_signature')
        return PaymentVerification(
            success=True,
            gateway=self.name,
            status='captured',
            payment_id=payment_id,
            raw={'razorpay_order_id': order_id},
        )

    def status_reference(self, reference: str, gateway_order_id: Optional[str] = None) -> Optional[str]:
        # only Razorpay's own order ids can be looked up
        if gateway_order_id and gateway_order_id.startswith('order_'):
            return gateway_order_id
        if reference.startswith('order_'):
            return reference
        return None

    async def fetch_payment_status(self, reference: str, created_at: Optional[datetime] = None) -> PaymentVerification:
        response = await self._send('GET', f"{self.base_url}/orders/{reference}", auth=self._auth)
        if response.status_code == 404:
            return PaymentVerification(success=False, gateway=self.name, status='not_found')
        if response.status_code >= 400:
            raise PaymentGatewayError(f"Razorpay status check failed ({response.status_code})", self.name, response.status_code)
        order = self._json(response)
        if order.get('status') != 'paid':
            return PaymentVerification(success=False, gateway=self.name, status=order.get('status', 'unknown'), raw=order)

        payments_response = await self._send('GET', f"{self.base_url}/orders/{reference}/payments", auth=self._auth)
        payments = self._json(payments_response).get('items', [])
        captured = next((p for p in payments if p.get('status') == 'captured'), None)
        if captured is None:
            return PaymentVerification(success=False, gateway=self.name, status='paid_without_capture', raw=order)
        return PaymentVerification(
            success=True,
            gateway=self.name,
            status='captured',
            payment_id=captured.get('id'),
            amount=(captured.get('amount') or 0) / 100,
            payment_method=captured.get('method'),
            raw=captured,
        )

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        signature = lower_headers(headers).get('x-razorpay-signature')
        if not signature or not self.webhook_secret:
            logger.warning("🚫 RAZORPAY WEBHOOK: Missing signature or webhook secret")
            return False
        expected = hmac_sha256(self.webhook_secret, raw_body).hex()
        return hmac.compare_digest(expected, signature)

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        try:
            payload = json.loads(raw_body.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PaymentGatewayError(f"Invalid Razorpay webhook body: {e}", self.name)

        event_type = payload.get('event', '')
        entity = ((payload.get('payload') or {}).get('payment') or {}).get('entity') or {}
        order_entity = ((payload.get('payload') or {}).get('order') or {}).get('entity') or {}
        order_id = entity.get('order_id') or order_entity.get('id')
        amount = entity.get('amount', order_entity.get('amount_paid'))

        if event_type in ('payment.captured', 'order.paid'):
            status = 'captured'
        elif event_type == 'payment.failed':
            status = 'failed'
        else:
            status = entity.get('status') or event_type
        return WebhookEvent(
            gateway=self.name,
            reference=order_id,
            success=status == 'captured',
            status=status,
            payment_id=entity.get('id'),
            amount=amount / 100 if isinstance(amount, (int, float)) else None,
            gateway_order_id=order_id,
            payment_method=entity.get('method'),
            raw=payload,
        )
