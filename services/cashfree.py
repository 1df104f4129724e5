"""
Cashfree Payment Gateway service
PG orders API (x-api-version 2023-08-01) plus signed webhooks
"""

import base64
import hmac
import json
import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import httpx

from config import PaymentConfig, get_config
from services.payment_gateway import (
    CustomerDetails, GatewayOrder, PaymentGateway, PaymentGatewayError, PaymentVerification, WebhookEvent,
    hmac_sha256, lower_headers, to_amount
)
from utils.environment import get_webhook_url

logger = logging.getLogger(__name__)

API_VERSION = '2023-08-01'


class CashfreeService(PaymentGateway):
    name = 'cashfree'

    def __init__(self, settings: Optional[PaymentConfig] = None, client: Optional[httpx.AsyncClient] = None):
        settings = settings or get_config().payment
        super().__init__(settings.request_timeout_seconds, client)
        self.client_id = settings.cashfree_client_id
        self.client_secret = settings.cashfree_client_secret
        self.base_url = settings.cashfree_base_url.rstrip('/')

        if self.is_available():
            logger.info("🔧 Cashfree service initialized")
        else:
            logger.info("🔧 Cashfree service initialized (missing credentials)")

    def is_available(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def _headers(self) -> Dict[str, str]:
        return {
            'accept': 'application/json',
            'content-type': 'application/json',
            'x-api-version': API_VERSION,
            'x-client-id': self.client_id or '',
            'x-client-secret': self.client_secret or '',
        }

    async def create_order(self, amount: float, customer: CustomerDetails, return_url: str, reference: str,
                           notify_url: Optional[str] = None, note: Optional[str] = None) -> GatewayOrder:
        if not self.is_available():
            raise PaymentGatewayError("Cashfree is not configured", self.name)

        body: Dict[str, Any] = {
            'order_id': reference,
            'order_amount': round(float(amount), 2),
            'order_currency': 'INR',
            'customer_details': {
                'customer_id': str(customer.customer_id),
                'customer_name': customer.name,
                'customer_email': customer.email,
                'customer_phone': customer.phone_or_default,
            },
            'order_meta': {'return_url': return_url, 'notify_url': notify_url or get_webhook_url(self.name)},
        }
        if note:
            body['order_note'] = note[:200]

        logger.info(f"💳 CASHFREE: Creating order {reference} for ₹{body['order_amount']}")
        response = await self._send('POST', f"{self.base_url}/orders", headers=self._headers(), json=body)
        data = self._json(response)
        if response.status_code >= 400 or not data.get('payment_session_id'):
            message = data.get('message') or f"Cashfree order creation failed ({response.status_code})"
            logger.error(f"❌ CASHFREE: {message}")
            raise PaymentGatewayError(message, self.name, response.status_code, data)

        return GatewayOrder(
            gateway=self.name,
            gateway_order_id=str(data.get('order_id') or reference),
            reference=reference,
            amount=body['order_amount'],
            payment_url=data.get('payment_link'),
            payment_session_id=data.get('payment_session_id'),
            raw=data,
        )

    async def fetch_payment_status(self, reference: str, created_at: Optional[datetime] = None) -> PaymentVerification:
        response = await self._send('GET', f"{self.base_url}/orders/{reference}/payments", headers=self._headers())
        if response.status_code == 404:
            return PaymentVerification(success=False, gateway=self.name, status='not_found')
        if response.status_code >= 400:
            raise PaymentGatewayError(f"Cashfree status check failed ({response.status_code})", self.name, response.status_code)

        try:
            payments = response.json()
        except ValueError:
            raise PaymentGatewayError("Invalid JSON from Cashfree payments API", self.name, response.status_code)
        if not isinstance(payments, list):
            payments = payments.get('data', []) if isinstance(payments, dict) else []

        for payment in payments:
            if payment.get('payment_status') == 'SUCCESS':
                return PaymentVerification(
                    success=True,
                    gateway=self.name,
                    status='SUCCESS',
                    payment_id=str(payment.get('cf_payment_id')),
                    amount=to_amount(payment.get('payment_amount')),
                    payment_method=payment.get('payment_group'),
                    raw=payment,
                )

        latest = payments[0].get('payment_status', 'PENDING') if payments else 'NO_PAYMENT'
        return PaymentVerification(success=False, gateway=self.name, status=latest, raw={'payments': payments})

    async def verify(self, callback_payload: Dict[str, Any]) -> PaymentVerification:
        """Client callbacks carry only the order id; the payments API is the source of truth"""
        reference = callback_payload.get('order_id') or callback_payload.get('reference')
        if not reference:
            raise PaymentGatewayError("Cashfree callback missing order_id", self.name)
        return await self.fetch_payment_status(str(reference))

    def verify_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> bool:
        headers = lower_headers(headers)
        signature = headers.get('x-webhook-signature')
        timestamp = headers.get('x-webhook-timestamp')
        if not signature or not timestamp or not self.client_secret:
            logger.warning("🚫 CASHFREE WEBHOOK: Missing signature, timestamp or secret")
            return False
        expected = base64.b64encode(
            hmac_sha256(self.client_secret, timestamp.encode('utf-8') + raw_body)
        ).decode('utf-8')
        return hmac.compare_digest(expected, signature)

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        try:
            payload = json.loads(raw_body.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PaymentGatewayError(f"Invalid Cashfree webhook body: {e}", self.name)

        data = payload.get('data') or {}
        order = data.get('order') or {}
        payment = data.get('payment') or {}
        status = str(payment.get('payment_status') or '').upper()
        event_type = payload.get('type', '')
        return WebhookEvent(
            gateway=self.name,
            reference=order.get('order_id'),
            success=status == 'SUCCESS' or event_type == 'PAYMENT_SUCCESS_WEBHOOK',
            status=status.lower() or event_type.lower(),
            payment_id=str(payment['cf_payment_id']) if payment.get('cf_payment_id') else None,
            amount=to_amount(payment.get('payment_amount', order.get('order_amount'))),
            gateway_order_id=order.get('order_id'),
            payment_method=payment.get('payment_group'),
            raw=payload,
        )
