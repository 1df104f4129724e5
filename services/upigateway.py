"""
UPI Gateway (ekqr) service
Unsigned form-encoded webhooks; every notification is confirmed with check_order_status
"""

import logging
from datetime import datetime
from typing import Any, Dict, Mapping, Optional
from urllib.parse import parse_qs

import httpx

from config import PaymentConfig, get_config
from services.payment_gateway import (
    CustomerDetails, GatewayOrder, PaymentGateway, PaymentGatewayError, PaymentVerification, WebhookEvent,
    to_amount
)
from utils.timezone_utils import format_ist_date

logger = logging.getLogger(__name__)

# Amount difference tolerated between a fetched payment and the expected price (rupee rounding)
AMOUNT_TOLERANCE = 1.0


def amounts_match(expected: float, paid: Optional[float], tolerance: float = AMOUNT_TOLERANCE) -> bool:
    if paid is None:
        return False
    return abs(float(paid) - float(expected)) <= tolerance


class UpiGatewayService(PaymentGateway):
    name = 'upigateway'
    signed_webhooks = False

    def __init__(self, settings: Optional[PaymentConfig] = None, client: Optional[httpx.AsyncClient] = None):
        settings = settings or get_config().payment
        super().__init__(settings.request_timeout_seconds, client)
        self.api_key = settings.upigateway_api_key
        self.base_url = settings.upigateway_base_url.rstrip('/')

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def create_order(self, amount: float, customer: CustomerDetails, return_url: str, reference: str,
                           notify_url: Optional[str] = None, note: Optional[str] = None) -> GatewayOrder:
        if not self.is_available():
            raise PaymentGatewayError("UPI Gateway is not configured", self.name)

        body = {
            'key': self.api_key,
            'client_txn_id': reference,
            'amount': str(int(float(amount))),
            'p_info': (note or 'Server Plan')[:100],
            'customer_name': customer.name or 'Customer',
            'customer_email': customer.email or '',
            'customer_mobile': customer.phone_or_default,
            'redirect_url': return_url,
            'udf1': str(customer.customer_id),
            'udf2': reference,
            'udf3': 'server-plan',
        }
        logger.info(f"💳 UPIGATEWAY: Creating order {reference} for ₹{body['amount']}")
        response = await self._send('POST', f"{self.base_url}/create_order", json=body)
        data = self._json(response)
        if not data.get('status') or not isinstance(data.get('data'), dict):
            message = data.get('msg') or f"UPI Gateway order creation failed ({response.status_code})"
            logger.error(f"❌ UPIGATEWAY: {message}")
            raise PaymentGatewayError(message, self.name, response.status_code, data)

        details = data['data']
        return GatewayOrder(
            gateway=self.name,
            gateway_order_id=str(details.get('order_id')),
            reference=reference,
            amount=float(body['amount']),
            payment_url=details.get('payment_url'),
            raw=data,
        )

    async def fetch_payment_status(self, reference: str, created_at: Optional[datetime] = None) -> PaymentVerification:
        body = {
            'key': self.api_key,
            'client_txn_id': reference,
            'txn_date': format_ist_date(created_at),
        }
        response = await self._send('POST', f"{self.base_url}/check_order_status", json=body)
        data = self._json(response)
        details = data.get('data') if isinstance(data.get('data'), dict) else {}
        status = str(details.get('status') or 'unknown').lower()

        if data.get('status') and status == 'success':
            return PaymentVerification(
                success=True,
                gateway=self.name,
                status=status,
                payment_id=details.get('upi_txn_id') or str(details.get('id') or ''),
                amount=to_amount(details.get('amount')),
                payment_method='upi',
                raw=details,
            )
        return PaymentVerification(success=False, gateway=self.name, status=status, raw=data)

    async def verify(self, callback_payload: Dict[str, Any]) -> PaymentVerification:
        reference = callback_payload.get('client_txn_id') or callback_payload.get('reference')
        if not reference:
            raise PaymentGatewayError("UPI Gateway callback missing client_txn_id", self.name)
        return await self.fetch_payment_status(str(reference), callback_payload.get('created_at'))

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        try:
            body = raw_body.decode('utf-8')
        except UnicodeDecodeError as e:
            raise PaymentGatewayError(f"Invalid UPI Gateway webhook body: {e}", self.name)
        form = {k: v[0] for k, v in parse_qs(body, keep_blank_values=True).items()}
        status = (form.get('status') or '').lower()
        return WebhookEvent(
            gateway=self.name,
            reference=form.get('client_txn_id') or None,
            success=status == 'success',
            status=status,
            payment_id=form.get('upi_txn_id') or form.get('id'),
            amount=to_amount(form.get('amount')),
            gateway_order_id=form.get('id'),
            payment_method='upi',
            raw=form,
        )
