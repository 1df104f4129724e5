"""
Payment gateway factory for switching between Cashfree, Razorpay and UPI Gateway
Creation-time fallback chain plus cross-gateway payment status probing
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from config import PaymentConfig, get_config
from services.cashfree import CashfreeService
from services.payment_gateway import (
    CustomerDetails, GatewayOrder, PaymentGateway, PaymentGatewayError, PaymentVerification
)
from services.razorpay import RazorpayService
from services.upigateway import UpiGatewayService

logger = logging.getLogger(__name__)

GATEWAY_CLASSES = {
    'cashfree': CashfreeService,
    'razorpay': RazorpayService,
    'upigateway': UpiGatewayService,
}


class PaymentGatewayFactory:
    """Holds one instance per gateway and the configured preference order"""

    def __init__(self, gateways: Dict[str, PaymentGateway], gateway_order: Optional[List[str]] = None):
        self.gateways = gateways
        order = gateway_order or list(gateways.keys())
        self.gateway_order = [name for name in order if name in gateways]
        unknown = [name for name in order if name not in gateways]
        if unknown:
            logger.warning(f"⚠️ Unknown payment gateways in PAYMENT_GATEWAY_ORDER ignored: {', '.join(unknown)}")

    @classmethod
    def from_config(cls, settings: Optional[PaymentConfig] = None) -> 'PaymentGatewayFactory':
        settings = settings or get_config().payment
        gateways = {name: gateway_cls(settings) for name, gateway_cls in GATEWAY_CLASSES.items()}
        return cls(gateways, settings.gateway_order)

    def get(self, name: Optional[str]) -> Optional[PaymentGateway]:
        return self.gateways.get(name) if name else None

    def available_gateways(self) -> List[PaymentGateway]:
        return [self.gateways[name] for name in self.gateway_order if self.gateways[name].is_available()]

    async def create_order_with_fallback(self, amount: float, customer: CustomerDetails, return_url: str,
                                         reference: str, notify_url: Optional[str] = None,
                                         note: Optional[str] = None) -> GatewayOrder:
        """
        Try each available gateway in configured order.

        Returns the first GatewayOrder created; its .gateway names the gateway actually used and
        must be persisted so confirmation queries the right one.
        """
        errors: Dict[str, str] = {}
        for gateway in self.available_gateways():
            try:
                gateway_order = await gateway.create_order(amount, customer, return_url, reference,
                                                           notify_url=notify_url, note=note)
            except PaymentGatewayError as e:
                errors[gateway.name] = e.message
                logger.warning(f"⚠️ {gateway.name} order creation failed for {reference}: {e.message} - trying next gateway")
                continue

            if errors:
                logger.info(f"✅ Payment order {reference} created on fallback gateway {gateway.name}")
            else:
                logger.info(f"✅ Payment order {reference} created on {gateway.name}")
            return gateway_order

        logger.error(f"❌ All payment gateways failed for {reference}: {errors}")
        raise PaymentGatewayError("All payment gateways failed", details={'errors': errors})

    async def probe_payment_status(self, reference: str, preferred_gateway: Optional[str] = None,
                                   gateway_order_id: Optional[str] = None,
                                   created_at: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Read-only status check across gateways, preferred gateway first.

        Returns {'success', 'gateway', 'verification', 'checked', 'errors'}.
        """
        names = list(self.gateway_order)
        if preferred_gateway in names:
            names.remove(preferred_gateway)
            names.insert(0, preferred_gateway)

        checked: List[Dict[str, Any]] = []
        errors: Dict[str, str] = {}
        for name in names:
            gateway = self.gateways[name]
            if not gateway.is_available():
                continue
            gateway_ref = gateway.status_reference(
                reference, gateway_order_id if name == preferred_gateway else None
            )
            if not gateway_ref:
                continue
            try:
                verification: PaymentVerification = await gateway.fetch_payment_status(gateway_ref, created_at)
            except PaymentGatewayError as e:
                errors[name] = e.message
                logger.warning(f"⚠️ PROBE: {name} status check failed for {reference}: {e.message}")
                continue

            checked.append({'gateway': name, 'status': verification.status, 'success': verification.success})
            if verification.success:
                logger.info(f"💰 PROBE: {name} reports {reference} paid (payment {verification.payment_id})")
                return {
                    'success': True,
                    'gateway': name,
                    'verification': verification,
                    'checked': checked,
                    'errors': errors,
                }

        return {'success': False, 'gateway': None, 'verification': None, 'checked': checked, 'errors': errors}

    async def close(self) -> None:
        for gateway in self.gateways.values():
            await gateway.close()
