"""
Webhook handler for payment gateway callbacks
Turns verified Cashfree / Razorpay / UPI Gateway events into order state and provisioning dispatch
"""

import logging
import time
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

from group_notifications import PAYMENT_CONFIRMED, PAYMENT_FAILED, Notifier, notify_safe
from models.order_models import Order, OrderStatus, ProvisioningStatus
from monitoring.production_logging import audit_log
from services.order_store import OrderStore
from services.payment_gateway import FAILURE_STATUSES, PaymentGatewayError, WebhookEvent
from services.renewal_processor import RenewalEngine, RenewalError
from services.upigateway import amounts_match
from utils.timezone_utils import utc_now

logger = logging.getLogger(__name__)


class WebhookRejected(Exception):
    """Webhook could not be authenticated or verified; nothing was changed"""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PaymentWebhookHandler:
    """Production payment webhook handler with full processing logic"""

    def __init__(self, store: OrderStore, gateways, dispatcher, renewal_engine: RenewalEngine,
                 notifier: Optional[Notifier] = None, term_days: int = 30):
        self.store = store
        self.gateways = gateways
        self.dispatcher = dispatcher
        self.renewal_engine = renewal_engine
        self.notifier = notifier
        self.term_days = term_days
        self.stats = {
            'received': 0,
            'rejected': 0,
            'confirmed': 0,
            'duplicates': 0,
            'failed_payments': 0,
            'renewals': 0,
            'last_success_at': None,
        }

    # ================================================================
    # INBOUND
    # ================================================================

    async def receive(self, gateway_name: str, raw_body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """Authenticate one webhook delivery, then process it"""
        self.stats['received'] += 1
        gateway = self.gateways.get(gateway_name)
        if gateway is None:
            self.stats['rejected'] += 1
            raise WebhookRejected(f"Unknown payment gateway {gateway_name}", 404)

        if gateway.signed_webhooks and not gateway.verify_webhook(raw_body, headers):
            self.stats['rejected'] += 1
            logger.warning(f"🚫 WEBHOOK: Invalid {gateway_name} signature - delivery ignored")
            raise WebhookRejected("Invalid webhook signature", 403)

        try:
            event = gateway.parse_webhook(raw_body, headers)
        except PaymentGatewayError as e:
            self.stats['rejected'] += 1
            raise WebhookRejected(e.message, 400)

        if not event.reference:
            self.stats['rejected'] += 1
            raise WebhookRejected("Webhook does not reference an order", 400)

        if not gateway.signed_webhooks:
            event = await self._verify_by_fetch(gateway, event)
            if event is None:
                return {'status': 'ignored', 'reason': 'payment not final at gateway'}

        return await self.handle_payment_event(gateway_name, event)

    async def _verify_by_fetch(self, gateway, event: WebhookEvent) -> Optional[WebhookEvent]:
        """Unsigned notifications are only hints; the gateway's status API is the truth"""
        order = await self._resolve_order(event)
        created_at = None
        expected_amount = None
        if order is not None:
            if order.pending_renewal and event.reference in (order.pending_renewal.renewal_txn_id,
                                                             order.pending_renewal.gateway_order_id):
                created_at = order.pending_renewal.initiated_at
                expected_amount = order.pending_renewal.amount
            else:
                created_at = order.created_at
                expected_amount = order.price

        try:
            verification = await gateway.fetch_payment_status(event.reference, created_at)
        except PaymentGatewayError as e:
            self.stats['rejected'] += 1
            logger.error(f"❌ WEBHOOK: {gateway.name} status check failed for {event.reference}: {e.message}")
            raise WebhookRejected("Payment could not be verified with the gateway", 400)

        if verification.success:
            if expected_amount is not None and not amounts_match(expected_amount, verification.amount):
                self.stats['rejected'] += 1
                logger.error(f"🚨 WEBHOOK: {gateway.name} amount mismatch for {event.reference}: "
                             f"expected {expected_amount}, gateway reports {verification.amount}")
                raise WebhookRejected("Payment amount does not match order", 400)
            return replace(event, success=True, status=verification.status, payment_id=verification.payment_id,
                           amount=verification.amount, payment_method=verification.payment_method or event.payment_method)

        if verification.status in FAILURE_STATUSES:
            return replace(event, success=False, status=verification.status)

        logger.info(f"⏳ WEBHOOK: {gateway.name} reports {event.reference} as {verification.status} - nothing to do yet")
        return None

    async def _resolve_order(self, event: WebhookEvent) -> Optional[Order]:
        order = await self.store.find_by_client_txn_id(event.reference)
        if order is None and (event.gateway_order_id or event.reference):
            order = await self.store.find_by_gateway_order_id(event.gateway_order_id or event.reference)
        if order is None:
            order = await self.store.find_by_renewal_txn_id(event.reference)
            if order is None and event.gateway_order_id:
                order = await self.store.find_by_renewal_txn_id(event.gateway_order_id)
        return order

    # ================================================================
    # PROCESSING
    # ================================================================

    async def handle_payment_event(self, gateway_name: str, event: WebhookEvent) -> Dict[str, Any]:
        order = await self._resolve_order(event)
        if order is None:
            logger.warning(f"⚠️ WEBHOOK: No order or pending renewal for {gateway_name} reference {event.reference}")
            return {'status': 'unknown_reference', 'reference': event.reference}

        if self._is_renewal_event(order, event):
            return await self._handle_renewal_event(order, gateway_name, event)

        if not event.success:
            return await self._handle_failed_payment(order, gateway_name, event)

        if event.amount is not None and not amounts_match(order.price, event.amount):
            logger.error(f"🚨 WEBHOOK: Amount mismatch on order {order.id}: expected {order.price}, received {event.amount}")
            raise WebhookRejected("Payment amount does not match order", 400)

        return await self.confirm_order(order, gateway_name, event.payment_id, event.gateway_order_id)

    @staticmethod
    def _is_renewal_event(order: Order, event: WebhookEvent) -> bool:
        pending = order.pending_renewal
        if pending is None:
            return False
        references = {pending.renewal_txn_id, pending.gateway_order_id} - {None}
        return event.reference in references or event.gateway_order_id in references

    async def _handle_renewal_event(self, order: Order, gateway_name: str, event: WebhookEvent) -> Dict[str, Any]:
        pending = order.pending_renewal
        if not event.success:
            logger.info(f"💸 WEBHOOK: Renewal payment {pending.renewal_txn_id} not completed ({event.status})")
            return {'status': 'renewal_payment_failed', 'order_id': order.id, 'renewal_txn_id': pending.renewal_txn_id}

        if event.amount is not None and not amounts_match(pending.amount, event.amount):
            logger.error(f"🚨 WEBHOOK: Renewal amount mismatch on order {order.id}: expected {pending.amount}, received {event.amount}")
            raise WebhookRejected("Payment amount does not match renewal", 400)

        self.stats['renewals'] += 1
        try:
            return await self.renewal_engine.apply_renewal(
                order.id, pending.renewal_txn_id, event.payment_id,
                event.amount if event.amount is not None else pending.amount,
                gateway_name, payment_method=event.payment_method,
            )
        except RenewalError as e:
            raise WebhookRejected(e.message, e.status_code)

    async def _handle_failed_payment(self, order: Order, gateway_name: str, event: WebhookEvent) -> Dict[str, Any]:
        if event.status not in FAILURE_STATUSES:
            logger.info(f"⏳ WEBHOOK: {gateway_name} event for order {order.id} is {event.status} - ignored")
            return {'status': 'ignored', 'order_id': order.id, 'payment_status': event.status}

        failed = await self.store.compare_and_set_status(order.id, [OrderStatus.PENDING], OrderStatus.FAILED)
        if not failed:
            return {'status': 'already_processed', 'order_id': order.id}

        self.stats['failed_payments'] += 1
        audit_log('payment_failed', order_id=order.id, user_id=order.user_id, gateway=gateway_name, payment_status=event.status)
        logger.warning(f"❌ WEBHOOK: Payment failed for order {order.id} via {gateway_name} ({event.status})")
        await notify_safe(self.notifier, PAYMENT_FAILED, order.user_id, order, gateway=gateway_name)
        return {'status': 'payment_failed', 'order_id': order.id}

    async def confirm_order(self, order: Order, gateway_name: str, payment_id: Optional[str],
                            gateway_order_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Mark a paid order confirmed and hand it to the provisioning dispatcher.

        Only the caller that wins the pending → confirmed CAS dispatches; duplicate webhooks,
        client callbacks and wallet confirmations are acknowledged without side effects.
        """
        fields: Dict[str, Any] = {'gateway': gateway_name}
        if gateway_order_id and not order.gateway_order_id:
            fields['gateway_order_id'] = gateway_order_id
        if order.expiry_date is None:
            fields['expiry_date'] = utc_now() + timedelta(days=self.term_days)

        if not await self.store.confirm_payment(order.id, payment_id, **fields):
            self.stats['duplicates'] += 1
            logger.info(f"🔁 WEBHOOK: Order {order.id} already confirmed - duplicate delivery acknowledged")
            return {'status': 'already_processed', 'success': True, 'order_id': order.id}

        await self.store.compare_and_set_provisioning_status(order.id, [ProvisioningStatus.UNSET], ProvisioningStatus.PENDING)
        self.stats['confirmed'] += 1
        self.stats['last_success_at'] = int(time.time())
        audit_log('payment_confirmed', order_id=order.id, user_id=order.user_id, gateway=gateway_name,
                  payment_id=payment_id, amount=order.price)
        logger.info(f"💳 WEBHOOK: Order {order.id} confirmed via {gateway_name} (payment {payment_id})")
        await notify_safe(self.notifier, PAYMENT_CONFIRMED, order.user_id, order, gateway=gateway_name)

        dispatched = True
        try:
            self.dispatcher.submit(order.id)
        except Exception as e:
            # batch runner picks the order up on its next sweep
            dispatched = False
            logger.error(f"❌ WEBHOOK: Could not dispatch provisioning for order {order.id}: {e}")

        return {
            'status': 'confirmed',
            'success': True,
            'order_id': order.id,
            'provisioning': 'dispatched' if dispatched else 'deferred',
        }

    # ================================================================
    # CLIENT CALLBACKS
    # ================================================================

    async def verify_razorpay_checkout(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Razorpay checkout handler posts order_id/payment_id/signature back through the browser"""
        gateway = self.gateways.get('razorpay')
        if gateway is None or not gateway.is_available():
            raise WebhookRejected("Razorpay is not configured", 400)

        verification = await gateway.verify(payload)
        if not verification.success:
            self.stats['rejected'] += 1
            raise WebhookRejected("Invalid payment signature", 400)

        razorpay_order_id = payload.get('razorpay_order_id')
        event = WebhookEvent(
            gateway='razorpay',
            reference=razorpay_order_id,
            success=True,
            status=verification.status,
            payment_id=verification.payment_id,
            gateway_order_id=razorpay_order_id,
            raw=verification.raw,
        )
        return await self.handle_payment_event('razorpay', event)

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
