"""
Hosting Renewal Processor Service
Gateway-paid renewals: expiry extension, immutable ledger entry, provider renew call
"""

import logging
import math
import secrets
import string
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from config import RenewalConfig
from group_notifications import RENEWAL_APPLIED, RENEWAL_PROVIDER_FAILED, Notifier, notify_safe
from models.order_models import Order, OrderStatus, PendingRenewal, ProviderName, RenewalPayment
from monitoring.production_logging import audit_log
from services.order_store import OrderStore
from services.payment_gateway import CustomerDetails, PaymentGatewayError
from services.provider_base import ProviderError
from services.provider_registry import ProviderRegistry
from services.upigateway import amounts_match
from utils.timezone_utils import ensure_aware, minutes_since, utc_now

logger = logging.getLogger(__name__)

_TXN_ALPHABET = string.ascii_uppercase + string.digits


class RenewalError(Exception):
    """Renewal request cannot be honoured; status_code is the HTTP status the API layer returns"""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def compute_new_expiry(current_expiry: Optional[datetime], now: datetime, term_days: int = 30) -> datetime:
    """Anchor to the later of current expiry and now, then add one term"""
    current = ensure_aware(current_expiry)
    base = current if current is not None and current > now else now
    return base + timedelta(days=term_days)


def generate_renewal_txn_id(now: Optional[float] = None) -> str:
    timestamp = int((now if now is not None else time.time()) * 1000)
    suffix = ''.join(secrets.choice(_TXN_ALPHABET) for _ in range(6))
    return f"RENEWAL_{timestamp}_{suffix}"


class RenewalEngine:
    """
    Production renewal processor.

    apply_renewal() is idempotent per renewal_txn_id: the ledger append is conditional, so webhook
    delivery, client confirmation and the recovery job can all race on the same payment safely.
    """

    def __init__(self, store: OrderStore, registry: ProviderRegistry, gateways, notifier: Optional[Notifier] = None,
                 settings: Optional[RenewalConfig] = None):
        self.store = store
        self.registry = registry
        self.gateways = gateways
        self.notifier = notifier
        self.settings = settings or RenewalConfig()
        self.stats = {
            'applied': 0,
            'duplicates': 0,
            'provider_failures': 0,
        }

    # ================================================================
    # ELIGIBILITY / INITIATION
    # ================================================================

    def check_eligibility(self, order: Order, now: Optional[datetime] = None) -> Tuple[bool, str]:
        now = now or utc_now()
        if order.status != OrderStatus.ACTIVE:
            return False, f"Order status is {order.status.value}; only active orders can be renewed"
        expiry = ensure_aware(order.expiry_date)
        if expiry is None:
            return False, "Order has no expiry date"
        days_left = math.ceil((expiry - now).total_seconds() / 86400)
        if days_left > self.settings.renewal_window_days or days_left < -self.settings.expired_grace_days:
            return False, "Order is not eligible for renewal at this time"
        return True, 'eligible'

    async def initiate_renewal(self, order_id: str, user_id: str, customer: CustomerDetails, return_url: str,
                               notify_url: Optional[str] = None) -> Dict[str, Any]:
        order = await self.store.get_order(order_id)
        if order is None or order.user_id != user_id:
            raise RenewalError("Order not found", 404)

        eligible, reason = self.check_eligibility(order)
        if not eligible:
            raise RenewalError(reason, 400)

        provider, _ = self.registry.select(order)
        if provider == ProviderName.SMARTVPS and not (order.provider_service_id or order.ip_address):
            raise RenewalError("SmartVPS order missing required service identifier", 400)

        if order.pending_renewal:
            resolved = await self._resolve_existing_pending(order)
            if resolved is not None:
                return resolved

        renewal_txn_id = generate_renewal_txn_id()
        amount = float(order.price)
        separator = '&' if '?' in return_url else '?'
        callback_url = f"{return_url}{separator}renewal_txn_id={renewal_txn_id}&order_id={order.id}"
        try:
            gateway_order = await self.gateways.create_order_with_fallback(
                amount, customer, callback_url, renewal_txn_id,
                notify_url=notify_url, note=f"Renewal: {order.product_name} - {order.memory or ''}",
            )
        except PaymentGatewayError as e:
            logger.error(f"❌ RENEWAL: Could not create payment for order {order.id}: {e.message}")
            raise RenewalError(f"Payment gateway unavailable: {e.message}", 502)

        pending = PendingRenewal(
            renewal_txn_id=renewal_txn_id,
            gateway=gateway_order.gateway,
            amount=amount,
            initiated_at=utc_now(),
            gateway_order_id=gateway_order.gateway_order_id,
        )
        if not await self.store.set_pending_renewal(order.id, pending):
            raise RenewalError("A renewal payment is already in progress for this order", 409)

        logger.info(f"🔄 RENEWAL: Initiated {renewal_txn_id} for order {order.id} via {gateway_order.gateway}")
        return {
            'success': True,
            'status': 'initiated',
            'order_id': order.id,
            'renewal_txn_id': renewal_txn_id,
            'gateway': gateway_order.gateway,
            'payment': gateway_order.to_dict(),
            'amount': amount,
            'current_expiry': order.expiry_date.isoformat() if order.expiry_date else None,
            'provider': provider.value,
        }

    async def _resolve_existing_pending(self, order: Order) -> Optional[Dict[str, Any]]:
        """Deal with an earlier pending renewal before starting a new one"""
        pending = order.pending_renewal
        age = minutes_since(pending.initiated_at)
        if age is not None and age < self.settings.stale_after_minutes:
            raise RenewalError("A renewal payment is already in progress for this order", 409)

        # Never drop a pending renewal without asking the gateways first
        probe = await self.gateways.probe_payment_status(
            pending.renewal_txn_id, pending.gateway, pending.gateway_order_id, pending.initiated_at
        )
        if probe['success']:
            verification = probe['verification']
            result = await self.apply_renewal(
                order.id, pending.renewal_txn_id, verification.payment_id,
                verification.amount or pending.amount, probe['gateway'],
                payment_method=verification.payment_method, recovered=True,
            )
            result['status'] = 'recovered'
            return result

        await self.store.clear_pending_renewal(order.id, pending.renewal_txn_id)
        logger.info(f"🧹 RENEWAL: Cleared stale unpaid renewal {pending.renewal_txn_id} for order {order.id}")
        return None

    # ================================================================
    # APPLY
    # ================================================================

    async def apply_renewal(self, order_id: str, renewal_txn_id: str, payment_id: Optional[str], amount: float,
                            gateway: Optional[str], payment_method: Optional[str] = None,
                            recovered: bool = False) -> Dict[str, Any]:
        """
        Extend expiry by one term and record the ledger entry, then call the provider's renew.

        A provider failure is written into the entry and never rolls back the extension.
        """
        order = await self.store.get_order(order_id)
        if order is None:
            raise RenewalError("Order not found", 404)

        if order.has_renewal(renewal_txn_id):
            await self.store.clear_pending_renewal(order_id, renewal_txn_id)
            self.stats['duplicates'] += 1
            logger.info(f"🔁 RENEWAL: {renewal_txn_id} already applied to order {order_id}")
            return {'status': 'already_processed', 'success': True, 'order_id': order_id, 'renewal_txn_id': renewal_txn_id}

        now = utc_now()
        previous_expiry = ensure_aware(order.expiry_date)
        new_expiry = compute_new_expiry(previous_expiry, now, self.settings.renewal_days)
        provider, adapter = self.registry.select(order)

        entry = RenewalPayment(
            payment_id=payment_id,
            amount=float(amount),
            paid_at=now,
            previous_expiry=previous_expiry,
            new_expiry=new_expiry,
            renewal_txn_id=renewal_txn_id,
            provider=provider.value,
            payment_method=payment_method or gateway,
            recovered_at=now if recovered else None,
        )
        if not await self.store.append_renewal_payment(order_id, entry, new_expiry):
            await self.store.clear_pending_renewal(order_id, renewal_txn_id)
            self.stats['duplicates'] += 1
            logger.info(f"🔁 RENEWAL: Lost race recording {renewal_txn_id} for order {order_id} - already applied")
            return {'status': 'already_processed', 'success': True, 'order_id': order_id, 'renewal_txn_id': renewal_txn_id}

        self.stats['applied'] += 1
        audit_log('renewal_applied', order_id=order_id, user_id=order.user_id, renewal_txn_id=renewal_txn_id,
                  payment_id=payment_id, amount=amount, gateway=gateway, recovered=recovered,
                  previous_expiry=previous_expiry.isoformat() if previous_expiry else None,
                  new_expiry=new_expiry.isoformat())
        logger.info(f"✅ RENEWAL: Order {order_id} extended to {new_expiry.isoformat()} ({renewal_txn_id})")

        provider_success, provider_result = await self._renew_at_provider(order, provider, adapter)
        await self.store.record_provider_renewal(order_id, renewal_txn_id, provider_success, provider_result)

        refreshed = await self.store.get_order(order_id)
        if provider_success:
            await notify_safe(self.notifier, RENEWAL_APPLIED, order.user_id, refreshed,
                              new_expiry=new_expiry.strftime('%Y-%m-%d'))
        else:
            self.stats['provider_failures'] += 1
            await notify_safe(self.notifier, RENEWAL_PROVIDER_FAILED, order.user_id, refreshed,
                              renewal_txn_id=renewal_txn_id, error=provider_result.get('error'))

        return {
            'status': 'renewed',
            'success': True,
            'order_id': order_id,
            'renewal_txn_id': renewal_txn_id,
            'previous_expiry': previous_expiry.isoformat() if previous_expiry else None,
            'new_expiry': new_expiry.isoformat(),
            'provider': provider.value,
            'provider_renewal_success': provider_success,
            'provider_result': provider_result,
            'recovered': recovered,
        }

    async def _renew_at_provider(self, order: Order, provider: ProviderName, adapter) -> Tuple[bool, Dict[str, Any]]:
        service_ref = order.provider_service_id or order.ip_address
        if provider != ProviderName.MANUAL and not service_ref:
            logger.warning(f"⚠️ RENEWAL: Order {order.id} has no {provider.value} service identifier - provider renew skipped")
            return False, {'success': False, 'error': 'No provider service identifier on order'}
        try:
            result = await adapter.renew(service_ref or '')
        except ProviderError as e:
            logger.error(f"❌ RENEWAL: {provider.value} renew failed for order {order.id}: {e.message}")
            return False, {'success': False, 'error': e.message, 'error_code': e.code.value}
        except Exception as e:
            logger.exception(f"💥 RENEWAL: Unexpected {provider.value} renew error for order {order.id}")
            return False, {'success': False, 'error': str(e)}

        result = dict(result or {})
        success = bool(result.get('success', True))
        result.setdefault('success', success)
        return success, result

    # ================================================================
    # CLIENT CONFIRMATION
    # ================================================================

    async def confirm_renewal_payment(self, order_id: str, user_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Verify the checkout callback through the gateway the renewal was created on, then apply it"""
        order = await self.store.get_order(order_id)
        if order is None or order.user_id != user_id:
            raise RenewalError("Order not found", 404)

        renewal_txn_id = payload.get('renewal_txn_id') or (order.pending_renewal.renewal_txn_id if order.pending_renewal else None)
        if renewal_txn_id and order.has_renewal(renewal_txn_id):
            return {'status': 'already_processed', 'success': True, 'order_id': order_id, 'renewal_txn_id': renewal_txn_id}

        pending = order.pending_renewal
        if pending is None or pending.renewal_txn_id != renewal_txn_id:
            raise RenewalError("No pending renewal found for this order", 404)

        gateway = self.gateways.get(pending.gateway)
        if gateway is None:
            raise RenewalError(f"Unknown payment gateway {pending.gateway}", 400)

        if gateway.name == 'razorpay' and payload.get('razorpay_order_id') != pending.gateway_order_id:
            raise RenewalError("Payment does not belong to this renewal", 400)

        callback = dict(payload)
        callback.update({
            'order_id': pending.renewal_txn_id,
            'client_txn_id': pending.renewal_txn_id,
            'created_at': pending.initiated_at,
        })
        try:
            verification = await gateway.verify(callback)
        except PaymentGatewayError as e:
            raise RenewalError(f"Payment verification failed: {e.message}", 502)

        if not verification.success:
            logger.warning(f"🚫 RENEWAL: {renewal_txn_id} not paid ({verification.status})")
            raise RenewalError("Payment not completed", 400)
        if verification.amount is not None and not amounts_match(pending.amount, verification.amount):
            logger.error(f"🚨 RENEWAL: Amount mismatch for {renewal_txn_id}: expected {pending.amount}, paid {verification.amount}")
            raise RenewalError("Payment amount mismatch", 400)

        return await self.apply_renewal(
            order_id, renewal_txn_id, verification.payment_id,
            verification.amount if verification.amount is not None else pending.amount,
            pending.gateway, payment_method=verification.payment_method,
        )

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats)
