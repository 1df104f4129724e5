"""
Renewal payment recovery and reconciliation
Finds renewals that were paid at the gateway but never applied, clears abandoned ones
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from config import RenewalConfig
from models.order_models import Order
from monitoring.production_logging import audit_log
from services.order_store import OrderStore
from services.renewal_processor import RenewalEngine, RenewalError
from utils.timezone_utils import isoformat_or_none, minutes_since, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecoveryConfig:
    still_pending_minutes: int = 30
    stale_after_minutes: int = 60
    abandoned_order_days: int = 7

    @classmethod
    def from_settings(cls, settings: RenewalConfig) -> 'RecoveryConfig':
        return cls(
            still_pending_minutes=settings.still_pending_minutes,
            stale_after_minutes=settings.stale_after_minutes,
            abandoned_order_days=settings.abandoned_order_days,
        )


class RenewalRecoveryService:
    """Read-only gateway probes plus idempotent apply_renewal; never deletes a pending renewal unverified"""

    def __init__(self, store: OrderStore, gateways, renewal_engine: RenewalEngine,
                 config: Optional[RecoveryConfig] = None):
        self.store = store
        self.gateways = gateways
        self.renewal_engine = renewal_engine
        self.config = config or RecoveryConfig()

    async def _probe(self, order: Order) -> Dict[str, Any]:
        pending = order.pending_renewal
        return await self.gateways.probe_payment_status(
            pending.renewal_txn_id, pending.gateway, pending.gateway_order_id, pending.initiated_at
        )

    def _describe(self, order: Order) -> Dict[str, Any]:
        pending = order.pending_renewal
        age = minutes_since(pending.initiated_at)
        return {
            'order_id': order.id,
            'user_id': order.user_id,
            'product_name': order.product_name,
            'renewal_txn_id': pending.renewal_txn_id,
            'gateway': pending.gateway,
            'amount': pending.amount,
            'initiated_at': isoformat_or_none(pending.initiated_at),
            'age_minutes': round(age, 1) if age is not None else None,
            'expiry_date': isoformat_or_none(order.expiry_date),
        }

    async def list_pending_renewals(self) -> Dict[str, Any]:
        """Classify every pending renewal: paid-but-unapplied, recent, or stale"""
        paid: List[Dict[str, Any]] = []
        still_pending: List[Dict[str, Any]] = []
        stale: List[Dict[str, Any]] = []

        for order in await self.store.list_orders_with_pending_renewal():
            entry = self._describe(order)
            probe = await self._probe(order)
            entry['checked_gateways'] = probe['checked']
            if probe['errors']:
                entry['gateway_errors'] = probe['errors']

            if probe['success']:
                verification = probe['verification']
                entry.update({
                    'paid_gateway': probe['gateway'],
                    'payment_id': verification.payment_id,
                    'paid_amount': verification.amount,
                })
                paid.append(entry)
            elif entry['age_minutes'] is not None and entry['age_minutes'] < self.config.still_pending_minutes:
                still_pending.append(entry)
            else:
                stale.append(entry)

        if paid:
            logger.warning(f"💰 RECOVERY: {len(paid)} renewal(s) paid but not applied")
        return {
            'paid_but_not_processed': paid,
            'still_pending': still_pending,
            'stale': stale,
            'summary': {
                'total': len(paid) + len(still_pending) + len(stale),
                'paid_but_not_processed': len(paid),
                'still_pending': len(still_pending),
                'stale': len(stale),
            },
        }

    async def _recover_order(self, order: Order) -> Dict[str, Any]:
        pending = order.pending_renewal
        probe = await self._probe(order)
        if not probe['success']:
            return {
                'order_id': order.id,
                'renewal_txn_id': pending.renewal_txn_id,
                'status': 'not_paid',
                'checked_gateways': probe['checked'],
                'errors': probe['errors'],
            }

        verification = probe['verification']
        result = await self.renewal_engine.apply_renewal(
            order.id, pending.renewal_txn_id, verification.payment_id,
            verification.amount if verification.amount is not None else pending.amount,
            probe['gateway'], payment_method=verification.payment_method, recovered=True,
        )
        if result['status'] == 'renewed':
            result['status'] = 'recovered'
            audit_log('renewal_recovered', order_id=order.id, user_id=order.user_id,
                      renewal_txn_id=pending.renewal_txn_id, gateway=probe['gateway'])
        return result

    async def process_recovery(self, order_id: Optional[str] = None) -> Dict[str, Any]:
        """Apply every pending renewal the gateways report as paid (or just one order's)"""
        if order_id:
            order = await self.store.get_order(order_id)
            if order is None:
                raise RenewalError("Order not found", 404)
            if order.pending_renewal is None:
                raise RenewalError("Order has no pending renewal", 404)
            orders = [order]
        else:
            orders = await self.store.list_orders_with_pending_renewal()

        results = []
        recovered = 0
        for order in orders:
            try:
                result = await self._recover_order(order)
            except RenewalError as e:
                result = {'order_id': order.id, 'status': 'error', 'error': e.message}
            except Exception as e:
                logger.exception(f"💥 RECOVERY: Unexpected error recovering order {order.id}")
                result = {'order_id': order.id, 'status': 'error', 'error': str(e)}
            if result['status'] == 'recovered':
                recovered += 1
            results.append(result)

        logger.info(f"🔁 RECOVERY: Checked {len(orders)} pending renewal(s), recovered {recovered}")
        return {'success': True, 'checked': len(orders), 'recovered': recovered, 'results': results}

    async def clear_stale(self, older_than_minutes: Optional[int] = None) -> Dict[str, Any]:
        """Re-verify old pending renewals; paid ones are applied, unpaid ones cleared"""
        threshold = older_than_minutes if older_than_minutes is not None else self.config.stale_after_minutes
        cleared, recovered, kept = [], [], []

        for order in await self.store.list_orders_with_pending_renewal():
            pending = order.pending_renewal
            age = minutes_since(pending.initiated_at)
            if age is not None and age < threshold:
                continue
            try:
                result = await self._recover_order(order)
            except Exception as e:
                logger.exception(f"💥 STALE CLEANUP: Could not verify {pending.renewal_txn_id} on order {order.id}")
                kept.append({'order_id': order.id, 'renewal_txn_id': pending.renewal_txn_id, 'error': str(e)})
                continue

            if result['status'] in ('recovered', 'already_processed'):
                recovered.append(result)
            elif result.get('errors'):
                # a gateway that may hold the payment did not answer; keep it for the next run
                kept.append({'order_id': order.id, 'renewal_txn_id': pending.renewal_txn_id,
                             'error': result['errors']})
            elif await self.store.clear_pending_renewal(order.id, pending.renewal_txn_id):
                logger.info(f"🧹 STALE CLEANUP: Cleared unpaid renewal {pending.renewal_txn_id} on order {order.id}")
                cleared.append({'order_id': order.id, 'renewal_txn_id': pending.renewal_txn_id})

        return {
            'success': True,
            'older_than_minutes': threshold,
            'cleared': cleared,
            'recovered': recovered,
            'kept': kept,
            'summary': {'cleared': len(cleared), 'recovered': len(recovered), 'kept': len(kept)},
        }

    async def purge_abandoned_orders(self, older_than_days: Optional[int] = None) -> Dict[str, Any]:
        """Delete orders that were never paid; failed orders stay for audit"""
        days = older_than_days if older_than_days is not None else self.config.abandoned_order_days
        cutoff = utc_now() - timedelta(days=days)
        deleted = []
        for order in await self.store.list_abandoned_orders(cutoff):
            if await self.store.delete_order(order.id):
                deleted.append(order.id)
        if deleted:
            logger.info(f"🗑️ CLEANUP: Deleted {len(deleted)} unpaid order(s) older than {days} days")
        return {'success': True, 'older_than_days': days, 'deleted': deleted, 'count': len(deleted)}
