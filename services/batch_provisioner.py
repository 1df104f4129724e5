"""
Batch Provisioning Runner
Time-boxed sweep over confirmed orders that still need a server, with bounded retries
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from models.order_models import Order, ProvisioningStatus
from monitoring.production_logging import audit_log
from services.order_store import OrderStore
from services.retry_policy import (
    MANUAL_REVIEW_PREFIX, BatchProvisionConfig, classify_error, manual_review_message
)

logger = logging.getLogger(__name__)


class BatchProvisioner:
    """
    Scans the Order Store for orders needing (re)provisioning and drives each one through the
    orchestrator. Sequential within an invocation; concurrent invocations are tolerated through
    the orchestrator's claim.
    """

    def __init__(self, store: OrderStore, orchestrator, sleep=asyncio.sleep, clock=time.monotonic):
        self.store = store
        self.orchestrator = orchestrator
        self._sleep = sleep
        self._clock = clock
        self.last_summary: Optional[Dict[str, Any]] = None

    def _eligible(self, order: Order, config: BatchProvisionConfig) -> bool:
        if order.provisioning_status in (ProvisioningStatus.ACTIVE, ProvisioningStatus.PROVISIONING):
            return False
        error = order.provisioning_error or ''
        if error.startswith(MANUAL_REVIEW_PREFIX):
            return False
        if not order.auto_provisioned:
            return True
        return (order.provisioning_status == ProvisioningStatus.FAILED
                and classify_error(error, order.provisioning_error_code, config))

    async def find_candidates(self, config: BatchProvisionConfig) -> Dict[str, List[Order]]:
        fetched = await self.store.list_batch_candidates(config.batch_size * 2)
        eligible: List[Order] = []
        unconfigured: List[Order] = []
        for order in fetched:
            if not self._eligible(order, config):
                continue
            if not await self.orchestrator.has_provisioning_config(order):
                logger.info(f"⏭️ BATCH PROVISION: No product configuration for order {order.id} "
                            f"({order.product_name} {order.memory or ''}) - skipping")
                unconfigured.append(order)
                continue
            eligible.append(order)
            if len(eligible) >= config.batch_size:
                break
        return {'checked': fetched, 'eligible': eligible, 'unconfigured': unconfigured}

    async def run(self, config: BatchProvisionConfig) -> Dict[str, Any]:
        """Run one sweep; returns {successful, failed, skipped, retries, processed, checked, total_time, results}"""
        start = self._clock()
        logger.info(f"🤖 BATCH PROVISION: Starting sweep (batch_size={config.batch_size}, "
                    f"max_retries={config.max_retries}, budget={config.max_processing_seconds}s)")

        candidates = await self.find_candidates(config)
        checked = candidates['checked']
        orders = candidates['eligible']
        unconfigured = candidates['unconfigured']
        logger.info(f"📊 BATCH PROVISION: {len(checked)} candidates checked, {len(orders)} eligible, {len(unconfigured)} unconfigured")

        results: List[Dict[str, Any]] = []
        total_retries = 0
        budget_exhausted = False

        for index, order in enumerate(orders):
            if self._clock() - start >= config.max_processing_seconds:
                logger.warning("⏰ BATCH PROVISION: Time budget reached, leaving remaining orders for the next sweep")
                budget_exhausted = True
                break

            outcome = await self._process_order(order, config, start)
            total_retries += outcome['retries']
            if outcome['outcome'] == 'budget':
                budget_exhausted = True
                if outcome['attempts'] == 0:
                    break
            results.append(outcome)
            if budget_exhausted:
                break

            if index < len(orders) - 1 and config.inter_order_delay_seconds > 0:
                await self._sleep(config.inter_order_delay_seconds)

        successful = sum(1 for r in results if r['success'])
        failed = sum(1 for r in results if r['outcome'] == 'failed')
        processed = len(results)
        summary = {
            'successful': successful,
            'failed': failed,
            'skipped': len(checked) - successful - failed,
            'retries': total_retries,
            'processed': processed,
            'checked': len(checked),
            'unconfigured': [order.id for order in unconfigured],
            'total_time': round(self._clock() - start, 3),
            'budget_exhausted': budget_exhausted,
            'results': results,
        }
        self.last_summary = summary
        logger.info(f"🎯 BATCH PROVISION: checked={summary['checked']} processed={processed} "
                    f"successful={successful} failed={failed} skipped={summary['skipped']} "
                    f"retries={total_retries} time={summary['total_time']}s")
        return summary

    async def _process_order(self, order: Order, config: BatchProvisionConfig, start: float) -> Dict[str, Any]:
        order_start = self._clock()
        attempts = 0
        retries = 0
        last_error: Optional[str] = None
        last_code: Optional[str] = None
        result: Dict[str, Any] = {}

        logger.info(f"🔄 BATCH PROVISION: Order {order.id} ({order.product_name} {order.memory or ''})")

        while attempts < config.max_retries:
            if self._clock() - start >= config.max_processing_seconds:
                logger.warning(f"⏰ BATCH PROVISION: Budget reached before attempt {attempts + 1} for {order.id}")
                return self._entry(order, 'budget', attempts, retries, order_start, error=last_error)

            attempts += 1
            logger.info(f"🚀 BATCH PROVISION: Attempt {attempts}/{config.max_retries} for order {order.id}")
            result = await self.orchestrator.provision_order(order.id, reset_failed=True)

            if result.get('success'):
                return self._entry(order, 'successful', attempts, retries, order_start,
                                   service_id=result.get('service_id'), ip_address=result.get('ip_address'),
                                   status=result.get('status'))

            if result.get('status') in ('skipped', 'not_found'):
                # someone else owns the order now
                return self._entry(order, 'skipped', attempts - 1, retries, order_start, reason=result.get('reason'))

            last_error = result.get('error') or 'Unknown provisioning error'
            last_code = result.get('error_code')
            retryable = classify_error(last_error, last_code, config)
            logger.error(f"❌ BATCH PROVISION: Attempt {attempts} failed for {order.id}: {last_error}")

            if not retryable or attempts >= config.max_retries:
                break

            logger.info(f"🔁 BATCH PROVISION: Retryable error, waiting {config.retry_delay_seconds}s before retry")
            retries += 1
            if config.retry_delay_seconds > 0:
                await self._sleep(config.retry_delay_seconds)

        await self._mark_for_manual_review(order, last_error, last_code)
        return self._entry(order, 'failed', attempts, retries, order_start, error=last_error,
                           error_code=last_code, retryable=classify_error(last_error, last_code, config))

    async def _mark_for_manual_review(self, order: Order, message: Optional[str], code: Optional[str]) -> None:
        flagged = manual_review_message(message)
        updated = await self.store.compare_and_set_provisioning_status(
            order.id, [ProvisioningStatus.FAILED], ProvisioningStatus.FAILED,
            provisioning_error=flagged,
            provisioning_error_code=code,
            auto_provisioned=True,
        )
        if updated:
            logger.warning(f"🔴 BATCH PROVISION: Order {order.id} flagged for manual review")
            audit_log('provisioning_manual_review', order_id=order.id, user_id=order.user_id, error=message)
        else:
            logger.warning(f"⚠️ BATCH PROVISION: Order {order.id} left failed state before it could be flagged")

    def _entry(self, order: Order, outcome: str, attempts: int, retries: int, order_start: float, **extra) -> Dict[str, Any]:
        entry = {
            'order_id': order.id,
            'success': outcome == 'successful',
            'outcome': outcome,
            'attempts': attempts,
            'retries': retries,
            'processing_time': round(self._clock() - order_start, 3),
        }
        entry.update({k: v for k, v in extra.items() if v is not None})
        return entry
