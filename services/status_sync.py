"""
Provider status synchronisation
Polls providers for orders still missing credentials and promotes them once IP and login are known
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from config import ProvisioningConfig
from group_notifications import PROVISIONING_SUCCEEDED, Notifier, notify_safe
from models.order_models import Order, OrderStatus, ProvisioningStatus, can_transition
from monitoring.production_logging import audit_log
from services.order_store import OrderStore
from services.provider_base import NormalizedStatus, ProviderError, ProviderStatus
from services.provider_registry import ProviderRegistry
from utils.timezone_utils import utc_now

logger = logging.getLogger(__name__)

# normalized tokens that map onto a provisioning transition
_TERMINAL_TOKENS = {
    NormalizedStatus.FAILED: ProvisioningStatus.FAILED,
    NormalizedStatus.TERMINATED: ProvisioningStatus.TERMINATED,
}


@dataclass(frozen=True)
class StatusSyncConfig:
    limit: int = 10
    delay_seconds: float = 0.8
    term_days: int = 30

    @classmethod
    def from_settings(cls, settings: ProvisioningConfig, term_days: int = 30) -> 'StatusSyncConfig':
        return cls(limit=settings.status_sync_limit, delay_seconds=settings.status_sync_delay_seconds,
                   term_days=term_days)


class StatusSync:
    def __init__(self, store: OrderStore, registry: ProviderRegistry, notifier: Optional[Notifier] = None,
                 config: Optional[StatusSyncConfig] = None, sleep=asyncio.sleep):
        self.store = store
        self.registry = registry
        self.notifier = notifier
        self.config = config or StatusSyncConfig()
        self._sleep = sleep

    async def run(self, limit: Optional[int] = None) -> Dict[str, Any]:
        limit = limit or self.config.limit
        orders = await self.store.list_orders_missing_credentials(limit)
        summary = {'checked': 0, 'activated': 0, 'updated': 0, 'transitioned': 0, 'errors': 0, 'results': []}

        for index, order in enumerate(orders):
            if index > 0 and self.config.delay_seconds > 0:
                await self._sleep(self.config.delay_seconds)
            summary['checked'] += 1
            try:
                result = await self.sync_order(order)
            except ProviderError as e:
                logger.warning(f"⚠️ STATUS SYNC: {order.provider.value if order.provider else 'provider'} status failed for order {order.id}: {e.message}")
                result = {'order_id': order.id, 'outcome': 'error', 'error': e.message}
            except Exception as e:
                logger.exception(f"💥 STATUS SYNC: Unexpected error for order {order.id}")
                result = {'order_id': order.id, 'outcome': 'error', 'error': str(e)}

            outcome = result['outcome']
            if outcome == 'activated':
                summary['activated'] += 1
            elif outcome == 'transitioned':
                summary['transitioned'] += 1
            elif outcome == 'error':
                summary['errors'] += 1
            else:
                summary['updated'] += 1
            summary['results'].append(result)

        if summary['checked']:
            logger.info(f"🔄 STATUS SYNC: checked {summary['checked']}, activated {summary['activated']}, errors {summary['errors']}")
        return summary

    async def sync_order(self, order: Order) -> Dict[str, Any]:
        adapter = self.registry.get(order.provider)
        service_ref = order.provider_service_id or order.ip_address
        status: ProviderStatus = await adapter.get_status(service_ref)
        now = utc_now()

        observed = {
            'machine_status': status.machine_status.value,
            'power_status': status.power_status.value,
            'last_sync_at': now,
        }
        result = {'order_id': order.id, **{k: v for k, v in observed.items() if k != 'last_sync_at'}}

        ip_address = status.ip_address or order.ip_address
        username = status.username or order.provider_metadata.get('staged_username')
        password = status.password or order.provider_metadata.get('staged_password')

        target = _TERMINAL_TOKENS.get(status.machine_status)
        if target and can_transition(order.provisioning_status, target):
            fields = dict(observed)
            if target == ProvisioningStatus.FAILED:
                fields['provisioning_error'] = f"Provider reported {status.machine_status.value}"
            else:
                fields['status'] = OrderStatus.TERMINATED
            if await self.store.compare_and_set_provisioning_status(order.id, [order.provisioning_status], target, **fields):
                audit_log(f"status_sync_{target.value}", order_id=order.id, user_id=order.user_id)
                logger.warning(f"⚠️ STATUS SYNC: Order {order.id} moved {order.provisioning_status.value} → {target.value}")
                return {**result, 'outcome': 'transitioned', 'provisioning_status': target.value}

        if ip_address and username and password and self._may_activate(order, status):
            fields = dict(observed)
            fields.update(
                status=OrderStatus.ACTIVE,
                ip_address=ip_address,
                username=username,
                password=password,
                os=status.os or order.os,
                provider_metadata={k: v for k, v in order.provider_metadata.items() if not k.startswith('staged_')},
            )
            if order.expiry_date is None:
                fields['expiry_date'] = now + timedelta(days=self.config.term_days)
            activated = await self.store.compare_and_set_provisioning_status(
                order.id, [ProvisioningStatus.PROVISIONING, ProvisioningStatus.SUSPENDED], ProvisioningStatus.ACTIVE,
                **fields
            )
            if activated:
                audit_log('status_sync_activated', order_id=order.id, user_id=order.user_id, ip_address=ip_address)
                logger.info(f"✅ STATUS SYNC: Order {order.id} active with {ip_address}")
                if order.provisioning_status == ProvisioningStatus.PROVISIONING:
                    await notify_safe(self.notifier, PROVISIONING_SUCCEEDED, order.user_id, await self.store.get_order(order.id))
                return {**result, 'outcome': 'activated', 'ip_address': ip_address}

        fields = dict(observed)
        if status.ip_address and not order.ip_address:
            fields['ip_address'] = status.ip_address
        await self.store.update_fields(order.id, **fields)
        return {**result, 'outcome': 'updated'}

    @staticmethod
    def _may_activate(order: Order, status: ProviderStatus) -> bool:
        if order.provisioning_status == ProvisioningStatus.SUSPENDED:
            return NormalizedStatus.ACTIVE in (status.machine_status, status.power_status)
        return order.provisioning_status == ProvisioningStatus.PROVISIONING
