"""
Provisioning Orchestrator - Single Source of Truth for turning a confirmed order into a server

Architecture:
- Atomic provisioning_status state machine: unset → pending → provisioning → active | failed
- Claim by compare-and-swap on the Order Store; the loser of a race exits without side effects
- Provider chosen per order, adapter invoked once per claimed attempt
- Outcome committed with a second CAS so a concurrent admin change is never overwritten
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from group_notifications import (
    PROVISIONING_FAILED, PROVISIONING_PENDING, PROVISIONING_SUCCEEDED, Notifier, notify_safe
)
from models.order_models import (
    IN_FLIGHT_OR_DONE, CatalogItem, InvalidTransitionError, Order, OrderStatus, ProviderName, ProvisioningStatus,
    can_transition
)
from monitoring.production_logging import audit_log
from services.order_store import OrderStore
from services.provider_base import ErrorCode, ProviderError, ProvisionResult
from services.provider_registry import ProviderRegistry
from utils.credentials import determine_os
from utils.timezone_utils import utc_now

logger = logging.getLogger(__name__)

DEFAULT_TERM_DAYS = 30


class ProvisioningError(Exception):
    """Raised for caller errors on explicit lifecycle actions"""
    pass


class ProvisioningOrchestrator:
    """
    Centralized orchestrator for server provisioning.

    provision_order() is safe to call any number of times for the same order: only the caller
    that wins the pending → provisioning claim talks to the provider.
    """

    def __init__(self, store: OrderStore, registry: ProviderRegistry, notifier: Optional[Notifier] = None,
                 term_days: int = DEFAULT_TERM_DAYS):
        self.store = store
        self.registry = registry
        self.notifier = notifier
        self.term_days = term_days

    async def provision_order(self, order_id: str, *, reset_failed: bool = False) -> Dict[str, Any]:
        """
        Provision one confirmed order.

        Args:
            order_id: Order to provision
            reset_failed: allow failed → pending before claiming (batch retries only)

        Returns:
            Dict with 'status' ∈ {active, provisioning, failed, skipped, not_found} and details
        """
        order = await self.store.get_order(order_id)
        if order is None:
            logger.error(f"❌ PROVISIONING: Order {order_id} not found")
            return {'status': 'not_found', 'success': False, 'order_id': order_id}

        if order.status != OrderStatus.CONFIRMED:
            logger.info(f"⏭️ PROVISIONING: Order {order_id} status is {order.status.value}, not confirmed - skipping")
            return self._skipped(order, f"order status {order.status.value}")

        claimed = await self._claim(order, reset_failed)
        if claimed is None:
            current = await self.store.get_order(order_id)
            state = current.provisioning_status.value if current else 'missing'
            return self._skipped(order, f"provisioning_status {state}")

        order, provider, catalog_item = claimed
        logger.info(f"🚀 PROVISIONING: Claimed order {order.id} → {provider.value}")

        result = await self._invoke_provider(order, provider, catalog_item)
        if result.success:
            return await self._commit_success(order, provider, result)
        return await self._commit_failure(order, provider, result.error or 'Unknown provisioning error', result.error_code)

    def _skipped(self, order: Order, reason: str) -> Dict[str, Any]:
        return {
            'status': 'skipped',
            'success': False,
            'order_id': order.id,
            'reason': reason,
        }

    async def _catalog_item(self, order: Order) -> Optional[CatalogItem]:
        if not order.catalog_item_id:
            return None
        return await self.store.get_catalog_item(order.catalog_item_id)

    async def has_provisioning_config(self, order: Order) -> bool:
        """Whether the selected provider has what it needs to attempt this order"""
        catalog_item = await self._catalog_item(order)
        _, adapter = self.registry.select(order, catalog_item)
        return adapter.has_provisioning_config(order, catalog_item)

    async def _claim(self, order: Order, reset_failed: bool):
        """Move the order to provisioning; None when another caller owns it or it is not eligible"""
        status = order.provisioning_status

        if status in IN_FLIGHT_OR_DONE:
            logger.info(f"🔒 PROVISIONING: Order {order.id} already {status.value} - no-op")
            return None

        if status == ProvisioningStatus.FAILED:
            if not reset_failed:
                logger.info(f"⏭️ PROVISIONING: Order {order.id} failed earlier; retry reset not requested")
                return None
            await self.store.compare_and_set_provisioning_status(
                order.id, [ProvisioningStatus.FAILED], ProvisioningStatus.PENDING
            )
        elif status == ProvisioningStatus.UNSET:
            await self.store.compare_and_set_provisioning_status(
                order.id, [ProvisioningStatus.UNSET], ProvisioningStatus.PENDING
            )
        elif status != ProvisioningStatus.PENDING:
            logger.info(f"⏭️ PROVISIONING: Order {order.id} is {status.value} - not provisionable")
            return None

        catalog_item = await self._catalog_item(order)
        provider, _ = self.registry.select(order, catalog_item)
        os_name = order.os or determine_os(order.product_name)

        won = await self.store.compare_and_set_provisioning_status(
            order.id, [ProvisioningStatus.PENDING], ProvisioningStatus.PROVISIONING,
            provider=provider, os=os_name,
        )
        if not won:
            logger.warning(f"🚫 PROVISIONING: Lost claim race for order {order.id}")
            return None

        order.provisioning_status = ProvisioningStatus.PROVISIONING
        order.provider = provider
        order.os = os_name
        return order, provider, catalog_item

    async def _invoke_provider(self, order: Order, provider: ProviderName,
                               catalog_item: Optional[CatalogItem]) -> ProvisionResult:
        adapter = self.registry.get(provider)
        try:
            return await adapter.provision(order, catalog_item)
        except ProviderError as e:
            return ProvisionResult.failure(e.message, e.code, raw=e.details)
        except Exception as e:
            logger.exception(f"💥 PROVISIONING: Unexpected adapter error for order {order.id}")
            return ProvisionResult.failure(str(e) or type(e).__name__, ErrorCode.UNKNOWN)

    async def _commit_success(self, order: Order, provider: ProviderName, result: ProvisionResult) -> Dict[str, Any]:
        metadata = {k: v for k, v in order.provider_metadata.items() if not k.startswith('staged_')}
        base_fields = {
            'provider': provider,
            'provider_service_id': result.service_id,
            'os': result.os or order.os,
            'auto_provisioned': True,
            'provisioning_error': None,
            'provisioning_error_code': None,
        }

        if result.is_complete:
            fields = dict(base_fields)
            fields.update(
                status=OrderStatus.ACTIVE,
                ip_address=result.ip_address,
                username=result.username,
                password=result.password,
                provider_metadata=metadata,
            )
            if order.expiry_date is None:
                fields['expiry_date'] = utc_now() + timedelta(days=self.term_days)
            committed = await self.store.compare_and_set_provisioning_status(
                order.id, [ProvisioningStatus.PROVISIONING], ProvisioningStatus.ACTIVE, **fields
            )
            if not committed:
                logger.error(f"🚨 PROVISIONING: Order {order.id} changed state during provisioning - result not committed")
                return {'status': 'conflict', 'success': False, 'order_id': order.id, 'service_id': result.service_id}

            audit_log('provisioning_succeeded', order_id=order.id, user_id=order.user_id,
                      provider=provider.value, service_id=result.service_id, ip_address=result.ip_address)
            logger.info(f"✅ PROVISIONING: Order {order.id} active on {provider.value} ({result.ip_address})")
            await notify_safe(self.notifier, PROVISIONING_SUCCEEDED, order.user_id, await self.store.get_order(order.id))
            return {
                'status': 'active',
                'success': True,
                'order_id': order.id,
                'provider': provider.value,
                'service_id': result.service_id,
                'ip_address': result.ip_address,
            }

        # Provider accepted the order but has not surfaced IP/credentials yet; status sync finishes it
        if result.username:
            metadata['staged_username'] = result.username
        if result.password:
            metadata['staged_password'] = result.password
        fields = dict(base_fields)
        fields.update(ip_address=result.ip_address, provider_metadata=metadata)
        await self.store.update_fields(order.id, **fields)
        logger.info(f"⌛ PROVISIONING: Order {order.id} accepted by {provider.value} (service {result.service_id}), awaiting credentials")
        await notify_safe(self.notifier, PROVISIONING_PENDING, order.user_id, await self.store.get_order(order.id))
        return {
            'status': 'provisioning',
            'success': True,
            'order_id': order.id,
            'provider': provider.value,
            'service_id': result.service_id,
        }

    async def _commit_failure(self, order: Order, provider: ProviderName, message: str,
                              code: Optional[ErrorCode]) -> Dict[str, Any]:
        code_value = code.value if isinstance(code, ErrorCode) else code
        committed = await self.store.compare_and_set_provisioning_status(
            order.id, [ProvisioningStatus.PROVISIONING], ProvisioningStatus.FAILED,
            provider=provider,
            provisioning_error=message,
            provisioning_error_code=code_value,
            auto_provisioned=True,
        )
        if not committed:
            logger.error(f"🚨 PROVISIONING: Could not record failure for order {order.id} - state changed underneath")

        logger.error(f"❌ PROVISIONING: Order {order.id} failed on {provider.value}: {message} [{code_value}]")
        audit_log('provisioning_failed', order_id=order.id, user_id=order.user_id,
                  provider=provider.value, error=message, error_code=code_value)
        await notify_safe(self.notifier, PROVISIONING_FAILED, order.user_id, await self.store.get_order(order.id))
        return {
            'status': 'failed',
            'success': False,
            'order_id': order.id,
            'provider': provider.value,
            'error': message,
            'error_code': code_value,
        }

    # ================================================================
    # EXPLICIT LIFECYCLE ACTIONS
    # ================================================================

    async def suspend_order(self, order_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        return await self._change_lifecycle(order_id, ProvisioningStatus.SUSPENDED, reason)

    async def terminate_order(self, order_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        return await self._change_lifecycle(order_id, ProvisioningStatus.TERMINATED, reason)

    async def _change_lifecycle(self, order_id: str, target: ProvisioningStatus, reason: Optional[str]) -> Dict[str, Any]:
        order = await self.store.get_order(order_id)
        if order is None:
            raise ProvisioningError(f"Order {order_id} not found")
        if not can_transition(order.provisioning_status, target):
            raise InvalidTransitionError(
                f"Order {order_id} cannot move {order.provisioning_status.value} → {target.value}"
            )

        adapter = self.registry.adapter_for_order(order)
        service_ref = order.provider_service_id or order.ip_address
        provider_result: Dict[str, Any] = {}
        if service_ref:
            try:
                if target == ProvisioningStatus.SUSPENDED:
                    provider_result = await adapter.suspend(service_ref)
                else:
                    provider_result = await adapter.terminate(service_ref)
            except ProviderError as e:
                logger.error(f"❌ LIFECYCLE: {adapter.name} refused {target.value} for order {order_id}: {e.message}")
                return {'success': False, 'order_id': order_id, 'error': e.message, 'error_code': e.code.value}

        metadata = dict(order.provider_metadata)
        fields: Dict[str, Any] = {
            'username': None,
            'password': None,
            'last_action': target.value,
            'last_action_at': utc_now(),
        }
        if target == ProvisioningStatus.SUSPENDED:
            # credentials return to the order when the server comes back
            if order.username:
                metadata['staged_username'] = order.username
            if order.password:
                metadata['staged_password'] = order.password
        else:
            metadata = {k: v for k, v in metadata.items() if not k.startswith('staged_')}
            fields['status'] = OrderStatus.TERMINATED
        fields['provider_metadata'] = metadata

        changed = await self.store.compare_and_set_provisioning_status(
            order_id, [order.provisioning_status], target, **fields
        )
        if not changed:
            return {'success': False, 'order_id': order_id, 'error': 'Order state changed concurrently'}

        audit_log(f"order_{target.value}", order_id=order_id, user_id=order.user_id, reason=reason)
        return {'success': True, 'order_id': order_id, 'provisioning_status': target.value, 'provider_result': provider_result}

    async def get_stats(self) -> Dict[str, Any]:
        return {'provisioning_status_counts': await self.store.provisioning_stats()}
