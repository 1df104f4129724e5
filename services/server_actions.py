"""
Server action requests
Manual queue for orders without a provider API, direct adapter calls for the rest
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from group_notifications import SERVER_ACTION_PROCESSED, SERVER_ACTION_REQUESTED, Notifier, notify_safe
from models.order_models import (
    ActionRequestStatus, Order, ProviderName, ProvisioningStatus, ServerAction, ServerActionRequest
)
from monitoring.production_logging import audit_log
from services.order_store import DuplicateActionRequestError, OrderStore
from services.provider_base import ProviderError
from services.provider_registry import ProviderRegistry, select_provider
from utils.credentials import generate_password
from utils.timezone_utils import utc_now

logger = logging.getLogger(__name__)

DECISIONS = {
    'approve': ActionRequestStatus.APPROVED,
    'reject': ActionRequestStatus.REJECTED,
}


class ActionQueueError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def parse_action(action: str) -> ServerAction:
    try:
        return ServerAction(str(action).strip().lower())
    except ValueError:
        valid = ', '.join(a.value for a in ServerAction)
        raise ActionQueueError(f"Invalid action. Must be one of: {valid}", 400)


def is_auto_provisioned(order: Order) -> bool:
    """Orders a provider API can act on directly"""
    provider, _ = select_provider(order)
    if provider == ProviderName.HOSTYCARE:
        return bool(order.provider_service_id)
    if provider == ProviderName.SMARTVPS:
        return bool(order.provider_service_id or order.ip_address)
    return False


class ServerActionService:
    def __init__(self, store: OrderStore, registry: ProviderRegistry, notifier: Optional[Notifier] = None):
        self.store = store
        self.registry = registry
        self.notifier = notifier

    async def _owned_order(self, order_id: str, user_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None or order.user_id != user_id:
            raise ActionQueueError("Order not found", 404)
        return order

    # ================================================================
    # MANUAL QUEUE
    # ================================================================

    async def submit_request(self, order_id: str, user_id: str, action: str,
                             payload: Optional[Dict[str, Any]] = None) -> ServerActionRequest:
        server_action = parse_action(action)
        order = await self._owned_order(order_id, user_id)
        if is_auto_provisioned(order):
            raise ActionQueueError(
                "This order supports direct server actions. Please use the action buttons instead.", 400
            )

        request = ServerActionRequest(
            id=uuid.uuid4().hex,
            order_id=order.id,
            user_id=user_id,
            action=server_action,
            payload=dict(payload or {}),
            product_name=order.product_name,
            ip_address=order.ip_address or 'Not assigned',
            os=order.os or 'Unknown',
            memory=order.memory or 'Unknown',
            customer_name=order.customer_name or 'Unknown',
            customer_email=order.customer_email or 'Unknown',
            requested_at=utc_now(),
        )
        try:
            created = await self.store.create_action_request(request)
        except DuplicateActionRequestError:
            raise ActionQueueError(f"A pending {server_action.value} request already exists for this order", 409)

        logger.info(f"🛠️ SERVER ACTION: Request {created.id} for order {order.id}: {server_action.value}")
        await notify_safe(self.notifier, SERVER_ACTION_REQUESTED, user_id, order, action=server_action.value)
        return created

    async def get_status(self, order_id: str, user_id: str) -> Optional[ServerActionRequest]:
        await self._owned_order(order_id, user_id)
        return await self.store.get_latest_pending_action(order_id)

    async def list_pending(self) -> List[ServerActionRequest]:
        return await self.store.list_pending_actions()

    async def process_request(self, request_id: str, decision: str, admin_notes: Optional[str] = None) -> ServerActionRequest:
        status = DECISIONS.get(str(decision).lower())
        if status is None:
            raise ActionQueueError('Invalid decision. Must be "approve" or "reject"', 400)

        request = await self.store.get_action_request(request_id)
        if request is None:
            raise ActionQueueError("Request not found", 404)
        if request.status != ActionRequestStatus.PENDING:
            raise ActionQueueError(f"Request already {request.status.value}", 409)
        if not await self.store.resolve_action_request(request_id, status, admin_notes):
            raise ActionQueueError("Request was processed concurrently", 409)

        if status == ActionRequestStatus.APPROVED:
            await self.store.update_fields(request.order_id, last_action=request.action.value, last_action_at=utc_now())

        audit_log('server_action_processed', order_id=request.order_id, user_id=request.user_id,
                  request_id=request_id, action=request.action.value, decision=status.value)
        logger.info(f"🛠️ SERVER ACTION: Request {request_id} {status.value}")
        processed = await self.store.get_action_request(request_id)
        await notify_safe(self.notifier, SERVER_ACTION_PROCESSED, request.user_id, await self.store.get_order(request.order_id),
                          action=request.action.value, decision=status.value)
        return processed

    # ================================================================
    # DIRECT ACTIONS
    # ================================================================

    async def perform_direct_action(self, order_id: str, user_id: str, action: str,
                                    payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        server_action = parse_action(action)
        order = await self._owned_order(order_id, user_id)
        if not is_auto_provisioned(order):
            raise ActionQueueError("This order is managed manually. Please submit an action request.", 400)
        if order.provisioning_status != ProvisioningStatus.ACTIVE:
            raise ActionQueueError(f"Server is not ready ({order.provisioning_status.value})", 409)

        payload = payload or {}
        adapter = self.registry.adapter_for_order(order)
        service_ref = order.provider_service_id or order.ip_address
        fields: Dict[str, Any] = {'last_action': server_action.value, 'last_action_at': utc_now()}
        try:
            if server_action == ServerAction.START:
                result = await adapter.start(service_ref)
            elif server_action == ServerAction.STOP:
                result = await adapter.stop(service_ref)
            elif server_action == ServerAction.RESTART:
                result = await adapter.reboot(service_ref)
            elif server_action in (ServerAction.FORMAT, ServerAction.REINSTALL):
                result = await adapter.format(service_ref, payload.get('os') or order.os)
                if result.get('password'):
                    fields['password'] = result['password']
                if payload.get('os'):
                    fields['os'] = payload['os']
            else:
                password = payload.get('password') or generate_password()
                result = await adapter.change_password(service_ref, password)
                fields['password'] = password
        except ProviderError as e:
            logger.error(f"❌ SERVER ACTION: {adapter.name} {server_action.value} failed for order {order.id}: {e.message}")
            raise ActionQueueError(e.message, 502)

        await self.store.update_fields(order.id, **fields)
        audit_log('server_action_direct', order_id=order.id, user_id=user_id, action=server_action.value,
                  provider=adapter.name)
        safe_result = {k: v for k, v in (result or {}).items() if k != 'password'}
        return {'success': True, 'order_id': order.id, 'action': server_action.value, 'result': safe_result}
