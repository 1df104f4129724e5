"""
Manual fulfillment provider
Orders routed here are set up by staff; control actions go through the server action queue.
"""

import logging
from typing import Any, Dict, Optional

from models.order_models import CatalogItem, Order, ProviderName
from services.provider_base import ErrorCode, ProviderAdapter, ProviderError, ProviderStatus, ProvisionResult

logger = logging.getLogger(__name__)

MANUAL_FULFILLMENT_MESSAGE = "Manual fulfillment required - no provider API for this product"


class ManualProvider(ProviderAdapter):
    name = ProviderName.MANUAL.value
    supports_direct_actions = False

    def is_available(self) -> bool:
        return True

    async def provision(self, order: Order, catalog_item: Optional[CatalogItem] = None) -> ProvisionResult:
        logger.info(f"🧑‍🔧 MANUAL: Order {order.id} ({order.product_name}) queued for staff fulfillment")
        return ProvisionResult.failure(MANUAL_FULFILLMENT_MESSAGE, ErrorCode.MANUAL_REQUIRED)

    async def renew(self, service_id: str) -> Dict[str, Any]:
        # Renewal of a manually managed server needs no upstream call
        return {'success': True, 'manual': True, 'message': 'No provider API call required'}

    def _unsupported(self, action: str):
        raise ProviderError(f"{action} must be requested through the server action queue", ErrorCode.MANUAL_REQUIRED)

    async def start(self, service_id: str) -> Dict[str, Any]:
        self._unsupported('start')

    async def stop(self, service_id: str) -> Dict[str, Any]:
        self._unsupported('stop')

    async def reboot(self, service_id: str) -> Dict[str, Any]:
        self._unsupported('reboot')

    async def format(self, service_id: str, os_name: Optional[str] = None) -> Dict[str, Any]:
        self._unsupported('format')

    async def change_password(self, service_id: str, password: str) -> Dict[str, Any]:
        self._unsupported('changepassword')

    async def suspend(self, service_id: str) -> Dict[str, Any]:
        return {'success': True, 'manual': True}

    async def terminate(self, service_id: str) -> Dict[str, Any]:
        return {'success': True, 'manual': True}

    async def get_status(self, service_id: str) -> ProviderStatus:
        return ProviderStatus()
