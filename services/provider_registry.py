"""
Provider selection and adapter lookup

Selection order: explicit order.provider, catalog metadata (provider attribute or tag),
an existing provider service id, then name/IP heuristics as a last resort. Manual wins
when nothing matches.
"""

import logging
import re
from typing import Dict, Optional, Tuple

from models.order_models import CatalogItem, Order, ProviderName
from services.provider_base import ProviderAdapter

logger = logging.getLogger(__name__)

SMARTVPS_IP_PREFIX = '103.195'
SMARTVPS_NAME_MARKERS = (SMARTVPS_IP_PREFIX, '🏅')
_IPV4 = re.compile(r'^(?:\d{1,3}\.){3}\d{1,3}$')


def _provider_from_text(value: Optional[str]) -> Optional[ProviderName]:
    if not value:
        return None
    try:
        return ProviderName(str(value).strip().lower())
    except ValueError:
        return None


def select_provider(order: Order, catalog_item: Optional[CatalogItem] = None) -> Tuple[ProviderName, str]:
    """Return (provider, reason) for an order"""
    if order.provider:
        return order.provider, 'explicit'

    if catalog_item:
        tagged = _provider_from_text(catalog_item.provider)
        if tagged:
            return tagged, 'catalog_provider'
        for tag in catalog_item.tags:
            tagged = _provider_from_text(tag)
            if tagged:
                return tagged, 'catalog_tag'

    service_id = (order.provider_service_id or '').strip()
    if service_id:
        if _IPV4.match(service_id):
            return ProviderName.SMARTVPS, 'service_id'
        if service_id.isdigit():
            return ProviderName.HOSTYCARE, 'service_id'

    product_name = order.product_name or ''
    if any(marker in product_name for marker in SMARTVPS_NAME_MARKERS) or \
            (order.ip_address or '').startswith(SMARTVPS_IP_PREFIX):
        logger.warning(f"⚠️ PROVIDER: Order {order.id} routed to SmartVPS by name/IP heuristic - tag the catalog item instead")
        return ProviderName.SMARTVPS, 'heuristic'

    return ProviderName.MANUAL, 'default'


class ProviderRegistry:
    """Holds one adapter instance per provider"""

    def __init__(self, adapters: Dict[ProviderName, ProviderAdapter]):
        if ProviderName.MANUAL not in adapters:
            raise ValueError("A manual provider adapter is required")
        self.adapters = adapters

    def get(self, provider: Optional[ProviderName]) -> ProviderAdapter:
        adapter = self.adapters.get(provider) if provider else None
        if adapter is None:
            logger.warning(f"⚠️ PROVIDER: No adapter registered for {provider}, using manual")
            return self.adapters[ProviderName.MANUAL]
        return adapter

    def select(self, order: Order, catalog_item: Optional[CatalogItem] = None) -> Tuple[ProviderName, ProviderAdapter]:
        provider, reason = select_provider(order, catalog_item)
        logger.info(f"🧭 PROVIDER: Order {order.id} → {provider.value} ({reason})")
        return provider, self.get(provider)

    def adapter_for_order(self, order: Order) -> ProviderAdapter:
        provider, _ = select_provider(order)
        return self.get(provider)

    async def close(self) -> None:
        for adapter in self.adapters.values():
            await adapter.close()
