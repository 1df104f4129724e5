"""
Service wiring
One ServiceContainer per application; tests build it around an in-memory store and fakes
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Request

from config import Config, get_config
from group_notifications import Notifier, build_notifier
from models.order_models import ProviderName
from services.batch_provisioner import BatchProvisioner
from services.checkout import CheckoutService
from services.hostycare import HostycareService
from services.manual_provider import ManualProvider
from services.order_store import OrderStore, PostgresOrderStore
from services.payment_provider import PaymentGatewayFactory
from services.provider_base import ProviderAdapter
from services.provider_registry import ProviderRegistry
from services.provisioning_dispatcher import ProvisioningDispatcher
from services.provisioning_orchestrator import ProvisioningOrchestrator
from services.renewal_processor import RenewalEngine
from services.renewal_recovery import RecoveryConfig, RenewalRecoveryService
from services.reseller_wallet import ResellerWalletService
from services.retry_policy import BatchProvisionConfig
from services.server_actions import ServerActionService
from services.smartvps import SmartVpsService
from services.status_sync import StatusSync, StatusSyncConfig
from utils.credentials import CredentialVault
from webhook_handler import PaymentWebhookHandler

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    config: Config
    store: OrderStore
    registry: ProviderRegistry
    gateways: PaymentGatewayFactory
    notifier: Notifier
    orchestrator: ProvisioningOrchestrator
    dispatcher: ProvisioningDispatcher
    batch_provisioner: BatchProvisioner
    renewal_engine: RenewalEngine
    recovery: RenewalRecoveryService
    status_sync: StatusSync
    webhook_handler: PaymentWebhookHandler
    server_actions: ServerActionService
    wallet: ResellerWalletService
    checkout: CheckoutService

    def batch_config(self) -> BatchProvisionConfig:
        return BatchProvisionConfig.from_settings(self.config.provisioning)

    async def close(self) -> None:
        await self.dispatcher.shutdown()
        await self.registry.close()
        await self.gateways.close()


def build_services(
    config: Optional[Config] = None,
    store: Optional[OrderStore] = None,
    adapters: Optional[Dict[ProviderName, ProviderAdapter]] = None,
    gateways: Optional[PaymentGatewayFactory] = None,
    notifier: Optional[Notifier] = None,
) -> ServiceContainer:
    config = config or get_config()
    term_days = config.renewal.renewal_days

    if store is None:
        store = PostgresOrderStore(CredentialVault(config.security.credentials_encryption_key))
    if adapters is None:
        adapters = {
            ProviderName.HOSTYCARE: HostycareService(),
            ProviderName.SMARTVPS: SmartVpsService(),
            ProviderName.MANUAL: ManualProvider(),
        }
    registry = ProviderRegistry(adapters)
    gateways = gateways or PaymentGatewayFactory.from_config(config.payment)
    notifier = notifier or build_notifier(config.notifications.telegram_bot_token, config.notifications.admin_group_id)

    orchestrator = ProvisioningOrchestrator(store, registry, notifier, term_days=term_days)
    dispatcher = ProvisioningDispatcher(orchestrator)
    renewal_engine = RenewalEngine(store, registry, gateways, notifier, config.renewal)
    webhook_handler = PaymentWebhookHandler(store, gateways, dispatcher, renewal_engine, notifier, term_days=term_days)
    wallet = ResellerWalletService(store)

    logger.info(f"🧩 Services wired: store={type(store).__name__}, gateways={gateways.gateway_order}")
    return ServiceContainer(
        config=config,
        store=store,
        registry=registry,
        gateways=gateways,
        notifier=notifier,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
        batch_provisioner=BatchProvisioner(store, orchestrator),
        renewal_engine=renewal_engine,
        recovery=RenewalRecoveryService(store, gateways, renewal_engine, RecoveryConfig.from_settings(config.renewal)),
        status_sync=StatusSync(store, registry, notifier, StatusSyncConfig.from_settings(config.provisioning, term_days)),
        webhook_handler=webhook_handler,
        server_actions=ServerActionService(store, registry, notifier),
        wallet=wallet,
        checkout=CheckoutService(store, gateways, wallet, webhook_handler),
    )


def get_services(request: Request) -> ServiceContainer:
    """FastAPI dependency: the container attached to the running app"""
    return request.app.state.services
