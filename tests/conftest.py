from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from config import Config, reset_config
from group_notifications import LoggingNotifier
from models.order_models import Order, OrderStatus, ProviderName, ProvisioningStatus
from services.container import ServiceContainer, build_services
from services.order_store import InMemoryOrderStore
from services.payment_gateway import (
    GatewayOrder, PaymentGateway, PaymentGatewayError, PaymentVerification, WebhookEvent, lower_headers
)
from services.payment_provider import PaymentGatewayFactory
from services.provider_base import ProviderAdapter, ProviderStatus, ProvisionResult
from services.manual_provider import ManualProvider
from utils.timezone_utils import utc_now

ADMIN_KEY = "test-admin-key"
CRON_SECRET = "test-cron-secret"


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch) -> None:
    # Every test reads a fresh configuration built from these variables.
    for name in (
        "DATABASE_URL", "TELEGRAM_BOT_TOKEN", "HOSTYCARE_USERNAME", "HOSTYCARE_API_KEY",
        "SMARTVPS_USERNAME", "SMARTVPS_PASSWORD", "PUBLIC_BASE_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("ADMIN_API_KEY", ADMIN_KEY)
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")
    reset_config()
    yield
    reset_config()


def complete_result(service_id: str = "svc-1", ip: str = "10.0.0.5") -> ProvisionResult:
    return ProvisionResult(success=True, service_id=service_id, ip_address=ip, username="root",
                           password="Secr3t@pass", os="Ubuntu 22")


class FakeAdapter(ProviderAdapter):
    """Scripted provider: provision() pops queued outcomes (ProvisionResult or exception)"""

    def __init__(self, name: str = "hostycare", outcomes: Optional[List[Any]] = None,
                 status: Any = None) -> None:
        self.name = name
        self.outcomes = list(outcomes or [])
        self.status = status if status is not None else ProviderStatus()
        self.renew_error: Optional[Exception] = None
        self.calls: List[tuple] = []
        self.configured = True

    def is_available(self) -> bool:
        return True

    def has_provisioning_config(self, order, catalog_item=None) -> bool:
        return self.configured

    async def provision(self, order, catalog_item=None) -> ProvisionResult:
        self.calls.append(("provision", order.id))
        await asyncio.sleep(0)
        outcome = self.outcomes.pop(0) if self.outcomes else complete_result()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def renew(self, service_id: str) -> Dict[str, Any]:
        self.calls.append(("renew", service_id))
        if self.renew_error is not None:
            raise self.renew_error
        return {"success": True, "result": "renewed"}

    async def start(self, service_id: str) -> Dict[str, Any]:
        self.calls.append(("start", service_id))
        return {"success": True}

    async def stop(self, service_id: str) -> Dict[str, Any]:
        self.calls.append(("stop", service_id))
        return {"success": True}

    async def reboot(self, service_id: str) -> Dict[str, Any]:
        self.calls.append(("reboot", service_id))
        return {"success": True}

    async def format(self, service_id: str, os_name: Optional[str] = None) -> Dict[str, Any]:
        self.calls.append(("format", service_id))
        return {"success": True, "password": "N3w@password"}

    async def change_password(self, service_id: str, password: str) -> Dict[str, Any]:
        self.calls.append(("change_password", service_id))
        return {"success": True}

    async def suspend(self, service_id: str) -> Dict[str, Any]:
        self.calls.append(("suspend", service_id))
        return {"success": True}

    async def terminate(self, service_id: str) -> Dict[str, Any]:
        self.calls.append(("terminate", service_id))
        return {"success": True}

    async def get_status(self, service_id: str) -> ProviderStatus:
        self.calls.append(("status", service_id))
        if isinstance(self.status, Exception):
            raise self.status
        return self.status

    def count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call[0] == operation)


class FakeGateway(PaymentGateway):
    """In-process gateway; webhooks are JSON and 'x-signature: valid' authenticates them"""

    def __init__(self, name: str, signed: bool = True, available: bool = True, fail_create: bool = False) -> None:
        super().__init__()
        self.name = name
        self.signed_webhooks = signed
        self.available = available
        self.fail_create = fail_create
        self.created: List[str] = []
        self.statuses: Dict[str, Any] = {}

    def is_available(self) -> bool:
        return self.available

    def mark_paid(self, reference: str, amount: float, payment_id: str = "pay_1") -> None:
        self.statuses[reference] = PaymentVerification(
            success=True, gateway=self.name, status="success", payment_id=payment_id, amount=amount,
        )

    async def create_order(self, amount, customer, return_url, reference, notify_url=None, note=None) -> GatewayOrder:
        if self.fail_create:
            raise PaymentGatewayError(f"{self.name} is down", self.name)
        self.created.append(reference)
        return GatewayOrder(gateway=self.name, gateway_order_id=f"{self.name}_{reference}", reference=reference,
                            amount=amount, payment_url=f"https://pay.example/{reference}")

    async def verify(self, callback_payload: Dict[str, Any]) -> PaymentVerification:
        return await self.fetch_payment_status(callback_payload.get("order_id"))

    async def fetch_payment_status(self, reference: str, created_at: Optional[datetime] = None) -> PaymentVerification:
        outcome = self.statuses.get(reference)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or PaymentVerification(success=False, gateway=self.name, status="pending")

    def verify_webhook(self, raw_body: bytes, headers) -> bool:
        return lower_headers(headers).get("x-signature") == "valid"

    def parse_webhook(self, raw_body: bytes, headers) -> WebhookEvent:
        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise PaymentGatewayError(f"bad body: {e}", self.name)
        status = payload.get("status", "")
        return WebhookEvent(
            gateway=self.name,
            reference=payload.get("reference"),
            success=status == "success",
            status=status,
            payment_id=payload.get("payment_id"),
            amount=payload.get("amount"),
            gateway_order_id=payload.get("gateway_order_id"),
        )


def make_order(**overrides: Any) -> Order:
    fields: Dict[str, Any] = {
        "id": uuid.uuid4().hex,
        "user_id": "user-1",
        "product_name": "Linux VPS",
        "memory": "4GB",
        "price": 499.0,
        "client_txn_id": uuid.uuid4().hex[:16],
        "provider": ProviderName.HOSTYCARE,
        "created_at": utc_now(),
    }
    fields.update(overrides)
    return Order(**fields)


def active_order(**overrides: Any) -> Order:
    fields: Dict[str, Any] = {
        "status": OrderStatus.ACTIVE,
        "provisioning_status": ProvisioningStatus.ACTIVE,
        "provider_service_id": "svc-1",
        "ip_address": "10.0.0.5",
        "username": "root",
        "password": "Secr3t@pass",
        "auto_provisioned": True,
        "expiry_date": utc_now() + timedelta(days=5),
    }
    fields.update(overrides)
    return make_order(**fields)


def webhook_body(**payload: Any) -> bytes:
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def hostycare() -> FakeAdapter:
    return FakeAdapter("hostycare")


@pytest.fixture
def smartvps() -> FakeAdapter:
    return FakeAdapter("smartvps")


@pytest.fixture
def gateways() -> PaymentGatewayFactory:
    return PaymentGatewayFactory({
        "cashfree": FakeGateway("cashfree"),
        "razorpay": FakeGateway("razorpay"),
        "upigateway": FakeGateway("upigateway", signed=False),
    }, ["cashfree", "razorpay", "upigateway"])


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def config() -> Config:
    settings = Config()
    settings.provisioning.retry_delay_seconds = 0
    settings.provisioning.inter_order_delay_seconds = 0
    settings.provisioning.status_sync_delay_seconds = 0
    settings.scheduler.enabled = False
    return settings


@pytest.fixture
def services(config, store, hostycare, smartvps, gateways, notifier) -> ServiceContainer:
    return build_services(
        config=config,
        store=store,
        adapters={
            ProviderName.HOSTYCARE: hostycare,
            ProviderName.SMARTVPS: smartvps,
            ProviderName.MANUAL: ManualProvider(),
        },
        gateways=gateways,
        notifier=notifier,
    )

