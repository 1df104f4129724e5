from __future__ import annotations

from conftest import make_order
from models.order_models import OrderStatus, ProviderName, ProvisioningStatus
from services.provider_base import ErrorCode, NormalizedStatus, ProviderError, ProviderStatus


def awaiting_order(**overrides):
    fields = {
        "status": OrderStatus.CONFIRMED,
        "provisioning_status": ProvisioningStatus.PROVISIONING,
        "provider_service_id": "777",
        "auto_provisioned": True,
        "provider_metadata": {"staged_username": "root", "staged_password": "Secr3t@pass"},
    }
    fields.update(overrides)
    return make_order(**fields)


async def test_order_activates_once_ip_appears(services, store, hostycare, notifier) -> None:
    hostycare.status = ProviderStatus(machine_status=NormalizedStatus.PROVISIONING, ip_address="45.1.2.3")
    order = await store.create_order(awaiting_order())

    summary = await services.status_sync.run()

    assert summary["checked"] == 1
    assert summary["activated"] == 1
    stored = await store.get_order(order.id)
    assert stored.provisioning_status == ProvisioningStatus.ACTIVE
    assert stored.status == OrderStatus.ACTIVE
    assert stored.ip_address == "45.1.2.3"
    assert stored.password == "Secr3t@pass"
    assert stored.provider_metadata == {}
    assert stored.expiry_date is not None
    assert stored.machine_status == NormalizedStatus.PROVISIONING.value
    assert notifier.events[-1]["event"] == "provisioning_succeeded"


async def test_missing_credentials_only_records_observation(services, store, hostycare) -> None:
    hostycare.status = ProviderStatus(machine_status=NormalizedStatus.PROVISIONING, ip_address="45.1.2.3")
    order = await store.create_order(awaiting_order(provider_metadata={}))

    summary = await services.status_sync.run()

    assert summary["updated"] == 1
    stored = await store.get_order(order.id)
    assert stored.provisioning_status == ProvisioningStatus.PROVISIONING
    assert stored.ip_address == "45.1.2.3"
    assert stored.last_sync_at is not None


async def test_suspended_order_needs_active_reading(services, store, hostycare) -> None:
    order = await store.create_order(awaiting_order(
        status=OrderStatus.ACTIVE, provisioning_status=ProvisioningStatus.SUSPENDED, ip_address="45.1.2.3",
    ))

    hostycare.status = ProviderStatus(machine_status=NormalizedStatus.SUSPENDED)
    await services.status_sync.run()
    assert (await store.get_order(order.id)).provisioning_status == ProvisioningStatus.SUSPENDED

    hostycare.status = ProviderStatus(machine_status=NormalizedStatus.SUSPENDED, power_status=NormalizedStatus.ACTIVE)
    summary = await services.status_sync.run()
    stored = await store.get_order(order.id)
    assert summary["activated"] == 1
    assert stored.provisioning_status == ProvisioningStatus.ACTIVE
    assert stored.has_credentials


async def test_terminated_reading_moves_order_to_terminated(services, store, hostycare) -> None:
    hostycare.status = ProviderStatus(machine_status=NormalizedStatus.TERMINATED)
    order = await store.create_order(awaiting_order(
        status=OrderStatus.ACTIVE, provisioning_status=ProvisioningStatus.SUSPENDED,
    ))

    summary = await services.status_sync.run()

    assert summary["transitioned"] == 1
    stored = await store.get_order(order.id)
    assert stored.provisioning_status == ProvisioningStatus.TERMINATED
    assert stored.status == OrderStatus.TERMINATED


async def test_failed_reading_marks_provisioning_order_failed(services, store, hostycare) -> None:
    hostycare.status = ProviderStatus(machine_status=NormalizedStatus.FAILED)
    order = await store.create_order(awaiting_order())

    await services.status_sync.run()

    stored = await store.get_order(order.id)
    assert stored.provisioning_status == ProvisioningStatus.FAILED
    assert stored.provisioning_error == "Provider reported failed"


async def test_provider_errors_are_counted_not_raised(services, store, hostycare, smartvps) -> None:
    hostycare.status = ProviderError("Service lookup failed", ErrorCode.UNAVAILABLE)
    smartvps.status = ProviderStatus(machine_status=NormalizedStatus.ACTIVE, ip_address="103.195.1.10")
    await store.create_order(awaiting_order())
    await store.create_order(awaiting_order(provider=ProviderName.SMARTVPS, provider_service_id="103.195.1.10"))

    summary = await services.status_sync.run()

    assert summary["checked"] == 2
    assert summary["errors"] == 1
    assert summary["activated"] == 1


async def test_orders_with_credentials_or_manual_provider_are_not_polled(services, store, hostycare) -> None:
    await store.create_order(awaiting_order(username="root", password="x", ip_address="1.1.1.1"))
    await store.create_order(awaiting_order(provider=ProviderName.MANUAL))
    await store.create_order(awaiting_order(provider_service_id=None))

    summary = await services.status_sync.run()

    assert summary["checked"] == 0
    assert hostycare.count("status") == 0
