from __future__ import annotations

from dataclasses import replace

from conftest import make_order
from models.order_models import OrderStatus, ProviderName, ProvisioningStatus
from services.batch_provisioner import BatchProvisioner
from services.provider_base import ErrorCode, ProviderError, ProvisionResult
from services.retry_policy import MANUAL_REVIEW_PREFIX, BatchProvisionConfig


def fast_config(**overrides) -> BatchProvisionConfig:
    config = BatchProvisionConfig(retry_delay_seconds=0, inter_order_delay_seconds=0)
    return replace(config, **overrides)


class FakeClock:
    def __init__(self, step: float) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


async def test_transient_errors_retry_until_success(services, store, hostycare) -> None:
    hostycare.outcomes = [
        ProvisionResult.failure("Rate limit exceeded", ErrorCode.RATE_LIMITED),
        ProvisionResult.failure("The following IP(s) are used by another VPS", ErrorCode.IP_CONFLICT),
    ]
    order = await store.create_order(make_order(status=OrderStatus.CONFIRMED))

    summary = await services.batch_provisioner.run(fast_config(max_retries=3))

    assert summary["successful"] == 1
    assert summary["failed"] == 0
    assert summary["retries"] == 2
    assert summary["results"][0]["attempts"] == 3
    stored = await store.get_order(order.id)
    assert stored.provisioning_status == ProvisioningStatus.ACTIVE
    assert hostycare.count("provision") == 3


async def test_non_retryable_error_goes_to_manual_review_after_one_attempt(services, store, hostycare) -> None:
    hostycare.outcomes = [ProvisionResult.failure("Invalid product id", ErrorCode.INVALID_CONFIGURATION)]
    order = await store.create_order(make_order(status=OrderStatus.CONFIRMED))

    summary = await services.batch_provisioner.run(fast_config(max_retries=3))

    assert summary["failed"] == 1
    assert summary["results"][0]["attempts"] == 1
    stored = await store.get_order(order.id)
    assert stored.provisioning_status == ProvisioningStatus.FAILED
    assert stored.provisioning_error.startswith(MANUAL_REVIEW_PREFIX)
    assert hostycare.count("provision") == 1

    again = await services.batch_provisioner.run(fast_config())
    assert again["processed"] == 0
    assert hostycare.count("provision") == 1


async def test_retries_are_bounded(services, store, hostycare) -> None:
    hostycare.outcomes = [ProviderError("Server is busy", ErrorCode.UNAVAILABLE) for _ in range(5)]
    order = await store.create_order(make_order(status=OrderStatus.CONFIRMED))

    summary = await services.batch_provisioner.run(fast_config(max_retries=2))

    assert hostycare.count("provision") == 2
    assert summary["failed"] == 1
    assert summary["retries"] == 1
    stored = await store.get_order(order.id)
    assert stored.provisioning_error == f"{MANUAL_REVIEW_PREFIX}Server is busy"


async def test_retryable_failure_from_webhook_path_is_picked_up(services, store, hostycare) -> None:
    order = await store.create_order(make_order(
        status=OrderStatus.CONFIRMED,
        provisioning_status=ProvisioningStatus.FAILED,
        auto_provisioned=True,
        provisioning_error="Request timeout",
        provisioning_error_code=ErrorCode.TIMEOUT.value,
    ))

    summary = await services.batch_provisioner.run(fast_config())

    assert summary["successful"] == 1
    assert (await store.get_order(order.id)).provisioning_status == ProvisioningStatus.ACTIVE


async def test_ineligible_orders_are_left_alone(services, store, hostycare) -> None:
    await store.create_order(make_order())
    await store.create_order(make_order(status=OrderStatus.CONFIRMED, provisioning_status=ProvisioningStatus.ACTIVE))
    await store.create_order(make_order(
        status=OrderStatus.CONFIRMED,
        provisioning_status=ProvisioningStatus.FAILED,
        auto_provisioned=True,
        provisioning_error="Invalid product id",
        provisioning_error_code=ErrorCode.INVALID_CONFIGURATION.value,
    ))

    summary = await services.batch_provisioner.run(fast_config())

    assert summary["processed"] == 0
    assert hostycare.count("provision") == 0


async def test_batch_size_limits_processing(services, store) -> None:
    for _ in range(4):
        await store.create_order(make_order(status=OrderStatus.CONFIRMED))

    summary = await services.batch_provisioner.run(fast_config(batch_size=2))

    assert summary["processed"] == 2
    assert summary["successful"] == 2
    assert services.batch_provisioner.last_summary is summary


async def test_time_budget_stops_sweep(store, services) -> None:
    for _ in range(3):
        await store.create_order(make_order(status=OrderStatus.CONFIRMED))
    runner = BatchProvisioner(store, services.orchestrator, clock=FakeClock(step=10.0))

    summary = await runner.run(fast_config(max_processing_seconds=25.0))

    assert summary["budget_exhausted"] is True
    assert summary["processed"] < 3


async def test_orders_without_product_config_are_skipped_not_failed(services, store, hostycare, smartvps) -> None:
    hostycare.configured = False
    unconfigured = await store.create_order(make_order(status=OrderStatus.CONFIRMED))
    ready = await store.create_order(make_order(status=OrderStatus.CONFIRMED, provider=ProviderName.SMARTVPS))

    summary = await services.batch_provisioner.run(fast_config())

    assert summary["successful"] == 1
    assert summary["failed"] == 0
    assert summary["skipped"] == 1
    assert summary["unconfigured"] == [unconfigured.id]
    assert hostycare.count("provision") == 0
    untouched = await store.get_order(unconfigured.id)
    assert untouched.provisioning_status == ProvisioningStatus.UNSET
    assert untouched.provisioning_error is None
    assert (await store.get_order(ready.id)).provisioning_status == ProvisioningStatus.ACTIVE
