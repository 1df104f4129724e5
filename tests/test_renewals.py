from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import active_order
from models.order_models import OrderStatus, PendingRenewal, ProviderName
from services.payment_gateway import CustomerDetails
from services.provider_base import ErrorCode, ProviderError
from services.renewal_processor import RenewalError, compute_new_expiry, generate_renewal_txn_id
from utils.timezone_utils import utc_now

CUSTOMER = CustomerDetails(customer_id="user-1", name="Asha", email="asha@example.com")
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def pending_renewal(txn_id: str = "RENEWAL_1_ABCDEF", gateway: str = "cashfree", age_minutes: float = 0,
                    amount: float = 499.0) -> PendingRenewal:
    return PendingRenewal(
        renewal_txn_id=txn_id,
        gateway=gateway,
        amount=amount,
        initiated_at=utc_now() - timedelta(minutes=age_minutes),
        gateway_order_id=f"{gateway}_{txn_id}",
    )


def test_new_expiry_anchors_to_later_of_expiry_and_now() -> None:
    assert compute_new_expiry(NOW + timedelta(days=5), NOW) == NOW + timedelta(days=35)
    assert compute_new_expiry(NOW - timedelta(days=3), NOW) == NOW + timedelta(days=30)
    assert compute_new_expiry(None, NOW) == NOW + timedelta(days=30)
    # naive timestamps from older rows are read as UTC
    assert compute_new_expiry(datetime(2024, 6, 10, 12, 0), NOW, term_days=7) == datetime(2024, 6, 17, 12, 0, tzinfo=timezone.utc)


def test_renewal_txn_id_shape() -> None:
    txn_id = generate_renewal_txn_id(now=1700000000.5)
    prefix, millis, suffix = txn_id.split("_")
    assert prefix == "RENEWAL"
    assert millis == "1700000000500"
    assert len(suffix) == 6 and suffix.isalnum() and suffix.upper() == suffix


def test_eligibility_window(services) -> None:
    engine = services.renewal_engine

    def eligible(**overrides) -> bool:
        return engine.check_eligibility(active_order(**overrides), now=NOW)[0]

    assert eligible(expiry_date=NOW + timedelta(days=30))
    assert not eligible(expiry_date=NOW + timedelta(days=30, hours=1))
    assert eligible(expiry_date=NOW - timedelta(days=7))
    assert not eligible(expiry_date=NOW - timedelta(days=8))
    assert not eligible(expiry_date=None)
    assert not eligible(status=OrderStatus.CONFIRMED, expiry_date=NOW + timedelta(days=2))


# ====================================================================
# Initiation
# ====================================================================

async def test_initiate_renewal_records_pending_payment(services, store, gateways) -> None:
    order = await store.create_order(active_order())

    result = await services.renewal_engine.initiate_renewal(order.id, "user-1", CUSTOMER, "https://shop.example/renewed")

    assert result["status"] == "initiated"
    assert result["gateway"] == "cashfree"
    assert result["renewal_txn_id"].startswith("RENEWAL_")
    stored = await store.get_order(order.id)
    assert stored.pending_renewal.renewal_txn_id == result["renewal_txn_id"]
    assert stored.pending_renewal.gateway_order_id == f"cashfree_{result['renewal_txn_id']}"
    assert gateways.get("cashfree").created == [result["renewal_txn_id"]]


async def test_initiate_renewal_hides_other_users_orders(services, store) -> None:
    order = await store.create_order(active_order(user_id="someone-else"))
    with pytest.raises(RenewalError) as excinfo:
        await services.renewal_engine.initiate_renewal(order.id, "user-1", CUSTOMER, "https://r")
    assert excinfo.value.status_code == 404


async def test_recent_pending_renewal_blocks_a_second_one(services, store) -> None:
    order = await store.create_order(active_order(pending_renewal=pending_renewal(age_minutes=10)))
    with pytest.raises(RenewalError) as excinfo:
        await services.renewal_engine.initiate_renewal(order.id, "user-1", CUSTOMER, "https://r")
    assert excinfo.value.status_code == 409


async def test_stale_paid_pending_renewal_is_applied_instead_of_dropped(services, store, gateways) -> None:
    order = await store.create_order(active_order(pending_renewal=pending_renewal(age_minutes=120)))
    gateways.get("cashfree").mark_paid("RENEWAL_1_ABCDEF", 499.0, "pay_old")

    result = await services.renewal_engine.initiate_renewal(order.id, "user-1", CUSTOMER, "https://r")

    assert result["status"] == "recovered"
    stored = await store.get_order(order.id)
    assert stored.pending_renewal is None
    assert stored.renewal_payments[0].payment_id == "pay_old"
    assert stored.renewal_payments[0].recovered_at is not None


async def test_stale_unpaid_pending_renewal_is_replaced(services, store) -> None:
    order = await store.create_order(active_order(pending_renewal=pending_renewal(age_minutes=120)))

    result = await services.renewal_engine.initiate_renewal(order.id, "user-1", CUSTOMER, "https://r")

    assert result["status"] == "initiated"
    assert result["renewal_txn_id"] != "RENEWAL_1_ABCDEF"
    assert (await store.get_order(order.id)).pending_renewal.renewal_txn_id == result["renewal_txn_id"]


async def test_smartvps_renewal_needs_a_service_identifier(services, store) -> None:
    order = await store.create_order(active_order(provider=ProviderName.SMARTVPS, provider_service_id=None, ip_address=None))
    with pytest.raises(RenewalError) as excinfo:
        await services.renewal_engine.initiate_renewal(order.id, "user-1", CUSTOMER, "https://r")
    assert excinfo.value.status_code == 400


async def test_gateway_outage_surfaces_as_502(services, store, gateways) -> None:
    for gateway in gateways.gateways.values():
        gateway.fail_create = True
    order = await store.create_order(active_order())
    with pytest.raises(RenewalError) as excinfo:
        await services.renewal_engine.initiate_renewal(order.id, "user-1", CUSTOMER, "https://r")
    assert excinfo.value.status_code == 502
    assert (await store.get_order(order.id)).pending_renewal is None


# ====================================================================
# Application
# ====================================================================

async def test_apply_renewal_is_idempotent_per_txn_id(services, store, hostycare) -> None:
    expiry = utc_now() + timedelta(days=5)
    order = await store.create_order(active_order(expiry_date=expiry, pending_renewal=pending_renewal()))

    first = await services.renewal_engine.apply_renewal(order.id, "RENEWAL_1_ABCDEF", "pay_1", 499.0, "cashfree")
    second = await services.renewal_engine.apply_renewal(order.id, "RENEWAL_1_ABCDEF", "pay_1", 499.0, "cashfree")

    assert first["status"] == "renewed"
    assert second["status"] == "already_processed"
    stored = await store.get_order(order.id)
    assert stored.expiry_date == expiry + timedelta(days=30)
    assert len(stored.renewal_payments) == 1
    entry = stored.renewal_payments[0]
    assert entry.previous_expiry == expiry
    assert entry.provider == "hostycare"
    assert entry.provider_renewal_success is True
    assert hostycare.count("renew") == 1


async def test_provider_failure_does_not_roll_back_extension(services, store, hostycare, notifier) -> None:
    hostycare.renew_error = ProviderError("Service not found", ErrorCode.NOT_FOUND)
    expiry = utc_now() + timedelta(days=2)
    order = await store.create_order(active_order(expiry_date=expiry, pending_renewal=pending_renewal()))

    result = await services.renewal_engine.apply_renewal(order.id, "RENEWAL_1_ABCDEF", "pay_1", 499.0, "cashfree")

    assert result["status"] == "renewed"
    assert result["provider_renewal_success"] is False
    stored = await store.get_order(order.id)
    assert stored.expiry_date == expiry + timedelta(days=30)
    entry = stored.renewal_payments[0]
    assert entry.provider_renewal_success is False
    assert entry.provider_renewal_result["error_code"] == "not_found"
    assert notifier.events[-1]["event"] == "renewal_provider_failed"


async def test_manual_order_renewal_skips_provider(services, store, hostycare) -> None:
    order = await store.create_order(active_order(provider=ProviderName.MANUAL, provider_service_id=None))

    result = await services.renewal_engine.apply_renewal(order.id, "RENEWAL_2_XYZXYZ", "pay_2", 499.0, "razorpay")

    assert result["provider_renewal_success"] is True
    assert hostycare.count("renew") == 0


# ====================================================================
# Client confirmation
# ====================================================================

async def test_confirm_renewal_payment_applies_verified_payment(services, store, gateways) -> None:
    order = await store.create_order(active_order(pending_renewal=pending_renewal()))
    gateways.get("cashfree").mark_paid("RENEWAL_1_ABCDEF", 499.0, "pay_cf")

    result = await services.renewal_engine.confirm_renewal_payment(order.id, "user-1", {"renewal_txn_id": "RENEWAL_1_ABCDEF"})
    repeat = await services.renewal_engine.confirm_renewal_payment(order.id, "user-1", {"renewal_txn_id": "RENEWAL_1_ABCDEF"})

    assert result["status"] == "renewed"
    assert repeat["status"] == "already_processed"
    assert (await store.get_order(order.id)).renewal_payments[0].payment_id == "pay_cf"


async def test_confirm_renewal_payment_rejects_unpaid_and_short_payments(services, store, gateways) -> None:
    order = await store.create_order(active_order(pending_renewal=pending_renewal()))

    with pytest.raises(RenewalError, match="not completed"):
        await services.renewal_engine.confirm_renewal_payment(order.id, "user-1", {})

    gateways.get("cashfree").mark_paid("RENEWAL_1_ABCDEF", 99.0)
    with pytest.raises(RenewalError, match="mismatch"):
        await services.renewal_engine.confirm_renewal_payment(order.id, "user-1", {})

    assert (await store.get_order(order.id)).renewal_payments == []


async def test_confirm_renewal_payment_checks_razorpay_order_binding(services, store) -> None:
    order = await store.create_order(active_order(pending_renewal=pending_renewal(gateway="razorpay")))
    with pytest.raises(RenewalError) as excinfo:
        await services.renewal_engine.confirm_renewal_payment(
            order.id, "user-1", {"razorpay_order_id": "order_other", "razorpay_payment_id": "pay_x"}
        )
    assert excinfo.value.status_code == 400


async def test_confirm_renewal_payment_for_unknown_pending(services, store) -> None:
    order = await store.create_order(active_order())
    with pytest.raises(RenewalError) as excinfo:
        await services.renewal_engine.confirm_renewal_payment(order.id, "user-1", {"renewal_txn_id": "RENEWAL_9_NOPE00"})
    assert excinfo.value.status_code == 404
