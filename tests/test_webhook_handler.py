from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import active_order, make_order, webhook_body
from config import PaymentConfig
from models.order_models import OrderStatus, PendingRenewal, ProvisioningStatus
from services.upigateway import UpiGatewayService
from utils.timezone_utils import utc_now
from webhook_handler import WebhookRejected

SIGNED = {"X-Signature": "valid"}


async def test_paid_webhook_confirms_and_provisions(services, store, hostycare) -> None:
    order = await store.create_order(make_order())
    body = webhook_body(reference=order.client_txn_id, status="success", payment_id="pay_1", amount=499.0)

    result = await services.webhook_handler.receive("cashfree", body, SIGNED)
    provisioned = await services.dispatcher.wait_for(order.id, timeout=5)

    assert result["status"] == "confirmed"
    assert result["provisioning"] == "dispatched"
    assert provisioned["status"] == "active"
    stored = await store.get_order(order.id)
    assert stored.status == OrderStatus.ACTIVE
    assert stored.transaction_id == "pay_1"
    assert stored.gateway == "cashfree"
    assert stored.provisioning_status == ProvisioningStatus.ACTIVE
    assert hostycare.count("provision") == 1


async def test_duplicate_delivery_is_acknowledged_without_side_effects(services, store, hostycare) -> None:
    order = await store.create_order(make_order())
    body = webhook_body(reference=order.client_txn_id, status="success", payment_id="pay_1", amount=499.0)

    first = await services.webhook_handler.receive("cashfree", body, SIGNED)
    await services.dispatcher.wait_for(order.id, timeout=5)
    second = await services.webhook_handler.receive("cashfree", body, SIGNED)

    assert first["status"] == "confirmed"
    assert second["status"] == "already_processed"
    assert hostycare.count("provision") == 1
    assert services.webhook_handler.get_stats()["duplicates"] == 1


async def test_bad_signature_is_rejected_and_changes_nothing(services, store) -> None:
    order = await store.create_order(make_order())
    body = webhook_body(reference=order.client_txn_id, status="success", amount=499.0)

    with pytest.raises(WebhookRejected) as excinfo:
        await services.webhook_handler.receive("razorpay", body, {"X-Signature": "forged"})

    assert excinfo.value.status_code == 403
    assert (await store.get_order(order.id)).status == OrderStatus.PENDING


async def test_unknown_gateway_is_rejected(services) -> None:
    with pytest.raises(WebhookRejected) as excinfo:
        await services.webhook_handler.receive("paypal", b"{}", SIGNED)
    assert excinfo.value.status_code == 404


async def test_unparseable_body_is_rejected(services) -> None:
    with pytest.raises(WebhookRejected) as excinfo:
        await services.webhook_handler.receive("cashfree", b"not json", SIGNED)
    assert excinfo.value.status_code == 400


async def test_undecodable_upi_webhook_is_rejected_not_crashed(services, gateways) -> None:
    gateways.gateways["upigateway"] = UpiGatewayService(PaymentConfig(upigateway_api_key="upi-key"))

    with pytest.raises(WebhookRejected) as excinfo:
        await services.webhook_handler.receive("upigateway", b"\xff\xfe=\xc3", {})

    assert excinfo.value.status_code == 400
    assert services.webhook_handler.get_stats()["rejected"] == 1


async def test_amount_mismatch_on_signed_webhook_is_rejected(services, store) -> None:
    order = await store.create_order(make_order())
    body = webhook_body(reference=order.client_txn_id, status="success", amount=1.0)

    with pytest.raises(WebhookRejected):
        await services.webhook_handler.receive("cashfree", body, SIGNED)
    assert (await store.get_order(order.id)).status == OrderStatus.PENDING


async def test_unknown_reference_is_reported(services) -> None:
    body = webhook_body(reference="no-such-order", status="success")
    result = await services.webhook_handler.receive("cashfree", body, SIGNED)
    assert result["status"] == "unknown_reference"


# ====================================================================
# Unsigned gateway: verified by status fetch
# ====================================================================

async def test_unsigned_webhook_is_confirmed_only_after_fetch(services, store, gateways) -> None:
    order = await store.create_order(make_order())
    gateways.get("upigateway").mark_paid(order.client_txn_id, 498.5, "UPI1")
    # the webhook's own amount is not trusted
    body = webhook_body(reference=order.client_txn_id, status="success", amount=1.0)

    result = await services.webhook_handler.receive("upigateway", body, {})
    await services.dispatcher.wait_for(order.id, timeout=5)

    assert result["status"] == "confirmed"
    stored = await store.get_order(order.id)
    assert stored.transaction_id == "UPI1"
    assert stored.status == OrderStatus.ACTIVE


async def test_unsigned_webhook_for_unpaid_order_is_ignored(services, store) -> None:
    order = await store.create_order(make_order())
    body = webhook_body(reference=order.client_txn_id, status="success")

    result = await services.webhook_handler.receive("upigateway", body, {})

    assert result["status"] == "ignored"
    assert (await store.get_order(order.id)).status == OrderStatus.PENDING


async def test_unsigned_webhook_with_wrong_fetched_amount_is_rejected(services, store, gateways) -> None:
    order = await store.create_order(make_order())
    gateways.get("upigateway").mark_paid(order.client_txn_id, 100.0)

    with pytest.raises(WebhookRejected) as excinfo:
        await services.webhook_handler.receive("upigateway", webhook_body(reference=order.client_txn_id), {})

    assert excinfo.value.status_code == 400
    assert (await store.get_order(order.id)).status == OrderStatus.PENDING


# ====================================================================
# Failed payments, renewals, client callbacks
# ====================================================================

async def test_failed_payment_marks_order_failed_once(services, store, notifier) -> None:
    order = await store.create_order(make_order())
    body = webhook_body(reference=order.client_txn_id, status="failed")

    first = await services.webhook_handler.receive("cashfree", body, SIGNED)
    second = await services.webhook_handler.receive("cashfree", body, SIGNED)

    assert first["status"] == "payment_failed"
    assert second["status"] == "already_processed"
    assert (await store.get_order(order.id)).status == OrderStatus.FAILED
    assert [e["event"] for e in notifier.events] == ["payment_failed"]


async def test_non_final_status_is_ignored(services, store) -> None:
    order = await store.create_order(make_order())
    result = await services.webhook_handler.receive(
        "cashfree", webhook_body(reference=order.client_txn_id, status="pending"), SIGNED
    )
    assert result["status"] == "ignored"
    assert (await store.get_order(order.id)).status == OrderStatus.PENDING


async def test_renewal_webhook_extends_expiry_and_renews_at_provider(services, store, hostycare) -> None:
    expiry = utc_now() + timedelta(days=5)
    pending = PendingRenewal(renewal_txn_id="RENEWAL_1_ABCDEF", gateway="cashfree", amount=499.0,
                             initiated_at=utc_now(), gateway_order_id="cashfree_RENEWAL_1_ABCDEF")
    order = await store.create_order(active_order(expiry_date=expiry, pending_renewal=pending))
    body = webhook_body(reference="RENEWAL_1_ABCDEF", status="success", payment_id="pay_r1", amount=499.0)

    result = await services.webhook_handler.receive("cashfree", body, SIGNED)
    again = await services.webhook_handler.receive("cashfree", body, SIGNED)

    assert result["status"] == "renewed"
    assert result["provider_renewal_success"] is True
    stored = await store.get_order(order.id)
    assert stored.expiry_date == expiry + timedelta(days=30)
    assert stored.pending_renewal is None
    assert len(stored.renewal_payments) == 1
    assert stored.renewal_payments[0].payment_id == "pay_r1"
    assert hostycare.count("renew") == 1
    # the pending renewal is gone, so the repeat no longer resolves to the order
    assert again["status"] == "unknown_reference"


async def test_razorpay_checkout_callback_confirms_order(services, store, gateways) -> None:
    order = await store.create_order(make_order(gateway="razorpay", gateway_order_id="order_rzp1"))
    gateways.get("razorpay").mark_paid("order_rzp1", 499.0, "pay_rzp1")
    payload = {
        "razorpay_order_id": "order_rzp1",
        "razorpay_payment_id": "pay_rzp1",
        "razorpay_signature": "sig",
        "order_id": "order_rzp1",
    }

    result = await services.webhook_handler.verify_razorpay_checkout(payload)
    await services.dispatcher.wait_for(order.id, timeout=5)

    assert result["status"] == "confirmed"
    assert (await store.get_order(order.id)).transaction_id == "pay_rzp1"


async def test_razorpay_checkout_callback_rejects_unverified_payment(services, store) -> None:
    await store.create_order(make_order(gateway="razorpay", gateway_order_id="order_rzp2"))
    with pytest.raises(WebhookRejected):
        await services.webhook_handler.verify_razorpay_checkout({"razorpay_order_id": "order_rzp2", "order_id": "order_rzp2"})
