from __future__ import annotations

import base64
import hashlib
import hmac
import json

import httpx
import pytest

from conftest import FakeGateway
from config import PaymentConfig
from services.cashfree import CashfreeService
from services.payment_gateway import CustomerDetails, PaymentGatewayError, PaymentVerification
from services.payment_provider import PaymentGatewayFactory
from services.razorpay import RazorpayService, checkout_signature
from services.upigateway import UpiGatewayService, amounts_match

SETTINGS = PaymentConfig(
    cashfree_client_id="cf-id",
    cashfree_client_secret="cf-secret",
    cashfree_base_url="https://cashfree.test/pg",
    razorpay_key_id="rzp_key",
    razorpay_key_secret="rzp_secret",
    razorpay_webhook_secret="rzp_hook",
    upigateway_api_key="upi-key",
    upigateway_base_url="https://upi.test/api",
)

CUSTOMER = CustomerDetails(customer_id="user-1", name="Asha", email="asha@example.com")


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ====================================================================
# Cashfree
# ====================================================================

def test_cashfree_webhook_signature() -> None:
    service = CashfreeService(SETTINGS)
    body = b'{"type": "PAYMENT_SUCCESS_WEBHOOK"}'
    timestamp = "1700000000"
    signature = base64.b64encode(hmac.new(b"cf-secret", timestamp.encode() + body, hashlib.sha256).digest()).decode()

    assert service.verify_webhook(body, {"X-Webhook-Signature": signature, "X-Webhook-Timestamp": timestamp})
    assert not service.verify_webhook(body + b" ", {"x-webhook-signature": signature, "x-webhook-timestamp": timestamp})
    assert not service.verify_webhook(body, {"x-webhook-timestamp": timestamp})


def test_cashfree_webhook_parse() -> None:
    payload = {
        "type": "PAYMENT_SUCCESS_WEBHOOK",
        "data": {
            "order": {"order_id": "17000000001234", "order_amount": 499},
            "payment": {"cf_payment_id": 991, "payment_status": "SUCCESS", "payment_amount": 499.0, "payment_group": "upi"},
        },
    }
    event = CashfreeService(SETTINGS).parse_webhook(json.dumps(payload).encode(), {})
    assert event.reference == "17000000001234"
    assert event.success is True
    assert event.payment_id == "991"
    assert event.amount == 499.0
    assert event.payment_method == "upi"


async def test_cashfree_create_order_defaults_notify_url(monkeypatch) -> None:
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://shop.example")
    sent = {}

    def handler(request: httpx.Request) -> httpx.Response:
        sent["body"] = json.loads(request.content)
        sent["headers"] = request.headers
        return httpx.Response(200, json={"order_id": "REF1", "payment_session_id": "session_abc"})

    service = CashfreeService(SETTINGS, client=mock_client(handler))
    order = await service.create_order(499, CUSTOMER, "https://shop.example/return", "REF1")

    assert order.gateway == "cashfree"
    assert order.payment_session_id == "session_abc"
    assert sent["body"]["order_meta"]["notify_url"] == "https://shop.example/api/webhook/cashfree"
    assert sent["body"]["customer_details"]["customer_phone"] == "9999999999"
    assert sent["headers"]["x-client-id"] == "cf-id"


async def test_cashfree_status_finds_successful_payment() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/orders/REF1/payments")
        return httpx.Response(200, json=[
            {"payment_status": "FAILED", "cf_payment_id": 1},
            {"payment_status": "SUCCESS", "cf_payment_id": 2, "payment_amount": 499, "payment_group": "card"},
        ])

    verification = await CashfreeService(SETTINGS, client=mock_client(handler)).fetch_payment_status("REF1")
    assert verification.success
    assert verification.payment_id == "2"
    assert verification.amount == 499.0


# ====================================================================
# Razorpay
# ====================================================================

def test_razorpay_checkout_signature() -> None:
    service = RazorpayService(SETTINGS)
    signature = checkout_signature("rzp_secret", "order_1", "pay_1")
    assert signature == hmac.new(b"rzp_secret", b"order_1|pay_1", hashlib.sha256).hexdigest()
    assert service.verify_checkout_signature("order_1", "pay_1", signature)
    assert not service.verify_checkout_signature("order_1", "pay_2", signature)
    assert not service.verify_checkout_signature("order_1", "pay_1", "")


def test_razorpay_webhook_signature_and_parse() -> None:
    service = RazorpayService(SETTINGS)
    body = json.dumps({
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_9", "order_id": "order_9", "amount": 49900, "method": "upi"}}},
    }).encode()
    signature = hmac.new(b"rzp_hook", body, hashlib.sha256).hexdigest()

    assert service.verify_webhook(body, {"X-Razorpay-Signature": signature})
    assert not service.verify_webhook(body, {"X-Razorpay-Signature": "0" * 64})

    event = service.parse_webhook(body, {})
    assert event.reference == "order_9"
    assert event.success
    assert event.amount == 499.0


def test_razorpay_status_reference_only_for_its_own_ids() -> None:
    service = RazorpayService(SETTINGS)
    assert service.status_reference("RENEWAL_1_X", "order_abc") == "order_abc"
    assert service.status_reference("order_xyz") == "order_xyz"
    assert service.status_reference("17000000001234") is None


async def test_razorpay_status_requires_captured_payment() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/payments"):
            return httpx.Response(200, json={"items": [{"id": "pay_1", "status": "captured", "amount": 49900, "method": "card"}]})
        return httpx.Response(200, json={"id": "order_1", "status": "paid"})

    verification = await RazorpayService(SETTINGS, client=mock_client(handler)).fetch_payment_status("order_1")
    assert verification.success
    assert verification.payment_id == "pay_1"
    assert verification.amount == 499.0


# ====================================================================
# UPI Gateway
# ====================================================================

def test_upigateway_parses_form_webhook_and_is_unsigned() -> None:
    service = UpiGatewayService(SETTINGS)
    event = service.parse_webhook(b"client_txn_id=17000000001234&status=success&amount=499&upi_txn_id=UPI77&id=88", {})
    assert service.signed_webhooks is False
    assert event.reference == "17000000001234"
    assert event.success
    assert event.payment_id == "UPI77"
    assert event.amount == 499.0


def test_upigateway_rejects_non_utf8_webhook_body() -> None:
    with pytest.raises(PaymentGatewayError) as excinfo:
        UpiGatewayService(SETTINGS).parse_webhook(b"\xff\xfe=\xc3", {})
    assert excinfo.value.gateway == "upigateway"


async def test_upigateway_status_sends_ist_date() -> None:
    sent = {}

    def handler(request: httpx.Request) -> httpx.Response:
        sent["body"] = json.loads(request.content)
        return httpx.Response(200, json={"status": True, "data": {"status": "success", "amount": "499", "upi_txn_id": "UPI1"}})

    verification = await UpiGatewayService(SETTINGS, client=mock_client(handler)).fetch_payment_status("REF1")

    assert sent["body"]["client_txn_id"] == "REF1"
    assert len(sent["body"]["txn_date"]) == 10
    assert verification.success
    assert verification.payment_id == "UPI1"


def test_amount_tolerance() -> None:
    assert amounts_match(499.0, 499.0)
    assert amounts_match(499.0, 498.2)
    assert not amounts_match(499.0, 497.0)
    assert not amounts_match(499.0, None)


# ====================================================================
# Factory
# ====================================================================

async def test_create_order_falls_back_and_reports_gateway_used() -> None:
    factory = PaymentGatewayFactory({
        "cashfree": FakeGateway("cashfree", fail_create=True),
        "razorpay": FakeGateway("razorpay", available=False),
        "upigateway": FakeGateway("upigateway"),
    }, ["cashfree", "razorpay", "upigateway"])

    order = await factory.create_order_with_fallback(499, CUSTOMER, "https://r", "REF1")

    assert order.gateway == "upigateway"
    assert factory.gateways["razorpay"].created == []


async def test_create_order_raises_when_every_gateway_fails() -> None:
    factory = PaymentGatewayFactory({"cashfree": FakeGateway("cashfree", fail_create=True)})
    with pytest.raises(PaymentGatewayError) as excinfo:
        await factory.create_order_with_fallback(499, CUSTOMER, "https://r", "REF1")
    assert "cashfree" in excinfo.value.details["errors"]


async def test_probe_checks_preferred_gateway_first_and_tolerates_errors() -> None:
    cashfree = FakeGateway("cashfree")
    razorpay = FakeGateway("razorpay")
    upi = FakeGateway("upigateway", signed=False)
    cashfree.statuses["REF1"] = PaymentGatewayError("timeout", "cashfree")
    upi.mark_paid("REF1", 499.0, "UPI1")
    factory = PaymentGatewayFactory({"cashfree": cashfree, "razorpay": razorpay, "upigateway": upi})

    probe = await factory.probe_payment_status("REF1", preferred_gateway="razorpay")

    assert probe["success"]
    assert probe["gateway"] == "upigateway"
    assert [c["gateway"] for c in probe["checked"]] == ["razorpay", "upigateway"]
    assert probe["errors"] == {"cashfree": "timeout"}
    assert isinstance(probe["verification"], PaymentVerification)


def test_unknown_gateway_names_are_ignored() -> None:
    factory = PaymentGatewayFactory({"cashfree": FakeGateway("cashfree")}, ["paypal", "cashfree"])
    assert factory.gateway_order == ["cashfree"]
