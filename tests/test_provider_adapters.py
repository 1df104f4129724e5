from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from urllib.parse import parse_qsl

import httpx
import pytest

from conftest import FakeAdapter, make_order
from config import reset_config
from models.order_models import CatalogItem, ProviderName
from services.hostycare import HostycareService, build_form_params, extract_dedicated_ip
from services.manual_provider import ManualProvider
from services.provider_base import ErrorCode, NormalizedStatus, ProviderError, normalize_status
from services.provider_registry import ProviderRegistry, select_provider
from services.smartvps import SmartVpsService, extract_ip, normalize_response, os_code_for


@pytest.fixture
def hostycare_env(monkeypatch) -> None:
    monkeypatch.setenv("HOSTYCARE_USERNAME", "reseller")
    monkeypatch.setenv("HOSTYCARE_API_KEY", "api-key")
    monkeypatch.setenv("HOSTYCARE_BASE_URL", "https://hostycare.test/api")
    monkeypatch.setenv("HOSTYCARE_DEFAULT_PRODUCT_ID", "55")
    reset_config()


@pytest.fixture
def smartvps_env(monkeypatch) -> None:
    monkeypatch.setenv("SMARTVPS_USERNAME", "smart")
    monkeypatch.setenv("SMARTVPS_PASSWORD", "secret")
    monkeypatch.setenv("SMARTVPS_BASE_URL", "https://smartvps.test/")
    reset_config()


# ====================================================================
# Hostycare
# ====================================================================

def test_hostycare_token_is_hourly_hmac(hostycare_env) -> None:
    service = HostycareService()
    now = datetime(2024, 1, 2, 3, 45, tzinfo=timezone.utc)
    digest = hmac.new(b"reseller:24-01-02 03", b"api-key", hashlib.sha256).hexdigest()

    assert service.generate_token(now) == base64.b64encode(digest.encode()).decode()
    assert service.generate_token(now.replace(minute=5)) == service.generate_token(now)
    assert service.generate_token(now.replace(hour=4)) != service.generate_token(now)


def test_build_form_params_flattens_nested_values() -> None:
    params = build_form_params({
        "cycle": "monthly",
        "fields": {"hostname": "box", "extra": {"a": 1}},
        "nsprefix": ["ns1", "ns2"],
        "skip": None,
    })
    assert params == [
        ("cycle", "monthly"),
        ("fields[hostname]", "box"),
        ("fields[extra][a]", "1"),
        ("nsprefix[]", "ns1"),
        ("nsprefix[]", "ns2"),
    ]


def test_dedicated_ip_lookup_order() -> None:
    assert extract_dedicated_ip({"data": {"service": {"dedicatedip": " 1.2.3.4 "}}}) == "1.2.3.4"
    assert extract_dedicated_ip({"service": {"dedicatedIp": "5.6.7.8"}}) == "5.6.7.8"
    assert extract_dedicated_ip({"ipAddress": "9.9.9.9"}) == "9.9.9.9"
    assert extract_dedicated_ip({"data": {}}) is None


async def test_hostycare_provision_posts_form_and_returns_credentials(hostycare_env) -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["headers"] = request.headers
        seen["form"] = dict(parse_qsl(request.content.decode()))
        return httpx.Response(200, json={"data": {"service": {"id": 4321, "dedicatedip": "45.1.2.3"}}})

    service = HostycareService(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    result = await service.provision(make_order(product_name="Ubuntu Server", memory="8GB"))
    await service.close()

    assert seen["path"].endswith("/order/products/55")
    assert seen["headers"]["username"] == "reseller"
    assert seen["headers"]["token"]
    assert seen["form"]["cycle"] == "monthly"
    assert seen["form"]["hostname"].startswith("ubuntu-server-8gb-")
    assert result.success and result.is_complete
    assert result.service_id == "4321"
    assert result.ip_address == "45.1.2.3"
    assert result.username == "root"
    assert result.password == seen["form"]["password"]


async def test_hostycare_provision_uses_memory_tier_product_and_options(hostycare_env) -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["form"] = parse_qsl(request.content.decode())
        return httpx.Response(200, json={"data": {"service": {"id": 99}}})

    item = CatalogItem(
        id="plan-8", name="Windows RDP", provider="hostycare", provider_product_id="10",
        memory_options={"8gb": {"provider_product_id": "81", "fields": {"os": "Windows 2022"},
                                "configurations": {"location": "Mumbai", "ips": ["a", "b"]}}},
    )
    service = HostycareService(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    await service.provision(make_order(product_name="Windows RDP", memory="8GB"), item)
    await service.close()

    assert seen["path"].endswith("/order/products/81")
    assert ("fields[os]", "Windows 2022") in seen["form"]
    assert ("configurations[location]", "Mumbai") in seen["form"]
    assert [v for k, v in seen["form"] if k == "configurations[ips][]"] == ["a", "b"]


def test_hostycare_product_resolution_falls_back_to_item_then_default(hostycare_env) -> None:
    service = HostycareService()
    item = CatalogItem(id="p", name="Plan", provider_product_id="10", default_configurations={"os": "Ubuntu 22"},
                       memory_options={"4GB": {"price": 399}})

    assert service.resolve_product(make_order(memory="4GB"), item) == (
        "10", {"fields": {"os": "Ubuntu 22"}, "configurations": {"os": "Ubuntu 22"}}
    )
    assert service.resolve_product(make_order(memory="4GB"), None) == ("55", {})

    service.default_product_id = None
    bare = CatalogItem(id="q", name="Plan")
    assert service.has_provisioning_config(make_order(memory="4GB"), bare) is False
    assert service.has_provisioning_config(make_order(memory="4GB"), item) is True


async def test_hostycare_error_inside_http_200_is_classified(hostycare_env) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": False, "error": "Rate limit reached, retry later"})

    service = HostycareService(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    result = await service.provision(make_order())

    assert not result.success
    assert result.error_code == ErrorCode.RATE_LIMITED


async def test_hostycare_http_status_maps_to_code(hostycare_env) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"message": "maintenance"})

    service = HostycareService(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    with pytest.raises(ProviderError) as excinfo:
        await service.renew("4321")
    assert excinfo.value.code == ErrorCode.UNAVAILABLE


async def test_hostycare_status_is_normalized(hostycare_env) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/services/4321")
        return httpx.Response(200, json={"data": {"service": {
            "status": "Active", "vps_status": "online", "dedicatedip": "45.1.2.3", "username": "root",
        }}})

    service = HostycareService(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    status = await service.get_status("4321")

    assert status.machine_status == NormalizedStatus.ACTIVE
    assert status.power_status == NormalizedStatus.ACTIVE
    assert status.ip_address == "45.1.2.3"
    assert status.username == "root"


async def test_hostycare_without_credentials_refuses() -> None:
    service = HostycareService()
    assert not service.is_available()
    with pytest.raises(ProviderError) as excinfo:
        await service.start("1")
    assert excinfo.value.code == ErrorCode.AUTH_FAILED


# ====================================================================
# SmartVPS
# ====================================================================

class FakeResponse:
    def __init__(self, text: str, status_code: int = 200) -> None:
        self.text = text
        self.status_code = status_code
        self.ok = status_code < 400


class FakeSession:
    def __init__(self, responses) -> None:
        self.responses = dict(responses)
        self.posts = []

    def post(self, url, json=None, auth=None, headers=None, timeout=None):
        path = url.rsplit("/", 1)[-1]
        self.posts.append((path, json, auth))
        return self.responses[path]

    def close(self) -> None:
        pass


def test_normalize_response_unwraps_string_encodings() -> None:
    assert normalize_response('{"IP": "103.195.1.1"}') == {"IP": "103.195.1.1"}
    assert normalize_response(json.dumps(json.dumps({"a": 1}))) == {"a": 1}
    assert normalize_response('"{\\"a\\": 2}"') == {"a": 2}
    assert normalize_response("VPS started") == "VPS started"
    assert normalize_response({"already": "parsed"}) == {"already": "parsed"}


def test_extract_ip_and_os_codes() -> None:
    assert extract_ip("available: 103.195.4.20, 103.195.4.21") == "103.195.4.20"
    assert extract_ip({"stock": [{"ip": "103.195.9.9"}]}) == "103.195.9.9"
    assert extract_ip("none left") is None
    assert os_code_for("Windows 2019 64") == "2019"
    assert os_code_for("Ubuntu 22") == "ubuntu"
    assert os_code_for("Debian 12") is None


async def test_smartvps_status_parses_double_encoded_json(smartvps_env) -> None:
    body = json.dumps(json.dumps({
        "MachineStatus": "Online", "PowerStatus": "Running", "IP": "103.195.1.10",
        "Usernane": "administrator", "Password": "P@ss1234", "OS": "Windows 2022",
    }))
    session = FakeSession({"status": FakeResponse(body)})
    service = SmartVpsService(session=session)

    status = await service.get_status("103.195.1.10")

    assert session.posts[0] == ("status", {"ip": "103.195.1.10"}, ("smart", "secret"))
    assert status.machine_status == NormalizedStatus.ACTIVE
    assert status.power_status == NormalizedStatus.ACTIVE
    assert status.username == "administrator"
    assert status.password == "P@ss1234"


async def test_smartvps_provision_buys_from_ip_stock(smartvps_env) -> None:
    session = FakeSession({
        "ipstock": FakeResponse('"103.195.4.20,103.195.4.21"'),
        "buyvps": FakeResponse('"VPS purchased 103.195.4.20"'),
        "status": FakeResponse(json.dumps({"MachineStatus": "Installing", "IP": "103.195.4.20"})),
    })
    service = SmartVpsService(session=session)

    result = await service.provision(make_order(product_name="Windows RDP", memory="8GB", provider=ProviderName.SMARTVPS))

    assert result.success
    assert result.service_id == "103.195.4.20"
    assert result.password is None
    assert not result.is_complete
    assert ("buyvps", {"ip": "103.195.4.20", "ram": "8"}, ("smart", "secret")) in session.posts


async def test_smartvps_rejects_unparseable_memory(smartvps_env) -> None:
    service = SmartVpsService(session=FakeSession({}))
    result = await service.provision(make_order(memory="lots"))
    assert result.error_code == ErrorCode.INVALID_CONFIGURATION


async def test_smartvps_http_error_is_classified(smartvps_env) -> None:
    session = FakeSession({"start": FakeResponse('{"message": "Too many requests"}', status_code=429)})
    service = SmartVpsService(session=session)
    with pytest.raises(ProviderError) as excinfo:
        await service.start("103.195.1.10")
    assert excinfo.value.code == ErrorCode.RATE_LIMITED


# ====================================================================
# Manual provider, normalization, selection
# ====================================================================

async def test_manual_provider_contract() -> None:
    provider = ManualProvider()
    result = await provider.provision(make_order())
    assert result.error_code == ErrorCode.MANUAL_REQUIRED
    assert (await provider.renew(""))["success"] is True
    with pytest.raises(ProviderError):
        await provider.start("anything")


def test_status_tokens_normalize() -> None:
    assert normalize_status("Online") == NormalizedStatus.ACTIVE
    assert normalize_status(" RUNNING ") == NormalizedStatus.ACTIVE
    assert normalize_status(1) == NormalizedStatus.ACTIVE
    assert normalize_status(True) == NormalizedStatus.ACTIVE
    assert normalize_status(0) == NormalizedStatus.SUSPENDED
    assert normalize_status({"status": "stopped"}) == NormalizedStatus.SUSPENDED
    assert normalize_status("installing") == NormalizedStatus.PROVISIONING
    assert normalize_status("deleted") == NormalizedStatus.TERMINATED
    assert normalize_status("halfway-there") == NormalizedStatus.UNRECOGNIZED
    assert normalize_status(None) == NormalizedStatus.UNRECOGNIZED


def test_provider_selection_order() -> None:
    assert select_provider(make_order(provider=ProviderName.SMARTVPS)) == (ProviderName.SMARTVPS, "explicit")

    item = CatalogItem(id="p", name="Plan", provider="Hostycare")
    assert select_provider(make_order(provider=None), item) == (ProviderName.HOSTYCARE, "catalog_provider")

    tagged = CatalogItem(id="p", name="Plan", tags=["windows", "smartvps"])
    assert select_provider(make_order(provider=None), tagged) == (ProviderName.SMARTVPS, "catalog_tag")

    assert select_provider(make_order(provider=None, provider_service_id="103.195.2.2"))[0] == ProviderName.SMARTVPS
    assert select_provider(make_order(provider=None, provider_service_id="98765"))[0] == ProviderName.HOSTYCARE
    assert select_provider(make_order(provider=None, product_name="🏅 Premium RDP")) == (ProviderName.SMARTVPS, "heuristic")
    assert select_provider(make_order(provider=None, product_name="Dedicated")) == (ProviderName.MANUAL, "default")


def test_registry_requires_manual_and_falls_back_to_it() -> None:
    with pytest.raises(ValueError):
        ProviderRegistry({ProviderName.HOSTYCARE: FakeAdapter()})

    manual = ManualProvider()
    registry = ProviderRegistry({ProviderName.MANUAL: manual})
    assert registry.get(None) is manual
    assert registry.get(ProviderName.SMARTVPS) is manual
