"""
Hostycare API Service
Server provisioning and management through the Hostycare reseller API
"""

import base64
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from config import get_config
from models.order_models import CatalogItem, Order, ProviderName
from services.provider_base import (
    ErrorCode, NormalizedStatus, ProviderAdapter, ProviderError, ProviderStatus, ProvisionResult,
    code_for_http_status, code_for_vendor_message, normalize_status
)
from utils.credentials import default_username, determine_os, generate_hostname, generate_password

logger = logging.getLogger(__name__)


def build_form_params(data: Dict[str, Any], parent_key: str = '') -> List[Tuple[str, str]]:
    """Flatten nested dicts/lists into PHP-style form keys: fields[key]=value, nsprefix[]=ns1"""
    params: List[Tuple[str, str]] = []
    for key, value in data.items():
        full_key = f"{parent_key}[{key}]" if parent_key else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            params.extend(build_form_params(value, full_key))
        elif isinstance(value, (list, tuple)):
            for item in value:
                if isinstance(item, dict):
                    params.extend(build_form_params(item, f"{full_key}[]"))
                else:
                    params.append((f"{full_key}[]", str(item)))
        else:
            params.append((full_key, str(value)))
    return params


def extract_service(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Service object from data.service | service | top level"""
    data = payload.get('data') if isinstance(payload.get('data'), dict) else {}
    if isinstance(data.get('service'), dict):
        return data['service']
    if isinstance(payload.get('service'), dict):
        return payload['service']
    return payload


def extract_dedicated_ip(payload: Dict[str, Any]) -> Optional[str]:
    service = extract_service(payload)
    ip = service.get('dedicatedip') or service.get('dedicatedIp') or payload.get('ipAddress')
    return str(ip).strip() if ip else None


class HostycareService(ProviderAdapter):
    """Hostycare reseller API wrapper (Provider A)"""

    name = ProviderName.HOSTYCARE.value

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        providers = get_config().providers
        self.username = providers.hostycare_username
        self.api_key = providers.hostycare_api_key
        self.base_url = providers.hostycare_base_url.rstrip('/')
        self.default_product_id = providers.hostycare_default_product_id
        self.timeout = providers.request_timeout_seconds
        self._client = client

        if not self.is_available():
            logger.warning("HOSTYCARE_USERNAME/HOSTYCARE_API_KEY not set - Hostycare provisioning disabled")

    def is_available(self) -> bool:
        return bool(self.username and self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def generate_token(self, now: Optional[datetime] = None) -> str:
        """base64 of the hex HMAC-SHA256 of the API key, keyed by '{username}:{YY-MM-DD HH}' in UTC"""
        now = now or datetime.now(timezone.utc)
        current_hour = now.astimezone(timezone.utc).strftime('%y-%m-%d %H')
        key = f"{self.username}:{current_hour}"
        digest = hmac.new(key.encode('utf-8'), (self.api_key or '').encode('utf-8'), hashlib.sha256).hexdigest()
        return base64.b64encode(digest.encode('utf-8')).decode('utf-8')

    async def _request(self, action: str, method: str = 'GET', params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if not self.is_available():
            raise ProviderError("Hostycare credentials are not configured", ErrorCode.AUTH_FAILED)

        headers = {
            'username': self.username,
            'token': self.generate_token(),
            'Accept': 'application/json',
        }
        url = f"{self.base_url}{action}"
        logger.info(f"🌐 HOSTYCARE: {method} {action}")

        try:
            if method == 'POST':
                form: Dict[str, List[str]] = {}
                for key, value in build_form_params(params or {}):
                    form.setdefault(key, []).append(value)
                response = await self._get_client().post(url, headers=headers, data=form)
            else:
                response = await self._get_client().get(url, headers=headers)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Hostycare request timeout: {action}", ErrorCode.TIMEOUT) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Hostycare connection error: {e}", ErrorCode.UNAVAILABLE) from e

        try:
            data = response.json()
        except ValueError:
            raise ProviderError(
                f"Invalid JSON response from Hostycare: {response.text[:200]}",
                code_for_http_status(response.status_code) if response.status_code >= 400 else ErrorCode.UNKNOWN
            )
        if not isinstance(data, dict):
            data = {'data': data}

        # Hostycare embeds errors in HTTP 200 responses too
        if response.status_code >= 400 or data.get('error') or data.get('success') is False:
            message = str(data.get('error') or data.get('message') or f"API request failed with status {response.status_code}")
            code = code_for_vendor_message(message)
            if code == ErrorCode.UNKNOWN and response.status_code >= 400:
                code = code_for_http_status(response.status_code)
            logger.error(f"❌ HOSTYCARE: {action} failed: {message}")
            raise ProviderError(message, code, details={'status_code': response.status_code, 'response': data})

        return data

    # === Provisioning ===

    def resolve_product(self, order: Order, catalog_item: Optional[CatalogItem] = None) -> Tuple[Optional[str], Dict[str, Any]]:
        """Product id and order options for the order's memory tier; (None, {}) when nothing is configured"""
        if catalog_item is None:
            return self.default_product_id, {}
        product_id = catalog_item.product_id_for(order.memory) or self.default_product_id
        memory_config = catalog_item.memory_config(order.memory)
        options = {
            'fields': memory_config.get('fields') or catalog_item.default_configurations,
            'configurations': memory_config.get('configurations') or catalog_item.default_configurations,
        }
        return product_id, {key: dict(value) for key, value in options.items() if value}

    def has_provisioning_config(self, order: Order, catalog_item: Optional[CatalogItem] = None) -> bool:
        product_id, _ = self.resolve_product(order, catalog_item)
        return bool(product_id)

    async def provision(self, order: Order, catalog_item: Optional[CatalogItem] = None) -> ProvisionResult:
        product_id, options = self.resolve_product(order, catalog_item)
        if not product_id:
            return ProvisionResult.failure(
                f"No Hostycare product id configured for '{order.product_name}' ({order.memory})",
                ErrorCode.INVALID_CONFIGURATION
            )

        username = default_username(order.product_name)
        password = generate_password()
        hostname = generate_hostname(order.product_name, order.memory)
        os_name = order.os or determine_os(order.product_name)
        logger.info(f"🚀 HOSTYCARE: Creating server for order {order.id} (product {product_id}, hostname {hostname})")

        body: Dict[str, Any] = {
            'cycle': 'monthly',
            'hostname': hostname,
            'username': username,
            'password': password,
        }
        body.update(options)
        try:
            response = await self._request(f"/order/products/{product_id}", 'POST', body)
        except ProviderError as e:
            return ProvisionResult.failure(e.message, e.code, raw=e.details)

        service = extract_service(response)
        service_id = service.get('id') or response.get('id')
        if not service_id:
            return ProvisionResult.failure(
                f"Service ID not found in Hostycare response: {str(response)[:200]}", ErrorCode.UNKNOWN, raw=response
            )

        ip_address = extract_dedicated_ip(response)
        if not ip_address:
            logger.info(f"⌛ HOSTYCARE: IP not present in create response for service {service_id}, status sync will pick it up")

        return ProvisionResult(
            success=True,
            service_id=str(service_id),
            ip_address=ip_address,
            username=username,
            password=password,
            os=os_name,
            raw=response,
        )

    # === Lifecycle actions ===

    async def renew(self, service_id: str) -> Dict[str, Any]:
        return await self._request(f"/services/{service_id}/renew", 'POST')

    async def start(self, service_id: str) -> Dict[str, Any]:
        return await self._request(f"/services/{service_id}/start", 'POST')

    async def stop(self, service_id: str) -> Dict[str, Any]:
        return await self._request(f"/services/{service_id}/stop", 'POST')

    async def reboot(self, service_id: str) -> Dict[str, Any]:
        return await self._request(f"/services/{service_id}/reboot", 'POST')

    async def suspend(self, service_id: str) -> Dict[str, Any]:
        return await self._request(f"/services/{service_id}/suspend", 'POST')

    async def terminate(self, service_id: str) -> Dict[str, Any]:
        return await self._request(f"/services/{service_id}/terminate", 'POST')

    async def format(self, service_id: str, os_name: Optional[str] = None) -> Dict[str, Any]:
        params: Dict[str, Any] = {'password': generate_password()}
        if os_name:
            params['template'] = os_name
        result = await self._request(f"/services/{service_id}/reinstall", 'POST', params)
        return {**result, 'password': params['password']}

    async def change_password(self, service_id: str, password: str) -> Dict[str, Any]:
        return await self._request(f"/services/{service_id}/changepassword", 'POST', {'password': password})

    async def get_status(self, service_id: str) -> ProviderStatus:
        response = await self._request(f"/services/{service_id}")
        service = extract_service(response)
        machine_token = service.get('status') or service.get('domainstatus')
        power_token = service.get('power_status') or service.get('powerstatus') or service.get('vps_status')
        return ProviderStatus(
            machine_status=normalize_status(machine_token, 'hostycare'),
            power_status=normalize_status(power_token, 'hostycare') if power_token is not None else NormalizedStatus.UNRECOGNIZED,
            ip_address=extract_dedicated_ip(response),
            username=service.get('username') or None,
            os=service.get('os') or None,
            expiry_date=service.get('nextduedate') or None,
            raw=response,
        )
