"""
SmartVPS API Service
Windows/Linux VPS provisioning and power control through the SmartVPS reseller API.
The service id of a SmartVPS server is its IP address.
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, Optional, Union

import requests

from config import get_config
from models.order_models import CatalogItem, Order, ProviderName
from services.provider_base import (
    ErrorCode, ProviderAdapter, ProviderError, ProviderStatus, ProvisionResult,
    code_for_http_status, code_for_vendor_message, normalize_status
)
from utils.credentials import default_username, determine_os, parse_memory_gb

logger = logging.getLogger(__name__)

IPV4_PATTERN = re.compile(r'\b(?:\d{1,3}\.){3}\d{1,3}\b')

# SmartVPS OS codes accepted by changeos
OS_CODES = {
    'windows 2012': '2012', 'windows 2016': '2016', 'windows 2019': '2019', 'windows 2022': '2022',
    'windows 11': '11', 'centos': 'centos', 'ubuntu': 'ubuntu',
}


def normalize_response(payload: Any) -> Any:
    """SmartVPS returns plain JSON, JSON encoded as a string, or plain text; unwrap what we can"""
    for _ in range(2):
        if not isinstance(payload, str):
            return payload
        text = payload.strip()
        try:
            payload = json.loads(text)
            continue
        except ValueError:
            pass
        try:
            payload = json.loads(text.strip('"').replace('\\"', '"'))
        except ValueError:
            return payload
    return payload


def extract_ip(source: Any) -> Optional[str]:
    """First IPv4 address found anywhere in a response"""
    text = source if isinstance(source, str) else json.dumps(source, default=str)
    match = IPV4_PATTERN.search(text)
    return match.group(0) if match else None


def os_code_for(os_name: Optional[str]) -> Optional[str]:
    lowered = (os_name or '').lower()
    for prefix, code in OS_CODES.items():
        if lowered.startswith(prefix):
            return code
    return None


class SmartVpsService(ProviderAdapter):
    """SmartVPS API wrapper (Provider B)"""

    name = ProviderName.SMARTVPS.value

    def __init__(self, session: Optional[requests.Session] = None):
        providers = get_config().providers
        self.username = providers.smartvps_username
        self.password = providers.smartvps_password
        self.base_url = providers.smartvps_base_url.rstrip('/') + '/'
        self.timeout = providers.request_timeout_seconds
        self.session = session or requests.Session()

        if not self.is_available():
            logger.warning("SMARTVPS_USERNAME/SMARTVPS_PASSWORD not set - SmartVPS provisioning disabled")

    def is_available(self) -> bool:
        return bool(self.username and self.password)

    async def close(self) -> None:
        self.session.close()

    def _post_sync(self, path: str, body: Optional[Dict[str, Any]]) -> Union[Dict[str, Any], str, list]:
        url = f"{self.base_url}api/oceansmart/{path}"
        try:
            response = self.session.post(
                url,
                json=body,
                auth=(self.username or '', self.password or ''),
                headers={'Accept': 'application/json'},
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise ProviderError("SmartVPS API timeout", ErrorCode.TIMEOUT) from e
        except requests.RequestException as e:
            raise ProviderError(f"SmartVPS fetch error: {e}", ErrorCode.UNAVAILABLE) from e

        data = normalize_response(response.text or '{}')
        if not response.ok:
            detail = data if isinstance(data, str) else (data.get('message') or data.get('error') or f"HTTP {response.status_code}")
            message = f"SmartVPS POST {path} failed: {detail}"
            code = code_for_vendor_message(str(detail))
            if code == ErrorCode.UNKNOWN:
                code = code_for_http_status(response.status_code)
            raise ProviderError(message, code, details={'status_code': response.status_code})

        if isinstance(data, str) and data.lower().startswith(('error', 'failed')):
            raise ProviderError(f"SmartVPS {path} failed: {data}", code_for_vendor_message(data))
        return data

    async def _post(self, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        if not self.is_available():
            raise ProviderError("SmartVPS credentials are not configured", ErrorCode.AUTH_FAILED)
        logger.info(f"🌐 SMARTVPS: POST {path}")
        return await asyncio.to_thread(self._post_sync, path, body)

    @staticmethod
    def _as_dict(data: Any) -> Dict[str, Any]:
        return data if isinstance(data, dict) else {'message': data}

    # === Provisioning ===

    async def pick_available_ip(self) -> str:
        stock = await self._post('ipstock')
        ip = extract_ip(stock)
        if not ip:
            raise ProviderError("No available IP found in SmartVPS ipstock", ErrorCode.UNAVAILABLE)
        return ip

    async def provision(self, order: Order, catalog_item: Optional[CatalogItem] = None) -> ProvisionResult:
        ram = parse_memory_gb(order.memory)
        if not ram:
            return ProvisionResult.failure(
                f"Unable to parse RAM from memory '{order.memory}' for SmartVPS", ErrorCode.INVALID_CONFIGURATION
            )
        target_os = order.os or determine_os(order.product_name)

        try:
            candidate_ip = await self.pick_available_ip()
            logger.info(f"🛒 SMARTVPS: Buying {ram}GB VPS on {candidate_ip} for order {order.id}")
            purchase = await self._post('buyvps', {'ip': candidate_ip, 'ram': str(ram)})
            bought_ip = extract_ip(purchase) or candidate_ip
            status = await self.get_status(bought_ip)
        except ProviderError as e:
            return ProvisionResult.failure(e.message, e.code, raw=e.details)

        return ProvisionResult(
            success=True,
            service_id=bought_ip,
            ip_address=status.ip_address or bought_ip,
            username=status.username or default_username(order.product_name),
            password=status.password,
            os=status.os or target_os,
            raw={'purchase': self._as_dict(purchase), 'status': status.raw},
        )

    # === Lifecycle actions ===

    async def renew(self, service_id: str) -> Dict[str, Any]:
        return self._as_dict(await self._post('renewvps', {'ip': service_id}))

    async def start(self, service_id: str) -> Dict[str, Any]:
        return self._as_dict(await self._post('start', {'ip': service_id}))

    async def stop(self, service_id: str) -> Dict[str, Any]:
        return self._as_dict(await self._post('stop', {'ip': service_id}))

    async def reboot(self, service_id: str) -> Dict[str, Any]:
        await self.stop(service_id)
        return await self.start(service_id)

    async def format(self, service_id: str, os_name: Optional[str] = None) -> Dict[str, Any]:
        code = os_code_for(os_name)
        if code:
            return self._as_dict(await self._post('changeos', {'ip': service_id, 'os': code}))
        return self._as_dict(await self._post('format', {'ip': service_id}))

    async def change_password(self, service_id: str, password: str) -> Dict[str, Any]:
        raise ProviderError("SmartVPS has no password change endpoint; use format", ErrorCode.MANUAL_REQUIRED)

    async def get_status(self, service_id: str) -> ProviderStatus:
        data = await self._post('status', {'ip': service_id})
        status = data if isinstance(data, dict) else {}
        if not status:
            logger.warning(f"⚠️ SMARTVPS: Unparseable status response for {service_id}: {str(data)[:200]}")
        return ProviderStatus(
            machine_status=normalize_status(status.get('MachineStatus') or status.get('ActionStatus'), 'smartvps'),
            power_status=normalize_status(status.get('PowerStatus'), 'smartvps'),
            ip_address=status.get('IP') or extract_ip(data) or None,
            # "Usernane" is how the SmartVPS API spells it
            username=status.get('Usernane') or status.get('Username') or None,
            password=status.get('Password') or None,
            os=status.get('OS') or None,
            expiry_date=status.get('ExpiryDate') or None,
            raw=self._as_dict(data),
        )
