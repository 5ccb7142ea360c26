"""
SmartVPS Provider Adapter
=========================

SmartVPS sells pre-built servers from an IP stock. Creating a server is
three calls: pick an IP from the stock, buy it with the requested RAM,
then read its credentials from the status endpoint.
"""

import json
import logging
import math
import re
from typing import Any, Dict, Optional

import httpx

from .base import (
    VPSProviderInterface,
    ServerSpec,
    ServerCredentials,
    PermanentProviderError,
    ProviderQuotaError,
    classify_http_error,
    classify_transport_error,
)
from .registry import register_provider

logger = logging.getLogger(__name__)

IPV4_PATTERN = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}\b")


def normalize_response(payload: Any) -> Any:
    """
    Decode the loosely-typed payloads SmartVPS returns.

    Bodies may be JSON, JSON encoded inside a JSON string, or plain text.
    Anything that cannot be decoded is returned unchanged.
    """
    for _ in range(2):
        if not isinstance(payload, str):
            return payload
        try:
            payload = json.loads(payload)
            continue
        except ValueError:
            pass
        unquoted = payload.strip().strip('"').replace('\\"', '"')
        try:
            payload = json.loads(unquoted)
        except ValueError:
            return payload
    return payload


def extract_ip(payload: Any) -> Optional[str]:
    """Return the first IPv4 address found anywhere in the payload."""
    text = payload if isinstance(payload, str) else json.dumps(payload)
    match = IPV4_PATTERN.search(text)
    return match.group(0) if match else None


def parse_ram(memory: Optional[str]) -> Optional[str]:
    """
    Convert an order memory label to the whole-GB string SmartVPS expects.

    "8GB" -> "8", "4096 MB" -> "4", "16" -> "16".
    """
    if not memory:
        return None
    text = str(memory)
    gb = re.search(r"(\d+)\s*gb", text, re.I)
    if gb:
        return gb.group(1)
    mb = re.search(r"(\d+)\s*mb", text, re.I)
    if mb:
        return str(max(1, math.ceil(int(mb.group(1)) / 1024)))
    number = re.search(r"(\d+)", text)
    return number.group(1) if number else None


@register_provider
class SmartVPSProvider(VPSProviderInterface):
    """SmartVPS (oceansmart) API adapter."""

    PROVIDER_ID = "smartvps"
    PROVIDER_NAME = "SmartVPS"
    PROVIDER_WEBSITE = "https://smartvps.online"

    def __init__(
        self,
        username: str,
        password: str,
        base_url: str = "https://smartvps.online/",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 25.0,
    ):
        super().__init__(client=client, timeout=timeout)
        if not username or not password:
            raise PermanentProviderError(
                self.PROVIDER_ID, "SmartVPS auth missing: set SMARTVPS_USERNAME and SMARTVPS_PASSWORD"
            )
        self.auth = httpx.BasicAuth(username, password)
        self.base_url = base_url.rstrip("/") + "/"

    async def _post(self, path: str, body: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}api/oceansmart/{path}"
        logger.debug(f"SmartVPS POST {path}")
        try:
            response = await self.client.post(
                url,
                json=body,
                auth=self.auth,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise classify_transport_error(self.PROVIDER_ID, e) from e

        text = response.text
        data = normalize_response(text) if text else {}

        if response.status_code >= 400:
            if isinstance(data, dict):
                detail = data.get("message") or data.get("error") or f"HTTP {response.status_code}"
            else:
                detail = str(data) or f"HTTP {response.status_code}"
            raise classify_http_error(
                self.PROVIDER_ID, response.status_code,
                f"SmartVPS POST /api/oceansmart/{path} failed: {detail}",
            )
        return data

    # =========================================
    # API OPERATIONS
    # =========================================

    async def ipstock(self) -> Any:
        return await self._post("ipstock")

    async def buy_vps(self, ip: str, ram: str) -> Any:
        return await self._post("buyvps", {"ip": ip, "ram": str(ram)})

    async def status(self, ip: str) -> Any:
        return await self._post("status", {"ip": ip})

    async def test_connection(self) -> Dict[str, Any]:
        stock = await self.ipstock()
        return {"success": True, "available_ip": extract_ip(stock)}

    async def pick_ip(self) -> str:
        stock = await self.ipstock()
        ip = extract_ip(stock)
        if not ip:
            raise ProviderQuotaError(self.PROVIDER_ID, "No available IP found in SmartVPS ipstock")
        return ip

    async def create_server(self, spec: ServerSpec) -> ServerCredentials:
        ram = parse_ram(spec.memory)
        if not ram:
            raise PermanentProviderError(
                self.PROVIDER_ID, f'Unable to parse RAM from memory "{spec.memory}"'
            )

        candidate_ip = await self.pick_ip()
        logger.info(
            f"Buying SmartVPS server {candidate_ip} ({ram}GB) for order {spec.order_id}",
            extra={"order_id": spec.order_id, "provider": self.PROVIDER_ID},
        )

        # Some responses: "success|Congratulations ... Your ip is: 103.195.26.51"
        bought = await self.buy_vps(candidate_ip, ram)
        bought_ip = extract_ip(bought) or candidate_ip
        return await self.read_credentials(bought_ip, spec)

    async def fetch_credentials(self, service_id: str, spec: ServerSpec) -> Optional[ServerCredentials]:
        ip = extract_ip(service_id)
        if not ip:
            raise PermanentProviderError(self.PROVIDER_ID, f"Service id {service_id!r} is not an IP address")
        logger.info(
            f"Re-reading SmartVPS status of {ip} for order {spec.order_id}",
            extra={"order_id": spec.order_id, "provider": self.PROVIDER_ID},
        )
        return await self.read_credentials(ip, spec)

    async def read_credentials(self, ip: str, spec: ServerSpec) -> ServerCredentials:
        """Credentials of the server at ip. The password may still be missing right after a purchase."""
        status = normalize_response(await self.status(ip))
        if not isinstance(status, dict):
            status = {}

        return ServerCredentials(
            service_id=ip,
            ip_address=status.get("IP") or ip,
            # "Usernane" is how the API spells it
            username=status.get("Usernane") or status.get("Username") or spec.username,
            password=status.get("Password") or None,
            os=status.get("OS") or spec.os,
            raw=status,
        )
