"""
Hostycare Provider Adapter
==========================

Reseller API client for Hostycare. Requests are form-encoded and signed
with an hourly HMAC token; errors may arrive inside an HTTP 200 body.
"""

import asyncio
import base64
import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import httpx

from .base import (
    VPSProviderInterface,
    ServerSpec,
    ServerCredentials,
    ProviderError,
    PermanentProviderError,
    classify_http_error,
    classify_transport_error,
)
from .registry import register_provider

logger = logging.getLogger(__name__)


def generate_token(username: str, api_key: str, now: Optional[datetime] = None) -> str:
    """
    Build the request token.

    The HMAC key is "<username>:<yy-mm-dd HH>" in UTC and the message is the
    API key. The hex digest is then base64-encoded.
    """
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    key = f"{username}:{now.strftime('%y-%m-%d %H')}"
    digest = hmac.new(key.encode(), api_key.encode(), hashlib.sha256).hexdigest()
    return base64.b64encode(digest.encode()).decode()


def build_form_params(obj: Dict[str, Any], parent_key: str = "") -> List[Tuple[str, str]]:
    """Flatten nested dicts and lists into fields[key]=v / nsprefix[]=v pairs."""
    params: List[Tuple[str, str]] = []
    for key, value in obj.items():
        full_key = f"{parent_key}[{key}]" if parent_key else str(key)
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            for item in value:
                if isinstance(item, dict):
                    params.extend(build_form_params(item, f"{full_key}[]"))
                else:
                    params.append((f"{full_key}[]", str(item)))
        elif isinstance(value, dict):
            params.extend(build_form_params(value, full_key))
        else:
            params.append((full_key, str(value)))
    return params


def _dig(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def extract_service_id(response: Dict[str, Any]) -> Optional[str]:
    value = (
        _dig(response, "data", "service", "id")
        or _dig(response, "service", "id")
        or _dig(response, "id")
    )
    return str(value) if value else None


def extract_ip(response: Dict[str, Any]) -> Optional[str]:
    for path in (
        ("data", "service"),
        ("service",),
        (),
    ):
        node = _dig(response, *path) if path else response
        if not isinstance(node, dict):
            continue
        ip = node.get("dedicatedip") or node.get("dedicatedIp")
        if ip:
            return str(ip)
    return None


@register_provider
class HostycareProvider(VPSProviderInterface):
    """Hostycare reseller API adapter."""

    PROVIDER_ID = "hostycare"
    PROVIDER_NAME = "Hostycare"
    PROVIDER_WEBSITE = "https://www.hostycare.com"

    DEFAULT_ENDPOINT = "https://www.hostycare.com/manage/modules/addons/ProductsReseller/api/index.php"

    def __init__(
        self,
        username: str,
        api_key: str,
        endpoint: str = DEFAULT_ENDPOINT,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        ip_poll_attempts: int = 3,
        ip_poll_interval: float = 10.0,
    ):
        super().__init__(client=client, timeout=timeout)
        if not username or not api_key:
            raise PermanentProviderError(self.PROVIDER_ID, "Missing Hostycare username or API key")
        self.username = username
        self.api_key = api_key
        self.endpoint = endpoint.rstrip("/")
        self.ip_poll_attempts = ip_poll_attempts
        self.ip_poll_interval = ip_poll_interval

    # =========================================
    # TRANSPORT
    # =========================================

    async def _request(self, action: str, method: str = "GET",
                       params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        headers = {
            "username": self.username,
            "token": generate_token(self.username, self.api_key),
            "Accept": "application/json",
        }
        url = f"{self.endpoint}{action}"
        kwargs: Dict[str, Any] = {"headers": headers}
        if method == "POST":
            headers["Content-Type"] = "application/x-www-form-urlencoded"
            kwargs["content"] = urlencode(build_form_params(params or {}))

        logger.debug(f"Hostycare {method} {action}")
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise classify_transport_error(self.PROVIDER_ID, e) from e

        try:
            data = response.json()
        except ValueError:
            if response.status_code >= 400:
                raise classify_http_error(
                    self.PROVIDER_ID, response.status_code,
                    f"API request failed with status {response.status_code}",
                )
            raise PermanentProviderError(
                self.PROVIDER_ID, f"Invalid JSON response: {response.text[:200]}"
            )

        failed = isinstance(data, dict) and (data.get("error") or data.get("success") is False)
        if response.status_code >= 400 or failed:
            message = ""
            if isinstance(data, dict):
                message = data.get("error") or data.get("message") or ""
            message = str(message) or f"API request failed with status {response.status_code}"
            if response.status_code >= 400:
                raise classify_http_error(self.PROVIDER_ID, response.status_code, message, {"action": action})
            raise self._error(message, {"action": action})

        return data if isinstance(data, dict) else {"data": data}

    # =========================================
    # API OPERATIONS
    # =========================================

    async def test_connection(self) -> Dict[str, Any]:
        return await self._request("/testConnection")

    async def get_products(self) -> Dict[str, Any]:
        return await self._request("/products?withpricing=1")

    async def get_service_details(self, service_id: str) -> Dict[str, Any]:
        return await self._request(f"/services/{service_id}")

    async def get_credit(self) -> Dict[str, Any]:
        return await self._request("/billing/credit")

    async def create_server(self, spec: ServerSpec) -> ServerCredentials:
        """
        Order a product and return the new service's credentials.

        The dedicated IP is sometimes assigned after the order call returns,
        in which case the service is polled a few times before giving up.
        """
        if not spec.plan_id:
            raise PermanentProviderError(
                self.PROVIDER_ID,
                f"No Hostycare product id for memory configuration '{spec.memory}'",
            )

        body = {
            "cycle": "monthly",
            "hostname": spec.hostname,
            "username": spec.username,
            "password": spec.password,
            "fields": spec.metadata.get("fields") or {},
            "configurations": spec.metadata.get("configurations") or {},
        }
        if spec.metadata.get("nsprefix"):
            body["nsprefix"] = list(spec.metadata["nsprefix"])

        logger.info(
            f"Ordering Hostycare product {spec.plan_id} for order {spec.order_id}",
            extra={"order_id": spec.order_id, "provider": self.PROVIDER_ID},
        )
        response = await self._request(f"/order/products/{spec.plan_id}", "POST", body)

        service_id = extract_service_id(response)
        ip_address = extract_ip(response)
        if service_id and not ip_address:
            ip_address = await self._wait_for_ip(service_id)

        return ServerCredentials(
            service_id=service_id,
            ip_address=ip_address,
            username=spec.username,
            password=spec.password,
            os=spec.os,
            raw=response,
        )

    async def fetch_credentials(self, service_id: str, spec: ServerSpec) -> Optional[ServerCredentials]:
        """
        Look up a service ordered by an earlier attempt.

        The login set at order time is only known if the service details
        echo it back, otherwise the password comes back empty.
        """
        details = await self.get_service_details(service_id)
        service = _dig(details, "data", "service") or _dig(details, "service") or details
        if not isinstance(service, dict):
            service = {}
        return ServerCredentials(
            service_id=service_id,
            ip_address=extract_ip(details),
            username=service.get("username") or spec.username,
            password=service.get("password") or None,
            os=spec.os,
            raw=details,
        )

    async def _wait_for_ip(self, service_id: str) -> Optional[str]:
        for attempt in range(self.ip_poll_attempts):
            await asyncio.sleep(self.ip_poll_interval)
            try:
                details = await self.get_service_details(service_id)
            except ProviderError as e:
                logger.info(f"Service {service_id} details unavailable (attempt {attempt + 1}): {e.message}")
                continue
            ip = extract_ip(details)
            if ip:
                return ip
        logger.warning(f"No dedicated IP assigned to Hostycare service {service_id} yet")
        return None
