"""
Tests for Upstream Provider Adapters
====================================

Adapters are exercised against httpx.MockTransport so no network is used.
"""

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from provisioning_plane.providers import (
    HostycareProvider,
    SmartVPSProvider,
    ProviderRegistry,
)
from provisioning_plane.providers.base import (
    ServerSpec,
    ServerCredentials,
    TransientProviderError,
    PermanentProviderError,
    ProviderAuthError,
    ProviderQuotaError,
    classify_error_message,
    classify_http_error,
)
from provisioning_plane.providers.hostycare import (
    build_form_params,
    extract_ip,
    extract_service_id,
    generate_token,
)
from provisioning_plane.providers.smartvps import normalize_response, parse_ram
from provisioning_plane.config import ProvisioningConfig, HostycareConfig, SmartVPSConfig


def make_spec(**overrides) -> ServerSpec:
    defaults = dict(
        order_id="order-1",
        product_name="Windows RDP",
        memory="8GB",
        os="Windows 2022 64",
        hostname="windowsrdp-8gb-abc123.com",
        username="administrator",
        password="Ab1@cdefghij",
        plan_id="101",
    )
    defaults.update(overrides)
    return ServerSpec(**defaults)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ============================================
# ERROR CLASSIFICATION
# ============================================

class TestErrorClassification:
    """Test mapping of upstream failures onto the error taxonomy."""

    @pytest.mark.parametrize("status", [500, 502, 503, 408, 429])
    def test_transient_statuses(self, status):
        assert isinstance(classify_http_error("hostycare", status, "boom"), TransientProviderError)

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_statuses(self, status):
        err = classify_http_error("hostycare", status, "denied")
        assert isinstance(err, ProviderAuthError)
        assert not err.transient

    def test_other_client_error_is_permanent(self):
        err = classify_http_error("hostycare", 422, "invalid hostname")
        assert isinstance(err, PermanentProviderError)
        assert err.details["status_code"] == 422

    @pytest.mark.parametrize("message", [
        "Password strength should not be less than 100",
        "The following IP(s) are used by another VPS: 1.2.3.4",
        "API rate limit exceeded",
        "server is busy, try later",
    ])
    def test_recoverable_messages(self, message):
        assert classify_error_message("hostycare", message).transient

    def test_quota_message(self):
        assert isinstance(classify_error_message("hostycare", "Insufficient credit"), ProviderQuotaError)

    def test_error_string_format(self):
        err = classify_error_message("smartvps", "Nope")
        assert str(err) == "[smartvps] Nope"


class TestServerCredentials:

    def test_missing_fields(self):
        creds = ServerCredentials(service_id="1", ip_address="1.2.3.4", username="root", password=None)
        assert creds.missing_fields() == ["password"]

    def test_complete(self):
        creds = ServerCredentials(service_id="1", ip_address="1.2.3.4", username="root", password="x")
        assert creds.missing_fields() == []


# ============================================
# HOSTYCARE
# ============================================

class TestHostycareHelpers:

    def test_token(self):
        now = datetime(2025, 3, 1, 9, 45, tzinfo=timezone.utc)
        token = generate_token("reseller", "secret", now)
        expected = hmac.new(b"reseller:25-03-01 09", b"secret", hashlib.sha256).hexdigest()
        assert base64.b64decode(token).decode() == expected

    def test_form_params_nested(self):
        params = build_form_params({
            "cycle": "monthly",
            "fields": {"os": "win"},
            "configurations": {"ram": 8},
            "nsprefix": ["ns1", "ns2"],
            "skip": None,
        })
        assert ("fields[os]", "win") in params
        assert ("configurations[ram]", "8") in params
        assert params.count(("nsprefix[]", "ns1")) == 1
        assert all(key != "skip" for key, _ in params)

    @pytest.mark.parametrize("response", [
        {"data": {"service": {"id": 7, "dedicatedip": "203.0.113.10"}}},
        {"service": {"id": 7, "dedicatedIp": "203.0.113.10"}},
        {"id": 7, "dedicatedip": "203.0.113.10"},
    ])
    def test_extract_from_response_shapes(self, response):
        assert extract_service_id(response) == "7"
        assert extract_ip(response) == "203.0.113.10"


class TestHostycareProvider:
    """Test the Hostycare adapter against a mock transport."""

    def test_requires_credentials(self):
        with pytest.raises(PermanentProviderError):
            HostycareProvider(username="", api_key="")

    @pytest.mark.asyncio
    async def test_create_server(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["method"] = request.method
            seen["headers"] = request.headers
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"data": {"service": {"id": 555, "dedicatedip": "203.0.113.10"}}})

        provider = HostycareProvider("reseller", "secret", client=mock_client(handler))
        spec = make_spec(metadata={"configurations": {"os": "win2022"}})
        creds = await provider.create_server(spec)

        assert creds.service_id == "555"
        assert creds.ip_address == "203.0.113.10"
        assert creds.username == "administrator"
        assert creds.password == spec.password
        assert seen["method"] == "POST"
        assert seen["path"].endswith("/order/products/101")
        assert seen["headers"]["username"] == "reseller"
        assert seen["headers"]["token"]
        assert seen["form"]["cycle"] == ["monthly"]
        assert seen["form"]["hostname"] == ["windowsrdp-8gb-abc123.com"]
        assert seen["form"]["configurations[os]"] == ["win2022"]

    @pytest.mark.asyncio
    async def test_polls_for_ip(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, json={"service": {"id": 9}})
            assert request.url.path.endswith("/services/9")
            return httpx.Response(200, json={"service": {"id": 9, "dedicatedip": "203.0.113.11"}})

        provider = HostycareProvider(
            "reseller", "secret", client=mock_client(handler), ip_poll_interval=0,
        )
        creds = await provider.create_server(make_spec())
        assert creds.ip_address == "203.0.113.11"

    @pytest.mark.asyncio
    async def test_ip_never_assigned(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(200, json={"service": {"id": 9}})
            return httpx.Response(200, json={"success": False, "message": "Details unavailable"})

        provider = HostycareProvider(
            "reseller", "secret", client=mock_client(handler), ip_poll_attempts=2, ip_poll_interval=0,
        )
        creds = await provider.create_server(make_spec())
        assert creds.service_id == "9"
        assert creds.ip_address is None
        assert creds.missing_fields() == ["ip_address"]

    @pytest.mark.asyncio
    async def test_error_embedded_in_200(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"success": False, "message": "Server is busy"})

        provider = HostycareProvider("reseller", "secret", client=mock_client(handler))
        with pytest.raises(TransientProviderError) as exc:
            await provider.create_server(make_spec())
        assert exc.value.provider == "hostycare"

    @pytest.mark.asyncio
    async def test_error_key_is_permanent(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"error": "Invalid product"})

        provider = HostycareProvider("reseller", "secret", client=mock_client(handler))
        with pytest.raises(PermanentProviderError, match="Invalid product"):
            await provider.create_server(make_spec())

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        provider = HostycareProvider("reseller", "secret", client=mock_client(handler))
        with pytest.raises(TransientProviderError):
            await provider.create_server(make_spec())

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "Invalid token"})

        provider = HostycareProvider("reseller", "secret", client=mock_client(handler))
        with pytest.raises(ProviderAuthError):
            await provider.test_connection()

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        provider = HostycareProvider("reseller", "secret", client=mock_client(handler))
        with pytest.raises(TransientProviderError, match="Connection timeout"):
            await provider.create_server(make_spec())

    @pytest.mark.asyncio
    async def test_missing_plan_id(self):
        provider = HostycareProvider("reseller", "secret", client=mock_client(lambda r: httpx.Response(200)))
        with pytest.raises(PermanentProviderError, match="product id"):
            await provider.create_server(make_spec(plan_id=None))

    @pytest.mark.asyncio
    async def test_fetch_credentials(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert request.url.path.endswith("/services/555")
            return httpx.Response(200, json={"data": {"service": {
                "id": 555, "dedicatedip": "203.0.113.10", "username": "administrator", "password": "Pw@1234",
            }}})

        provider = HostycareProvider("reseller", "secret", client=mock_client(handler))
        creds = await provider.fetch_credentials("555", make_spec())
        assert creds.service_id == "555"
        assert creds.ip_address == "203.0.113.10"
        assert creds.password == "Pw@1234"
        assert creds.missing_fields() == []

    @pytest.mark.asyncio
    async def test_fetch_credentials_without_password(self):
        provider = HostycareProvider(
            "reseller", "secret",
            client=mock_client(lambda r: httpx.Response(200, json={"service": {"dedicatedip": "203.0.113.10"}})),
        )
        creds = await provider.fetch_credentials("555", make_spec())
        assert creds.missing_fields() == ["password"]


# ============================================
# SMARTVPS
# ============================================

class TestSmartVPSHelpers:

    @pytest.mark.parametrize("memory,expected", [
        ("8GB", "8"),
        ("16 gb", "16"),
        ("4096 MB", "4"),
        ("512MB", "1"),
        ("32", "32"),
        ("", None),
        ("lots", None),
    ])
    def test_parse_ram(self, memory, expected):
        assert parse_ram(memory) == expected

    def test_normalize_double_encoded(self):
        inner = json.dumps({"IP": "198.51.100.7"})
        assert normalize_response(json.dumps(inner)) == {"IP": "198.51.100.7"}

    def test_normalize_plain_text(self):
        text = "success|Congratulations Your ip is: 198.51.100.7"
        assert normalize_response(text) == text


class TestSmartVPSProvider:
    """Test the SmartVPS adapter against a mock transport."""

    def test_requires_credentials(self):
        with pytest.raises(PermanentProviderError):
            SmartVPSProvider(username="u", password="")

    @pytest.mark.asyncio
    async def test_create_server(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path.rsplit("/", 1)[-1]
            body = json.loads(request.content) if request.content else None
            calls.append((path, body, request.headers.get("Authorization")))
            if path == "ipstock":
                return httpx.Response(200, text=json.dumps(json.dumps([{"ip": "198.51.100.7"}])))
            if path == "buyvps":
                return httpx.Response(200, text="success|Congratulations Your ip is: 198.51.100.7")
            status = {"IP": "198.51.100.7", "Usernane": "Administrator", "Password": "Pw@12345", "OS": "Windows 2022"}
            return httpx.Response(200, text=json.dumps(json.dumps(status)))

        provider = SmartVPSProvider("smart", "pw", client=mock_client(handler))
        creds = await provider.create_server(make_spec())

        assert [c[0] for c in calls] == ["ipstock", "buyvps", "status"]
        assert calls[1][1] == {"ip": "198.51.100.7", "ram": "8"}
        assert calls[2][1] == {"ip": "198.51.100.7"}
        assert calls[0][2].startswith("Basic ")
        assert creds.service_id == "198.51.100.7"
        assert creds.ip_address == "198.51.100.7"
        assert creds.username == "Administrator"
        assert creds.password == "Pw@12345"
        assert creds.os == "Windows 2022"

    @pytest.mark.asyncio
    async def test_status_without_password(self):
        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path.rsplit("/", 1)[-1]
            if path == "ipstock":
                return httpx.Response(200, json=["198.51.100.8"])
            if path == "buyvps":
                return httpx.Response(200, text="success")
            return httpx.Response(200, json={"IP": "198.51.100.8"})

        provider = SmartVPSProvider("smart", "pw", client=mock_client(handler))
        creds = await provider.create_server(make_spec())
        assert creds.missing_fields() == ["password"]

    @pytest.mark.asyncio
    async def test_fetch_credentials_reads_status_only(self):
        paths = []

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path.rsplit("/", 1)[-1])
            assert json.loads(request.content) == {"ip": "198.51.100.7"}
            status = {"IP": "198.51.100.7", "Username": "Administrator", "Password": "Pw@12345"}
            return httpx.Response(200, text=json.dumps(json.dumps(status)))

        provider = SmartVPSProvider("smart", "pw", client=mock_client(handler))
        creds = await provider.fetch_credentials("198.51.100.7", make_spec())

        assert paths == ["status"]
        assert creds.service_id == "198.51.100.7"
        assert creds.username == "Administrator"
        assert creds.password == "Pw@12345"
        assert creds.os == "Windows 2022 64"

    @pytest.mark.asyncio
    async def test_fetch_credentials_rejects_non_ip(self):
        provider = SmartVPSProvider("smart", "pw", client=mock_client(lambda r: httpx.Response(200)))
        with pytest.raises(PermanentProviderError):
            await provider.fetch_credentials("not-an-ip", make_spec())

    @pytest.mark.asyncio
    async def test_empty_stock(self):
        provider = SmartVPSProvider(
            "smart", "pw", client=mock_client(lambda r: httpx.Response(200, json=[])),
        )
        with pytest.raises(ProviderQuotaError):
            await provider.create_server(make_spec())

    @pytest.mark.asyncio
    async def test_unparseable_memory(self):
        provider = SmartVPSProvider("smart", "pw", client=mock_client(lambda r: httpx.Response(200)))
        with pytest.raises(PermanentProviderError, match="Unable to parse RAM"):
            await provider.create_server(make_spec(memory="unlimited"))

    @pytest.mark.asyncio
    async def test_upstream_error(self):
        provider = SmartVPSProvider(
            "smart", "pw", client=mock_client(lambda r: httpx.Response(502, json={"message": "down"})),
        )
        with pytest.raises(TransientProviderError, match="down"):
            await provider.create_server(make_spec())


# ============================================
# REGISTRY
# ============================================

class TestProviderRegistry:

    def test_adapters_registered(self):
        ids = {p["id"] for p in ProviderRegistry.list_providers()}
        assert {"hostycare", "smartvps"} <= ids

    def test_from_config_only_configured(self):
        config = ProvisioningConfig(hostycare=HostycareConfig(username="r", api_key="k"))
        providers = ProviderRegistry.from_config(config)
        assert list(providers) == ["hostycare"]
        assert isinstance(providers["hostycare"], HostycareProvider)

    def test_from_config_both(self):
        config = ProvisioningConfig(
            hostycare=HostycareConfig(username="r", api_key="k"),
            smartvps=SmartVPSConfig(username="u", password="p"),
        )
        assert set(ProviderRegistry.from_config(config)) == {"hostycare", "smartvps"}

    def test_unknown_provider(self):
        from provisioning_plane.providers import ProviderError
        with pytest.raises(ProviderError):
            ProviderRegistry.instantiate("linode")
