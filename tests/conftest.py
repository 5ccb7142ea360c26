"""
Provisioning Plane Test Fixtures
================================

Shared fixtures for all test modules.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from provisioning_plane.config import ProvisioningConfig, BatchConfig
from provisioning_plane.models import Order
from provisioning_plane.notifications import Notifier
from provisioning_plane.order_store import InMemoryOrderStore
from provisioning_plane.provisioner import OrderProvisioner
from provisioning_plane.providers.base import (
    VPSProviderInterface,
    ServerCredentials,
    ServerSpec,
)

FIXED_NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
ADMIN_KEY = "test-admin-key"


# ============================================
# ORDERS
# ============================================

def make_order(order_id: str = "order-1", **overrides) -> Order:
    """Paid Hostycare Linux order that has never been provisioned."""
    defaults = dict(
        id=order_id,
        status="paid",
        product_name="Linux Basic",
        memory="4GB",
        provider="hostycare",
        plan_id="101",
        created_at=FIXED_NOW - timedelta(hours=1),
        updated_at=FIXED_NOW - timedelta(hours=1),
    )
    defaults.update(overrides)
    return Order(**defaults)


@pytest.fixture
def order_factory():
    return make_order


# ============================================
# MOCK PROVIDERS
# ============================================

class FakeProvider(VPSProviderInterface):
    """
    Scripted provider adapter.

    Each create_server call pops the next scripted result. Exceptions are
    raised, ServerCredentials are returned. When the script runs out, a
    default set of credentials is returned.

    Lookups of earlier servers are answered from `existing` (service id to
    credentials or exception). Left as None, the adapter cannot look up.
    """

    def __init__(self, provider_id: str = "hostycare", results: Optional[List[Any]] = None,
                 ip: str = "203.0.113.10"):
        super().__init__()
        self.PROVIDER_ID = provider_id
        self.results = list(results or [])
        self.ip = ip
        self.calls: List[ServerSpec] = []
        self.gate: Optional[asyncio.Event] = None
        self.existing: Optional[Dict[str, Any]] = None
        self.lookups: List[str] = []

    async def create_server(self, spec: ServerSpec) -> ServerCredentials:
        self.calls.append(spec)
        if self.gate is not None:
            await self.gate.wait()
        if self.results:
            result = self.results.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result
        return ServerCredentials(
            service_id=f"svc-{len(self.calls)}",
            ip_address=self.ip,
            username=spec.username,
            password=spec.password,
        )

    async def fetch_credentials(self, service_id: str, spec: ServerSpec) -> Optional[ServerCredentials]:
        self.lookups.append(service_id)
        if self.existing is None:
            return None
        result = self.existing[service_id]
        if isinstance(result, BaseException):
            raise result
        return result

    async def test_connection(self) -> Dict[str, Any]:
        return {"success": True}


@pytest.fixture
def hostycare_provider():
    return FakeProvider("hostycare")


@pytest.fixture
def smartvps_provider():
    return FakeProvider("smartvps", ip="198.51.100.7")


@pytest.fixture
def providers(hostycare_provider, smartvps_provider):
    return {"hostycare": hostycare_provider, "smartvps": smartvps_provider}


# ============================================
# STORE / NOTIFIER / PROVISIONER
# ============================================

@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def notifier():
    mock = AsyncMock(spec=Notifier)
    return mock


@pytest.fixture
def provisioner(store, providers, notifier):
    return OrderProvisioner(store, providers, notifier, clock=lambda: FIXED_NOW)


# ============================================
# CONFIG / API
# ============================================

@pytest.fixture
def test_config():
    """Test configuration with dummy values."""
    return ProvisioningConfig(
        batch=BatchConfig(concurrency=2, max_retries=2, retry_backoff_seconds=0, max_run_seconds=60),
        admin_api_keys=[ADMIN_KEY],
        log_format="text",
    )


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_KEY}"}


@pytest.fixture
def client(test_config, store, providers, notifier):
    from fastapi.testclient import TestClient
    from provisioning_plane.api import create_app

    app = create_app(test_config, store=store, providers=providers, notifier=notifier)
    with TestClient(app) as c:
        yield c
