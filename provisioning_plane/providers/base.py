"""
Provider Base Classes and Interfaces
====================================

Defines the abstract interface that every upstream VPS provider adapter
implements, along with the error taxonomy used to decide whether a failed
server creation may be retried.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class ServerSpec:
    """Everything an adapter needs to create one server."""
    order_id: str
    product_name: str
    memory: str
    os: str
    hostname: str
    username: str
    password: str
    plan_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ServerCredentials:
    """Result of a successful upstream creation."""
    service_id: Optional[str]
    ip_address: Optional[str]
    username: Optional[str]
    password: Optional[str]
    os: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    REQUIRED = ("service_id", "ip_address", "username", "password")

    def missing_fields(self) -> List[str]:
        return [name for name in self.REQUIRED if not getattr(self, name)]


# =========================================
# ERRORS
# =========================================

class ProviderError(Exception):
    """Base exception for provider errors."""
    transient = False

    def __init__(self, provider: str, message: str, details: Optional[Dict] = None):
        self.provider = provider
        self.message = message
        self.details = details or {}
        super().__init__(f"[{provider}] {message}")


class TransientProviderError(ProviderError):
    """Timeouts, upstream 5xx, rate limiting and known recoverable messages."""
    transient = True


class PermanentProviderError(ProviderError):
    """Failures that will not succeed on retry without a change."""
    pass


class ProviderAuthError(PermanentProviderError):
    """Authentication/authorization error."""
    pass


class ProviderQuotaError(PermanentProviderError):
    """Quota/limit exceeded error."""
    pass


class IncompleteCredentialsError(PermanentProviderError):
    """Upstream reported success without a usable set of credentials."""
    pass


RETRYABLE_MESSAGES = (
    "Password strength should not be less than 100",
    "The following IP(s) are used by another VPS",
    "Service temporarily unavailable",
    "Connection timeout",
    "API rate limit",
    "Server is busy",
)

QUOTA_PATTERN = re.compile(r"insufficient (credit|balance|funds)|quota|out of stock|no (ip|stock)", re.I)


def classify_error_message(provider: str, message: str, details: Optional[Dict] = None) -> ProviderError:
    """Map an upstream error message onto the error taxonomy."""
    lowered = message.lower()
    if any(m.lower() in lowered for m in RETRYABLE_MESSAGES):
        return TransientProviderError(provider, message, details)
    if QUOTA_PATTERN.search(message):
        return ProviderQuotaError(provider, message, details)
    if "unauthori" in lowered or "authentication" in lowered or "invalid token" in lowered:
        return ProviderAuthError(provider, message, details)
    return PermanentProviderError(provider, message, details)


def classify_http_error(provider: str, status_code: int, message: str,
                        details: Optional[Dict] = None) -> ProviderError:
    """Map an HTTP failure status onto the error taxonomy."""
    details = dict(details or {}, status_code=status_code)
    if status_code >= 500 or status_code in (408, 429):
        return TransientProviderError(provider, message, details)
    if status_code in (401, 403):
        return ProviderAuthError(provider, message, details)
    if status_code == 402:
        return ProviderQuotaError(provider, message, details)
    return classify_error_message(provider, message, details)


def classify_transport_error(provider: str, exc: httpx.HTTPError) -> ProviderError:
    """Timeouts and connection failures are always worth another attempt."""
    if isinstance(exc, httpx.TimeoutException):
        return TransientProviderError(provider, f"Connection timeout: {exc}")
    return TransientProviderError(provider, f"Transport error: {exc}")


# =========================================
# PROVIDER INTERFACE
# =========================================

class VPSProviderInterface(ABC):
    """
    Abstract interface for upstream VPS providers.

    Adapters translate a ServerSpec into the provider's own API calls and
    return normalized ServerCredentials. Every failure surfaces as a
    ProviderError subclass so callers can decide whether to retry.
    """

    # Provider metadata (override in subclasses)
    PROVIDER_ID: str = "base"
    PROVIDER_NAME: str = "Base Provider"
    PROVIDER_WEBSITE: str = ""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    async def create_server(self, spec: ServerSpec) -> ServerCredentials:
        """
        Create a server upstream and return its credentials.

        Raises:
            ProviderError: Classified as transient or permanent
        """
        pass

    async def fetch_credentials(self, service_id: str, spec: ServerSpec) -> Optional[ServerCredentials]:
        """
        Read back the credentials of a server an earlier attempt created.

        Returns None when the provider offers no way to look a server up,
        in which case the caller has to create a new one.
        """
        return None

    @abstractmethod
    async def test_connection(self) -> Dict[str, Any]:
        """Check that the credentials are accepted upstream."""
        pass

    def _error(self, message: str, details: Optional[Dict] = None) -> ProviderError:
        return classify_error_message(self.PROVIDER_ID, message, details)
