"""
Upstream VPS provider adapters.

Importing this package registers every adapter with the ProviderRegistry.
"""

from .base import (
    VPSProviderInterface,
    ServerSpec,
    ServerCredentials,
    ProviderError,
    TransientProviderError,
    PermanentProviderError,
    ProviderAuthError,
    ProviderQuotaError,
    IncompleteCredentialsError,
)
from .registry import ProviderRegistry, register_provider
from .hostycare import HostycareProvider
from .smartvps import SmartVPSProvider

__all__ = [
    "VPSProviderInterface",
    "ServerSpec",
    "ServerCredentials",
    "ProviderError",
    "TransientProviderError",
    "PermanentProviderError",
    "ProviderAuthError",
    "ProviderQuotaError",
    "IncompleteCredentialsError",
    "ProviderRegistry",
    "register_provider",
    "HostycareProvider",
    "SmartVPSProvider",
]
