"""
Provider Registry
=================

Central registry of upstream provider adapters. Adapters register
themselves with a decorator and are instantiated from configuration.
"""

import logging
from typing import Dict, List, Optional, Type

from .base import VPSProviderInterface, ProviderError

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of available VPS provider adapters."""

    _providers: Dict[str, Type[VPSProviderInterface]] = {}

    @classmethod
    def register(cls, provider_class: Type[VPSProviderInterface]) -> None:
        cls._providers[provider_class.PROVIDER_ID] = provider_class

    @classmethod
    def get_provider_class(cls, provider_id: str) -> Optional[Type[VPSProviderInterface]]:
        return cls._providers.get(provider_id)

    @classmethod
    def list_providers(cls) -> List[Dict[str, str]]:
        """
        List all registered providers.

        Returns:
            List of provider metadata dicts
        """
        return [
            {
                "id": provider_class.PROVIDER_ID,
                "name": provider_class.PROVIDER_NAME,
                "website": provider_class.PROVIDER_WEBSITE,
            }
            for provider_class in cls._providers.values()
        ]

    @classmethod
    def instantiate(cls, provider_id: str, **kwargs) -> VPSProviderInterface:
        """
        Create an instance of a provider adapter.

        Raises:
            ProviderError: If provider not found
        """
        provider_class = cls.get_provider_class(provider_id)
        if not provider_class:
            raise ProviderError(
                provider_id,
                f"Provider not found: {provider_id}. "
                f"Available: {list(cls._providers.keys())}"
            )
        return provider_class(**kwargs)

    @classmethod
    def from_config(cls, config) -> Dict[str, VPSProviderInterface]:
        """Instantiate every provider that has credentials configured."""
        providers: Dict[str, VPSProviderInterface] = {}
        if config.hostycare.is_configured:
            providers["hostycare"] = cls.instantiate(
                "hostycare",
                username=config.hostycare.username,
                api_key=config.hostycare.api_key,
                endpoint=config.hostycare.endpoint,
                timeout=config.hostycare.timeout_seconds,
            )
        if config.smartvps.is_configured:
            providers["smartvps"] = cls.instantiate(
                "smartvps",
                username=config.smartvps.username,
                password=config.smartvps.password,
                base_url=config.smartvps.base_url,
                timeout=config.smartvps.timeout_seconds,
            )
        for provider_id in cls._providers:
            if provider_id not in providers:
                logger.warning(f"Provider {provider_id} not configured, orders routed to it will fail")
        return providers


def register_provider(provider_class: Type[VPSProviderInterface]):
    """
    Decorator to register a provider class.

    Usage:
        @register_provider
        class HostycareProvider(VPSProviderInterface):
            ...
    """
    ProviderRegistry.register(provider_class)
    return provider_class
