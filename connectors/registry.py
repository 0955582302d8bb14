"""
ProviderRegistry — name → provider lookup for one IntegrationContext.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from connectors.base import IntegrationProvider
from connectors.errors import ProviderNotFoundError
from connectors.schemas import ProviderCategory

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of integration providers, keyed by provider name."""

    def __init__(self) -> None:
        self._providers: Dict[str, IntegrationProvider] = {}

    def register(self, provider: IntegrationProvider) -> None:
        """Register a provider. A provider with the same name is replaced."""
        if provider.name in self._providers:
            logger.debug("Provider %s re-registered", provider.name)
        self._providers[provider.name] = provider
        logger.info(
            "Provider registered: %s (%s)", provider.display_name, provider.name
        )

    def unregister(self, name: str) -> bool:
        return self._providers.pop(name, None) is not None

    def get(self, name: str) -> IntegrationProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise ProviderNotFoundError(name) from None

    def has(self, name: str) -> bool:
        return name in self._providers

    def all(self) -> List[IntegrationProvider]:
        return list(self._providers.values())

    def get_by_category(self, category: ProviderCategory) -> List[IntegrationProvider]:
        return [p for p in self._providers.values() if p.category == category]

    def list_providers(self) -> List[Dict[str, Any]]:
        """Return info about all registered providers."""
        return [
            {
                "provider": p.name,
                "display_name": p.display_name,
                "category": p.category.value,
                "description": p.description,
                "icon": p.icon,
                "configured": p.is_configured(),
            }
            for p in self._providers.values()
        ]
