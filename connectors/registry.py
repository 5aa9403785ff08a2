"""
ProviderRegistry — maps provider slugs to adapter instances.

Built once at process start (``build_registry``), frozen, then passed to
whatever needs it.  Lookups after ``freeze()`` are plain dict reads and
safe from any number of concurrent tasks.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from config.settings import Settings, config
from connectors.base import BaseProvider
from connectors.hubspot import HubSpotProvider
from connectors.pipedrive import PipedriveProvider
from connectors.schemas import ProviderInfo
from connectors.zendesk import ZendeskProvider
from core.errors import UnknownProviderError

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Write-once, read-many provider lookup."""

    def __init__(self) -> None:
        self._providers: Dict[str, BaseProvider] = {}
        self._frozen = False

    def register(self, provider: BaseProvider) -> None:
        if self._frozen:
            raise RuntimeError("ProviderRegistry is frozen; register providers at startup")
        name = provider.provider_name
        if name in self._providers:
            raise ValueError(f"Provider '{name}' is already registered")
        self._providers[name] = provider
        logger.info("Provider registered: %s (%s)", provider.display_name, name)

    def freeze(self) -> "ProviderRegistry":
        self._frozen = True
        return self

    def get(self, provider: str) -> BaseProvider:
        """Return the adapter for ``provider`` or raise ``UnknownProviderError``."""
        try:
            return self._providers[provider]
        except KeyError:
            raise UnknownProviderError(provider) from None

    def find(self, provider: str) -> Optional[BaseProvider]:
        return self._providers.get(provider)

    def list_providers(self) -> List[ProviderInfo]:
        return [p.info() for p in self._providers.values()]

    def __contains__(self, provider: str) -> bool:
        return provider in self._providers


def build_registry(
    settings: Optional[Settings] = None,
    providers: Optional[List[BaseProvider]] = None,
) -> ProviderRegistry:
    """Register every configured provider and freeze the registry."""
    settings = settings or config
    candidates = providers if providers is not None else [
        HubSpotProvider(settings),
        PipedriveProvider(settings),
        ZendeskProvider(settings),
    ]
    registry = ProviderRegistry()
    for provider in candidates:
        if provider.is_configured():
            registry.register(provider)
        else:
            logger.warning(
                "Provider %s skipped: not configured (missing client_id/secret)",
                provider.provider_name,
            )
    return registry.freeze()
