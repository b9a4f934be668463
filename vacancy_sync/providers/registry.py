"""In-memory registry of provider connectors."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..logging import get_logger
from ..models import ConnectionTestResult
from .arbeitnow import ArbeitnowProvider
from .base import ClientFactory, Provider
from .remotive import RemotiveProvider
from .uk_gov import UKGovApprenticeshipsProvider

log = get_logger("provider")


class ProviderRegistry:
    """Keyed collection of providers. Registration never overwrites."""

    def __init__(self) -> None:
        self._providers: Dict[str, Provider] = {}

    def register(self, provider: Provider) -> bool:
        if provider.id in self._providers:
            log.warning(f"Provider '{provider.id}' is already registered; ignoring duplicate")
            return False
        self._providers[provider.id] = provider
        log.debug(f"Registered provider '{provider.id}'")
        return True

    def unregister(self, provider_id: str) -> bool:
        provider = self._providers.pop(provider_id, None)
        if provider is None:
            return False
        provider.close()
        return True

    def get(self, provider_id: str) -> Optional[Provider]:
        return self._providers.get(provider_id)

    def has(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def all(self) -> List[Provider]:
        return list(self._providers.values())

    def ids(self) -> List[str]:
        return list(self._providers)

    def get_configured(self) -> List[Provider]:
        return [p for p in self._providers.values() if p.is_configured()]

    def __len__(self) -> int:
        return len(self._providers)

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._providers

    def load_configs(self, configs: Dict[str, Dict[str, Any]]) -> List[str]:
        """Apply raw config blobs to matching providers; returns the ids updated."""
        applied = []
        for provider_id, raw in (configs or {}).items():
            provider = self._providers.get(provider_id)
            if provider is None:
                log.debug(f"No provider registered for config '{provider_id}'")
                continue
            provider.set_config(raw or {})
            applied.append(provider_id)
        return applied

    def providers_info(self) -> List[Dict[str, Any]]:
        return [p.info() for p in self._providers.values()]

    def test_all_connections(self) -> Dict[str, ConnectionTestResult]:
        return {p.id: p.test_connection() for p in self.get_configured()}

    def close(self) -> None:
        for provider in self._providers.values():
            provider.close()


def build_default_registry(client_factory: Optional[ClientFactory] = None) -> ProviderRegistry:
    """Registry with every built-in provider registered (unconfigured)."""
    registry = ProviderRegistry()
    for cls in (UKGovApprenticeshipsProvider, ArbeitnowProvider, RemotiveProvider):
        registry.register(cls(client_factory=client_factory))
    return registry
