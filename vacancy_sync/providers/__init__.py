"""Provider connectors and the registry that holds them."""

from .arbeitnow import ArbeitnowProvider
from .base import ClientFactory, ConfigField, Provider, RateLimits, default_client_factory
from .registry import ProviderRegistry, build_default_registry
from .remotive import RemotiveProvider
from .task import TaskProvider
from .uk_gov import UKGovApprenticeshipsProvider

__all__ = [
    "ArbeitnowProvider",
    "ClientFactory",
    "ConfigField",
    "Provider",
    "ProviderRegistry",
    "RateLimits",
    "RemotiveProvider",
    "TaskProvider",
    "UKGovApprenticeshipsProvider",
    "build_default_registry",
    "default_client_factory",
]
