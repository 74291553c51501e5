"""Hypervisor providers for the agent."""

from hvlab.providers.base import Provider, VMActionResult, VMRecord
from hvlab.providers.hyperv import HyperVProvider
from hvlab.providers.registry import (
    ProviderRegistry,
    get_default_provider,
    get_provider,
    list_providers,
    register_provider,
    reset_providers,
)

__all__ = [
    # Base classes and types
    "Provider",
    "VMActionResult",
    "VMRecord",
    # Provider implementations
    "HyperVProvider",
    # Registry
    "ProviderRegistry",
    "get_provider",
    "get_default_provider",
    "list_providers",
    "register_provider",
    "reset_providers",
]
