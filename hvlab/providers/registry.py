"""Provider registry for hypervisor providers.

This module provides a singleton registry that handles lazy creation of the
configured provider and lets tests or alternative backends register their
own implementation.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from hvlab.providers.base import Provider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Singleton registry for hypervisor providers.

    The Hyper-V provider is instantiated lazily on first use.
    """

    _instance: ProviderRegistry | None = None
    _providers: dict[str, Provider]
    _discovered: bool

    def __new__(cls) -> ProviderRegistry:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._providers = {}
            cls._instance._discovered = False
        return cls._instance

    def _discover_providers(self) -> None:
        """Lazily instantiate built-in providers."""
        if self._discovered:
            return

        if not self._providers:
            from hvlab.providers.hyperv import HyperVProvider

            self._providers["hyperv"] = HyperVProvider()
            logger.info("Registered provider: hyperv")

        self._discovered = True

    def register(self, provider: Provider) -> None:
        """Register (or replace) a provider under its own name."""
        self._providers[provider.name] = provider
        logger.info(f"Registered provider: {provider.name}")

    def get(self, name: str) -> Provider | None:
        self._discover_providers()
        return self._providers.get(name)

    def list_available(self) -> list[str]:
        self._discover_providers()
        return list(self._providers.keys())

    def get_default(self) -> Provider | None:
        """Get the default provider: Hyper-V if registered, else the first one."""
        self._discover_providers()
        if "hyperv" in self._providers:
            return self._providers["hyperv"]
        providers = list(self._providers.values())
        return providers[0] if providers else None

    def reset(self) -> None:
        """Reset the registry (mainly for testing)."""
        self._providers = {}
        self._discovered = False


# Module-level singleton instance
_registry = ProviderRegistry()


def get_provider(name: str) -> Provider | None:
    return _registry.get(name)


def get_default_provider() -> Provider | None:
    return _registry.get_default()


def register_provider(provider: Provider) -> None:
    _registry.register(provider)


def list_providers() -> list[str]:
    return _registry.list_available()


def reset_providers() -> None:
    _registry.reset()
