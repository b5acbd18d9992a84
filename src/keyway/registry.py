"""Name-keyed collection of configured providers.

A registry is built once at startup and then only read. It is an explicit
value owned by the host and handed to the Authenticator, so tests can use
their own registry without touching any global state.
"""

from __future__ import annotations

from collections.abc import Iterator

import structlog

from keyway.errors import ProviderNotFoundError
from keyway.provider import Provider

logger = structlog.get_logger()


class ProviderRegistry:
    """Registry of providers keyed by ``Provider.name``.

    Registration is expected to finish before requests are served; lookups
    are plain dict reads and safe for concurrent readers after that.
    """

    def __init__(self, *providers: Provider) -> None:
        self._providers: dict[str, Provider] = {}
        self.register_providers(*providers)

    def register(self, provider: Provider) -> None:
        """Add a provider under its current name. Last write wins."""
        if provider.name in self._providers:
            logger.debug("Replacing registered provider", provider=provider.name)
        self._providers[provider.name] = provider

    def register_providers(self, *providers: Provider) -> None:
        for provider in providers:
            self.register(provider)

    def lookup(self, name: str) -> Provider:
        """Return the provider registered under ``name``.

        Raises:
            ProviderNotFoundError: If nothing is registered under that name.
        """
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotFoundError(name)
        return provider

    def get(self, name: str) -> Provider | None:
        return self._providers.get(name)

    def names(self) -> list[str]:
        """Sorted provider names, for building a provider picker."""
        return sorted(self._providers)

    def clear(self) -> None:
        """Remove every provider. Mostly useful in tests."""
        self._providers.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __len__(self) -> int:
        return len(self._providers)

    def __iter__(self) -> Iterator[Provider]:
        return iter([self._providers[name] for name in self.names()])
