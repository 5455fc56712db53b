"""Registry of named isolation providers."""

from __future__ import annotations

import logging

from convoy.sandbox.host import HostProvider
from convoy.sandbox.negotiation import IsolationProvider

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "host"


class ProviderRegistry:
    """Maps provider names to provider instances.

    A fresh registry always knows the ``host`` provider.
    """

    def __init__(self) -> None:
        self._providers: dict[str, IsolationProvider] = {}
        self.register(HostProvider())

    def register(self, provider: IsolationProvider) -> None:
        self._providers[provider.name] = provider
        logger.debug("Registered isolation provider: %s", provider.name)

    def get(self, name: str) -> IsolationProvider | None:
        return self._providers.get(name)

    def names(self) -> list[str]:
        return sorted(self._providers)

    @property
    def host(self) -> IsolationProvider:
        return self._providers[DEFAULT_PROVIDER]

    def resolve(
        self,
        cli_override: str | None = None,
        config_provider: str | None = None,
    ) -> IsolationProvider:
        """Pick a provider: CLI override, then config, then ``host``.

        Raises:
            ValueError: the chosen name is not registered.
        """
        name = cli_override or config_provider or DEFAULT_PROVIDER
        provider = self._providers.get(name)
        if provider is None:
            raise ValueError(
                f"Unknown isolation provider '{name}'. "
                f"Registered providers: {', '.join(self.names())}"
            )
        return provider
