"""BrokerRegistry — explicit provider-name to factory resolution."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .primitives.exceptions import (
    DuplicateRegistrationError,
    OmniQueueError,
    ProviderNotRegisteredError,
    ProvisioningError,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .ports.broker import IBroker

    BrokerFactory = Callable[[Any], Awaitable[IBroker]]

logger = logging.getLogger(__name__)


class BrokerRegistry:
    """Maps provider names to async factories producing initialized brokers.

    Create one registry at application startup and pass it to the code that
    needs to resolve providers. Adapters never register themselves on import;
    bootstrap code calls their ``register_*`` functions explicitly::

        registry = BrokerRegistry()
        register_rabbitmq(registry)
        broker = await registry.create("rabbitmq", {"url": "amqp://localhost/"})

    **Conflict detection:** registering a name twice raises
    ``DuplicateRegistrationError`` instead of silently overwriting.
    """

    def __init__(self) -> None:
        self._factories: dict[str, BrokerFactory] = {}

    def register(self, provider: str, factory: BrokerFactory) -> None:
        if not provider:
            raise ValueError("provider name must be a non-empty string")
        if provider in self._factories:
            raise DuplicateRegistrationError(provider)
        self._factories[provider] = factory
        logger.debug("Registered broker provider %s", provider)

    def unregister(self, provider: str) -> None:
        if self._factories.pop(provider, None) is None:
            raise ProviderNotRegisteredError(provider, self._factories)

    async def create(self, provider: str, config: Any = None) -> IBroker:
        """Resolve *provider* and return an initialized broker.

        *config* is forwarded verbatim to the factory.
        """
        factory = self._factories.get(provider)
        if factory is None:
            raise ProviderNotRegisteredError(provider, self._factories)
        try:
            broker = await factory(config)
        except OmniQueueError:
            raise
        except Exception as e:
            raise ProvisioningError(
                f"Creating broker {provider!r} failed: {e}", resource=provider
            ) from e
        logger.debug("Created broker %r for provider %s", broker, provider)
        return broker

    @property
    def providers(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, provider: object) -> bool:
        return provider in self._factories

    def __len__(self) -> int:
        return len(self._factories)
