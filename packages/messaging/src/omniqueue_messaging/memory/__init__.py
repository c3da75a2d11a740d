"""In-memory provider — no infrastructure, full contract."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .backend import GroupQueue, InMemoryBackend, QueuedMessage, TopicLog
from .broker import InMemoryBroker, InMemoryConfig

if TYPE_CHECKING:
    from omniqueue_core.registry import BrokerRegistry


def register_memory(registry: BrokerRegistry, provider: str = "memory") -> None:
    """Register the in-memory provider under *provider*."""

    async def factory(config: Any) -> InMemoryBroker:
        broker = InMemoryBroker(config, provider=provider)
        await broker.init()
        return broker

    registry.register(provider, factory)


__all__ = [
    "GroupQueue",
    "InMemoryBackend",
    "InMemoryBroker",
    "InMemoryConfig",
    "QueuedMessage",
    "TopicLog",
    "register_memory",
]
