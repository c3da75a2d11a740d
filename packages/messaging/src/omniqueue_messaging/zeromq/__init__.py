"""ZeroMQ provider (optional extra: omniqueue[zeromq])."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .broker import ZeroMQBroker, ZeroMQConfig

if TYPE_CHECKING:
    from omniqueue_core.registry import BrokerRegistry


def register_zeromq(registry: BrokerRegistry, provider: str = "zeromq") -> None:
    """Register the ZeroMQ provider under *provider*."""

    async def factory(config: Any) -> ZeroMQBroker:
        broker = ZeroMQBroker(config, provider=provider)
        await broker.init()
        return broker

    registry.register(provider, factory)


__all__ = ["ZeroMQBroker", "ZeroMQConfig", "register_zeromq"]
