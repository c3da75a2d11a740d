"""RabbitMQ provider (optional extra: omniqueue[rabbitmq])."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .broker import (
    RabbitMQBroker,
    RabbitMQConfig,
    dead_letter_queue_name,
    exchange_name,
    queue_name,
)
from .connection import RabbitMQConnectionManager

if TYPE_CHECKING:
    from omniqueue_core.registry import BrokerRegistry


def register_rabbitmq(registry: BrokerRegistry, provider: str = "rabbitmq") -> None:
    """Register the RabbitMQ provider under *provider*."""

    async def factory(config: Any) -> RabbitMQBroker:
        broker = RabbitMQBroker(config, provider=provider)
        await broker.init()
        return broker

    registry.register(provider, factory)


__all__ = [
    "RabbitMQBroker",
    "RabbitMQConfig",
    "RabbitMQConnectionManager",
    "dead_letter_queue_name",
    "exchange_name",
    "queue_name",
    "register_rabbitmq",
]
