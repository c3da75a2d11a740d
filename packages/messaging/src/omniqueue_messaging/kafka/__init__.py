"""Kafka provider (optional extra: omniqueue[kafka])."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .broker import (
    PRIORITY_HEADER,
    KafkaBroker,
    KafkaConfig,
    dead_letter_topic_name,
    group_id,
    retry_topic_name,
    topic_name,
)

if TYPE_CHECKING:
    from omniqueue_core.registry import BrokerRegistry


def register_kafka(registry: BrokerRegistry, provider: str = "kafka") -> None:
    """Register the Kafka provider under *provider*."""

    async def factory(config: Any) -> KafkaBroker:
        broker = KafkaBroker(config, provider=provider)
        await broker.init()
        return broker

    registry.register(provider, factory)


__all__ = [
    "PRIORITY_HEADER",
    "KafkaBroker",
    "KafkaConfig",
    "dead_letter_topic_name",
    "group_id",
    "register_kafka",
    "retry_topic_name",
    "topic_name",
]
