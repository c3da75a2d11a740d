"""SNS + SQS provider (optional extra: omniqueue[sqs])."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .broker import SnsSqsBroker, SnsSqsConfig, queue_name, queue_policy, topic_name
from .connection import SnsSqsConnectionManager, error_code

if TYPE_CHECKING:
    from omniqueue_core.registry import BrokerRegistry


def register_sns_sqs(registry: BrokerRegistry, provider: str = "sns-sqs") -> None:
    """Register the SNS + SQS provider under *provider*."""

    async def factory(config: Any) -> SnsSqsBroker:
        broker = SnsSqsBroker(config, provider=provider)
        await broker.init()
        return broker

    registry.register(provider, factory)


__all__ = [
    "SnsSqsBroker",
    "SnsSqsConfig",
    "SnsSqsConnectionManager",
    "error_code",
    "queue_name",
    "queue_policy",
    "register_sns_sqs",
    "topic_name",
]
