from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..delivery import BrokerMessage
    from ..subscription import Subscription

    MessageHandler = Callable[[BrokerMessage], Awaitable[Any]]


class PriorityStrategy(str, enum.Enum):
    """How an adapter honours the ``priority`` hint, in preference order."""

    NATIVE = "native"
    SUB_RESOURCE = "sub_resource"
    PARTITION = "partition"
    IGNORED = "ignored"


@dataclass(frozen=True)
class BrokerCapabilities:
    """Declared backend capabilities; ``BaseBroker`` branches on these."""

    priority_strategy: PriorityStrategy = PriorityStrategy.IGNORED
    negative_ack: bool = False
    delay: bool = False
    native_fanout: bool = False
    retains_for_late_groups: bool = False

    @property
    def native_priority(self) -> bool:
        return self.priority_strategy is PriorityStrategy.NATIVE


@runtime_checkable
class IBroker(Protocol):
    """
    Port for a publish/subscribe-with-groups broker.

    Adapters (RabbitMQ, Kafka, SNS+SQS, ZeroMQ, in-memory) provide concrete
    implementations, usually by subclassing ``BaseBroker``.
    """

    @property
    def provider(self) -> str: ...

    @property
    def config(self) -> Any: ...

    capabilities: BrokerCapabilities

    async def init(self) -> None:
        """Open connections. Called by registry factories before returning."""
        ...

    async def publish(self, topic: str, message: Any, options: Any = None) -> None:
        """
        Publish *message* to *topic*; every group subscribed to the topic
        receives a copy.

        Args:
            topic: Logical topic name.
            message: ``MessageEnvelope``, ``{id, body, headers}`` mapping, or payload.
            options: ``SendOptions`` or mapping.
        """
        ...

    async def subscribe(
        self, topic: str, handler: MessageHandler, options: Any
    ) -> Subscription:
        """
        Start a consumption loop for *topic* within ``options.group``.

        Raises ``GroupRequiredError`` before any backend I/O when the group is
        missing.
        """
        ...

    async def send(self, queue: str, message: Any, options: Any = None) -> None:
        """Point-to-point send: the single-group case of ``publish``."""
        ...

    async def receive(
        self, queue: str, handler: MessageHandler, options: Any
    ) -> Subscription:
        """Point-to-point receive: the single-group case of ``subscribe``."""
        ...

    async def close(self) -> None:
        """Release every connection, channel, consumer and poller."""
        ...
