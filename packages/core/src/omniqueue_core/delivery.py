"""BrokerMessage — one delivery of an envelope, with its ack/nack pair."""

from __future__ import annotations

import enum
import logging
from typing import TYPE_CHECKING, Any

from .primitives.exceptions import AckError, OmniQueueError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .envelope import MessageEnvelope

logger = logging.getLogger(__name__)


class DeliveryState(str, enum.Enum):
    DELIVERED = "delivered"
    ACKED = "acked"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"


class BrokerMessage:
    """A single delivery handed to a subscriber's handler.

    ``ack``/``nack`` are scoped to this delivery: they are only meaningful in
    the ``DELIVERED`` state, and a redelivery of the same message id arrives as
    a new ``BrokerMessage``. Settling twice is a logged no-op.
    """

    def __init__(
        self,
        envelope: MessageEnvelope,
        *,
        on_ack: Callable[[], Awaitable[Any]],
        on_nack: Callable[[bool], Awaitable[Any]],
        attempt: int | None = None,
        raw: Any = None,
    ) -> None:
        self._envelope = envelope
        self._on_ack = on_ack
        self._on_nack = on_nack
        self._attempt = attempt if attempt is not None else envelope.attempt
        self._state = DeliveryState.DELIVERED
        self.raw = raw

    @property
    def id(self) -> str:
        return self._envelope.id

    @property
    def body(self) -> Any:
        return self._envelope.body

    @property
    def headers(self) -> dict[str, Any]:
        return self._envelope.headers

    @property
    def envelope(self) -> MessageEnvelope:
        return self._envelope

    @property
    def attempt(self) -> int:
        """1-based delivery attempt for this message id."""
        return self._attempt

    @property
    def state(self) -> DeliveryState:
        return self._state

    @property
    def settled(self) -> bool:
        return self._state is not DeliveryState.DELIVERED

    async def ack(self) -> None:
        """Mark the delivery processed; the backend will not redeliver it."""
        if not self._begin("ack", DeliveryState.ACKED):
            return
        await self._settle(self._on_ack)

    async def nack(self, requeue: bool = True) -> None:
        """Mark the delivery failed.

        ``requeue=True`` asks for redelivery, ``requeue=False`` dead-letters or
        discards the message.
        """
        target = DeliveryState.REQUEUED if requeue else DeliveryState.DEAD_LETTERED
        if not self._begin("nack", target):
            return

        async def call() -> Any:
            return await self._on_nack(requeue)

        await self._settle(call)

    def _begin(self, operation: str, target: DeliveryState) -> bool:
        if self._state is not DeliveryState.DELIVERED:
            logger.warning(
                "Ignoring %s() for message %s: delivery already %s",
                operation,
                self.id,
                self._state.value,
            )
            return False
        self._state = target
        return True

    async def _settle(self, operation: Callable[[], Awaitable[Any]]) -> None:
        try:
            await operation()
        except OmniQueueError:
            self._state = DeliveryState.DELIVERED
            raise
        except Exception as e:
            self._state = DeliveryState.DELIVERED
            raise AckError(str(e), message_id=self.id) from e

    def __repr__(self) -> str:
        return (
            f"BrokerMessage(id={self.id!r}, attempt={self._attempt}, "
            f"state={self._state.value})"
        )
