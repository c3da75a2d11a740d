"""IdempotencyFilter — deduplicate deliveries by message id."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Any

from omniqueue_core.delivery import DeliveryState

if TYPE_CHECKING:
    from omniqueue_core.delivery import BrokerMessage
    from omniqueue_core.ports.broker import MessageHandler

logger = logging.getLogger(__name__)

_PROCESSED = (DeliveryState.DELIVERED, DeliveryState.ACKED)


class IdempotencyFilter:
    """Deduplicate messages by id to prevent double-execution on redelivery.

    Delivery is at-least-once on every provider, so handlers with side effects
    should be idempotent. Wrap them with :meth:`guard`: a message id that was
    already processed successfully is acked without invoking the handler again.

    Entries are kept in memory, oldest evicted first beyond ``max_entries`` and
    expired after ``ttl_seconds``.
    """

    def __init__(
        self, *, max_entries: int = 100_000, ttl_seconds: float = 86400
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._max_entries = max_entries
        self._ttl_seconds = ttl_seconds
        self._seen: OrderedDict[str, float] = OrderedDict()

    def is_duplicate(self, message_id: str) -> bool:
        """Return True if this message id has already been processed."""
        seen_at = self._seen.get(message_id)
        if seen_at is None:
            return False
        if time.monotonic() - seen_at > self._ttl_seconds:
            del self._seen[message_id]
            return False
        return True

    def mark_processed(self, message_id: str) -> None:
        self._seen[message_id] = time.monotonic()
        self._seen.move_to_end(message_id)
        while len(self._seen) > self._max_entries:
            self._seen.popitem(last=False)

    def guard(self, handler: MessageHandler) -> MessageHandler:
        """Wrap *handler* so duplicates are acked and skipped."""

        async def guarded(message: BrokerMessage) -> Any:
            if self.is_duplicate(message.id):
                logger.debug("Skipping duplicate delivery of %s", message.id)
                await message.ack()
                return None
            result = await handler(message)
            if message.state in _PROCESSED:
                self.mark_processed(message.id)
            return result

        return guarded

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)
