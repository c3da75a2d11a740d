"""RedeliveryPolicy — poison-message bound with exponential backoff."""

from __future__ import annotations

import asyncio
import random


class RedeliveryPolicy:
    """Decides whether a failed delivery is requeued or dead-lettered.

    A message whose handler failed on attempt ``n`` is requeued while
    ``n < max_deliveries`` and dead-lettered afterwards.
    """

    def __init__(
        self,
        *,
        max_deliveries: int = 5,
        base_delay: float = 0.0,
        max_delay: float = 30.0,
        jitter: bool = False,
    ) -> None:
        """Configure redelivery behavior.

        Args:
            max_deliveries: Maximum number of deliveries (including the first).
            base_delay: Delay in seconds before the first requeue.
            max_delay: Cap on delay in seconds.
            jitter: If True, multiply delays by a random factor in [0.5, 1.5].
        """
        if max_deliveries < 1:
            raise ValueError("max_deliveries must be >= 1")
        if base_delay < 0 or max_delay < 0:
            raise ValueError("base_delay and max_delay must be >= 0")
        if base_delay > max_delay:
            raise ValueError("base_delay must be <= max_delay")
        self.max_deliveries = max_deliveries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    @classmethod
    def coerce(
        cls, value: RedeliveryPolicy | dict[str, object] | None
    ) -> RedeliveryPolicy:
        if value is None:
            return cls()
        if isinstance(value, RedeliveryPolicy):
            return value
        return cls(**value)  # type: ignore[arg-type]

    def should_requeue(self, attempt: int) -> bool:
        """Return True if a failed 1-based ``attempt`` may be delivered again."""
        return 1 <= attempt < self.max_deliveries

    def delay_for_attempt(self, attempt: int) -> float:
        """Backoff before requeueing the given failed attempt:
        base_delay * 2^(attempt-1), capped by max_delay."""
        if attempt < 1 or self.base_delay == 0:
            return 0.0
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random())  # noqa: S311
        return float(max(0.0, delay))

    async def wait_before_requeue(self, attempt: int) -> None:
        d = self.delay_for_attempt(attempt)
        if d > 0:
            await asyncio.sleep(d)

    def __repr__(self) -> str:
        return (
            f"RedeliveryPolicy(max_deliveries={self.max_deliveries}, "
            f"base_delay={self.base_delay}, max_delay={self.max_delay})"
        )
