"""ProvisioningCache — idempotent, race-tolerant resource provisioning."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProvisioningCache(Generic[T]):
    """Remembers resources known to exist, keyed by backend name.

    Check-then-act without a global lock: the first caller for a key runs the
    provisioning coroutine, concurrent callers for the same key await that
    result, and callers for other keys proceed independently. Failures are not
    cached, so a later call retries. Adapters are expected to treat the
    backend's "already exists" answer as success inside the coroutine.
    """

    def __init__(self) -> None:
        self._known: dict[str, T] = {}
        self._pending: dict[str, asyncio.Future[T]] = {}

    async def get_or_provision(
        self, key: str, provision: Callable[[], Awaitable[T]]
    ) -> T:
        if key in self._known:
            return self._known[key]
        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            value = await provision()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except BaseException as e:
            future.set_exception(e)
            # Mark retrieved: there may be no concurrent waiter.
            future.exception()
            raise
        else:
            self._known[key] = value
            future.set_result(value)
            logger.debug("Provisioned %s", key)
            return value
        finally:
            self._pending.pop(key, None)

    def get(self, key: str) -> T | None:
        return self._known.get(key)

    def remember(self, key: str, value: T) -> None:
        self._known[key] = value

    def forget(self, key: str) -> None:
        self._known.pop(key, None)

    def clear(self) -> None:
        self._known.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._known

    def __len__(self) -> int:
        return len(self._known)

    def keys(self) -> list[str]:
        return list(self._known)

    def __repr__(self) -> str:
        return f"ProvisioningCache(known={len(self._known)})"
