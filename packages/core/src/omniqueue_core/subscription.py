"""Subscription — handle for one running consumption loop."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription:
    """Handle returned by ``subscribe``/``receive``.

    Owns the background task(s) and release callbacks of one subscription.
    Loops fetch through :meth:`fetch` so that a stop request interrupts the wait
    for the next delivery without dropping one that already arrived, while
    handler invocations in flight are allowed to finish.
    """

    def __init__(self, topic: str, group: str) -> None:
        self.topic = topic
        self.group = group
        self.stopping = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._releasers: list[Callable[[], Awaitable[Any]]] = []
        self._error: BaseException | None = None
        self._inflight = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._finished = False

    # ── Wiring (used by brokers) ─────────────────────────────────

    def add_task(self, task: asyncio.Task[None]) -> None:
        self._tasks.append(task)

    def add_releaser(self, release: Callable[[], Awaitable[Any]]) -> None:
        """Register a coroutine function run on shutdown, last-added first."""
        self._releasers.append(release)

    def set_error(self, error: BaseException) -> None:
        if self._error is None:
            self._error = error

    @contextlib.contextmanager
    def in_flight(self) -> Any:
        self._inflight += 1
        self._idle.clear()
        try:
            yield
        finally:
            self._inflight -= 1
            if self._inflight == 0:
                self._idle.set()

    async def fetch(
        self,
        fetcher: Callable[[], Awaitable[T]],
        give_back: Callable[[T], Any] | None = None,
    ) -> tuple[bool, T | None]:
        """Await ``fetcher()`` unless the subscription is stopped first.

        Returns ``(True, value)`` on delivery and ``(False, None)`` on stop. A
        value that arrives after the stop request is handed to ``give_back``
        instead of being processed.
        """
        if self.stopping.is_set():
            return False, None
        fetch_task = asyncio.ensure_future(fetcher())
        stop_task = asyncio.ensure_future(self.stopping.wait())
        try:
            await asyncio.wait(
                {fetch_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            fetch_task.cancel()
            stop_task.cancel()
            raise
        stop_task.cancel()
        if not fetch_task.done():
            fetch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await fetch_task
        if fetch_task.cancelled():
            return False, None
        value = fetch_task.result()
        if self.stopping.is_set():
            if give_back is not None:
                give_back(value)
            return False, None
        return True, value

    # ── Public surface ───────────────────────────────────────────

    @property
    def active(self) -> bool:
        return not self.stopping.is_set() and self._error is None

    @property
    def done(self) -> bool:
        """True once every consumption task has ended (stopped or failed)."""
        return self._finished or (
            bool(self._tasks) and all(t.done() for t in self._tasks)
        )

    @property
    def inflight(self) -> int:
        return self._inflight

    def exception(self) -> BaseException | None:
        """The ``ConsumeLoopError`` that ended this subscription, if any."""
        return self._error

    async def wait(self) -> None:
        """Wait until every consumption task of this subscription has ended."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    async def cancel(self) -> None:
        """Stop this subscription only; the owning broker stays open.

        Waits for in-flight handlers, so on push-based providers it must not
        be awaited from inside one of this subscription's handlers.
        """
        errors = await self.shutdown()
        if errors:
            raise errors[0]

    async def shutdown(self) -> list[BaseException]:
        """Stop fetching, let in-flight handlers finish, then release resources.

        Every releaser is attempted; failures are returned, not raised.
        """
        if self._finished:
            return []
        self._finished = True
        self.stopping.set()
        # A handler may cancel its own subscription; never wait on ourselves.
        current = asyncio.current_task()
        others = [t for t in self._tasks if t is not current]
        if others:
            await asyncio.gather(*others, return_exceptions=True)
        if current not in self._tasks:
            await self._idle.wait()
        errors: list[BaseException] = []
        for release in reversed(self._releasers):
            try:
                await release()
            except Exception as e:  # noqa: BLE001
                logger.warning(
                    "Failed to release subscription %s/%s: %s",
                    self.topic,
                    self.group,
                    e,
                )
                errors.append(e)
        return errors

    def __repr__(self) -> str:
        return (
            f"Subscription(topic={self.topic!r}, group={self.group!r}, "
            f"active={self.active})"
        )
