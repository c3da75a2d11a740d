"""InMemoryBroker — full-contract broker over an in-process backend."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from pydantic import Field

from omniqueue_core.broker import BaseBroker
from omniqueue_core.delivery import BrokerMessage
from omniqueue_core.ports.broker import BrokerCapabilities, PriorityStrategy
from omniqueue_core.primitives.exceptions import ResourceMissingError

from ..config import BrokerConfig
from .backend import InMemoryBackend

if TYPE_CHECKING:
    from omniqueue_core.envelope import MessageEnvelope
    from omniqueue_core.options import ConsumeOptions, SendOptions
    from omniqueue_core.ports.broker import MessageHandler
    from omniqueue_core.subscription import Subscription

    from .backend import GroupQueue, QueuedMessage

logger = logging.getLogger(__name__)


class InMemoryConfig(BrokerConfig):
    """Settings for the ``memory`` provider."""

    backend: InMemoryBackend | None = None
    max_pending: int | None = Field(
        default=None,
        ge=1,
        description="Publish waits while any group of the topic holds this many",
    )


class InMemoryBroker(BaseBroker):
    """In-process broker honouring the whole contract; used in tests and demos.

    Mapping:
      * topic → retained ``TopicLog``
      * group → ``GroupQueue`` (new groups replay the log from the start)
      * priority → native: higher values are delivered first
      * ack → drop; nack(requeue) → re-enqueue with attempt + 1;
        nack(no requeue) → the group's ``dead_letters``
    """

    provider_name = "memory"
    capabilities = BrokerCapabilities(
        priority_strategy=PriorityStrategy.NATIVE,
        negative_ack=True,
        delay=True,
        native_fanout=True,
        retains_for_late_groups=True,
    )

    def __init__(self, config: Any = None, *, provider: str | None = None) -> None:
        settings = InMemoryConfig.load(config)
        super().__init__(
            config, provider=provider, redelivery=settings.redelivery_policy()
        )
        self._settings = settings
        self._backend = settings.backend or InMemoryBackend()
        self._delayed: set[asyncio.Task[None]] = set()

    @property
    def backend(self) -> InMemoryBackend:
        """Return the backend (e.g. to share with another InMemoryBroker)."""
        return self._backend

    # ── Producer ─────────────────────────────────────────────────

    async def _publish(
        self, topic: str, envelope: MessageEnvelope, opts: SendOptions
    ) -> None:
        log = self._backend.topic(topic)
        if log is None:
            if not opts.ensure:
                raise ResourceMissingError(topic, "topic")
            log = self._backend.ensure_topic(topic)
        if opts.ensure:
            for group in opts.create_options.get("groups", ()):
                log.ensure_group(group)
        await self._wait_for_space(topic)
        if opts.delay:
            task = asyncio.create_task(self._append_later(topic, envelope, opts))
            self._delayed.add(task)
            task.add_done_callback(self._delayed.discard)
            return
        log.append(envelope, opts.priority)

    async def _append_later(
        self, topic: str, envelope: MessageEnvelope, opts: SendOptions
    ) -> None:
        await asyncio.sleep(opts.delay or 0)
        self._backend.ensure_topic(topic).append(envelope, opts.priority)

    async def _wait_for_space(self, topic: str) -> None:
        limit = self._settings.max_pending
        if limit is None:
            return
        log = self._backend.ensure_topic(topic)
        async with self._backend.space:
            await self._backend.space.wait_for(
                lambda: all(g.pending < limit for g in log.groups.values())
            )

    async def _notify_space(self) -> None:
        if self._settings.max_pending is None:
            return
        async with self._backend.space:
            self._backend.space.notify_all()

    # ── Consumer ─────────────────────────────────────────────────

    async def _subscribe(
        self,
        subscription: Subscription,
        handler: MessageHandler,
        opts: ConsumeOptions,
    ) -> None:
        topic, group = subscription.topic, subscription.group
        log = self._backend.topic(topic)
        if log is None:
            if not opts.ensure:
                raise ResourceMissingError(topic, "topic")
            log = self._backend.ensure_topic(topic)
        channel = log.groups.get(group)
        if channel is None:
            if not opts.ensure:
                raise ResourceMissingError(f"{topic}/{group}", "group")
            channel = log.ensure_group(group)
        for _ in range(opts.concurrency):
            self._spawn(
                subscription, self._consume(subscription, channel, handler, opts)
            )

    async def _consume(
        self,
        subscription: Subscription,
        channel: GroupQueue,
        handler: MessageHandler,
        opts: ConsumeOptions,
    ) -> None:
        while True:
            fetched, entry = await subscription.fetch(
                channel.queue.get, give_back=channel.give_back
            )
            if not fetched or entry is None:
                return
            await self._notify_space()
            message = self._delivery(channel, entry)
            await self.dispatch(subscription, message, handler, opts)

    def _delivery(self, channel: GroupQueue, entry: QueuedMessage) -> BrokerMessage:
        envelope = entry.envelope

        async def ack() -> None:
            channel.record_ack(envelope.id)

        async def nack(requeue: bool) -> None:
            if requeue:
                channel.put(envelope.next_attempt(), entry.priority)
            else:
                logger.warning(
                    "Dead-lettering message %s in %s/%s",
                    envelope.id,
                    channel.topic,
                    channel.group,
                )
                channel.dead_letters.append(envelope)

        return BrokerMessage(envelope, on_ack=ack, on_nack=nack, raw=entry)

    # ── Teardown ─────────────────────────────────────────────────

    async def _disconnect(self) -> list[BaseException]:
        for task in list(self._delayed):
            task.cancel()
        if self._delayed:
            await asyncio.gather(*self._delayed, return_exceptions=True)
        return []

    # ── Introspection (tests) ────────────────────────────────────

    def dead_letters(self, topic: str, group: str) -> list[MessageEnvelope]:
        channel = self._backend.group(topic, group)
        return [] if channel is None else list(channel.dead_letters)

    def pending(self, topic: str, group: str) -> int:
        channel = self._backend.group(topic, group)
        return 0 if channel is None else channel.pending

    def get_published(self, topic: str) -> list[MessageEnvelope]:
        return self._backend.get_published(topic)
