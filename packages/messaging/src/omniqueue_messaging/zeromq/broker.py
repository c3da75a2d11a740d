"""ZeroMQBroker — brokerless PUSH/PULL pipelines, one per (topic, group)."""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from collections import defaultdict, deque
from functools import partial
from typing import TYPE_CHECKING, Any, Literal

import zmq
import zmq.asyncio
from pydantic import Field

from omniqueue_core.broker import BaseBroker, release_all
from omniqueue_core.delivery import BrokerMessage
from omniqueue_core.ports.broker import BrokerCapabilities, PriorityStrategy
from omniqueue_core.primitives.exceptions import (
    BrokerConnectionError,
    MessagingSerializationError,
    ProvisioningError,
    PublishError,
    ResourceMissingError,
)

from ..config import BrokerConfig
from ..naming import digest, dotted_name, restricted_name
from ..provisioning import ProvisioningCache
from ..serialization import EnvelopeSerializer

if TYPE_CHECKING:
    from omniqueue_core.envelope import MessageEnvelope
    from omniqueue_core.options import ConsumeOptions, SendOptions
    from omniqueue_core.ports.broker import MessageHandler
    from omniqueue_core.subscription import Subscription

logger = logging.getLogger(__name__)


class ZeroMQConfig(BrokerConfig):
    transport: Literal["tcp", "ipc", "inproc"] = "tcp"
    host: str = "127.0.0.1"
    base_port: int = Field(default=40000, ge=1024, le=65535)
    port_range: int = Field(default=10000, ge=1)
    ipc_dir: str | None = None
    groups: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Groups to deliver to per topic, known without a subscriber",
    )
    send_timeout: float = Field(default=5.0, gt=0)
    high_water_mark: int = Field(default=1000, ge=0)


class ZeroMQBroker(BaseBroker):
    """ZeroMQ adapter.

    There is no server: every (topic, group) pair has a deterministic
    endpoint. The publishing process binds a PUSH socket to it and the group's
    members connect PULL sockets, so ZeroMQ fair-queues messages among them.
    A publish sends one copy per known group of the topic, where known groups
    come from ``groups`` in the config, ``create_options["groups"]`` and the
    local subscriptions.

    ZeroMQ has no acknowledgements: ``ack`` is a no-op, ``nack(requeue=True)``
    re-enqueues the message locally with ``attempt + 1`` and
    ``nack(requeue=False)`` keeps it in a local dead-letter list.
    """

    provider_name = "zeromq"
    capabilities = BrokerCapabilities(
        priority_strategy=PriorityStrategy.IGNORED,
        negative_ack=True,
    )

    def __init__(
        self,
        config: Any = None,
        *,
        provider: str | None = None,
        serializer: EnvelopeSerializer | None = None,
    ) -> None:
        settings = ZeroMQConfig.load(config)
        super().__init__(
            config, provider=provider, redelivery=settings.redelivery_policy()
        )
        self._settings = settings
        self._serializer = serializer or EnvelopeSerializer()
        self._context: zmq.asyncio.Context | None = None
        self._pushes: ProvisioningCache[zmq.asyncio.Socket] = ProvisioningCache()
        self._ports: dict[int, tuple[str, str]] = {}
        self._known: dict[str, set[str]] = defaultdict(set)
        self._local: dict[tuple[str, str], int] = defaultdict(int)
        self._dead_letters: dict[tuple[str, str], list[MessageEnvelope]] = (
            defaultdict(list)
        )

    async def _connect(self) -> None:
        self._context = zmq.asyncio.Context()

    async def _disconnect(self) -> list[BaseException]:
        sockets = [self._pushes.get(key) for key in self._pushes.keys()]
        self._pushes.clear()
        context, self._context = self._context, None

        async def destroy() -> None:
            if context is not None:
                context.destroy(linger=0)

        return await release_all(
            *(_closer(socket) for socket in sockets if socket is not None), destroy
        )

    @property
    def context(self) -> zmq.asyncio.Context:
        if self._context is None:
            raise BrokerConnectionError("Not connected; call init() first")
        return self._context

    # ── Endpoints ────────────────────────────────────────────────

    def endpoint(self, topic: str, group: str) -> str:
        settings = self._settings
        if settings.transport == "inproc":
            return "inproc://" + dotted_name("oq", topic, group)
        if settings.transport == "ipc":
            directory = settings.ipc_dir or tempfile.gettempdir()
            name = restricted_name("oq", topic, group, max_length=80)
            return "ipc://" + os.path.join(directory, name + ".sock")
        port = settings.base_port + int(digest(topic, group), 16) % settings.port_range
        if port > 65535:
            raise ProvisioningError(
                f"Port {port} for {topic}/{group} is out of range; "
                "lower base_port or port_range",
                resource=f"{topic}/{group}",
            )
        owner = self._ports.setdefault(port, (topic, group))
        if owner != (topic, group):
            raise ProvisioningError(
                f"Port {port} for {topic}/{group} collides with "
                f"{owner[0]}/{owner[1]}; use the ipc transport or change port_range",
                resource=f"{topic}/{group}",
            )
        return f"tcp://{settings.host}:{port}"

    def groups_for(self, topic: str) -> set[str]:
        return set(self._settings.groups.get(topic, ())) | self._known[topic]

    # ── Producer ─────────────────────────────────────────────────

    async def _publish(
        self, topic: str, envelope: MessageEnvelope, opts: SendOptions
    ) -> None:
        if opts.ensure:
            self._known[topic].update(opts.create_options.get("groups", ()))
        groups = self.groups_for(topic)
        if not groups:
            if not opts.ensure:
                raise ResourceMissingError(topic, "topic")
            logger.debug(
                "No known group for %s; message %s dropped", topic, envelope.id
            )
            return
        body = self._serializer.serialize(envelope)
        for group in sorted(groups):
            push = await self._push(topic, group)
            try:
                await asyncio.wait_for(push.send(body), self._settings.send_timeout)
            except asyncio.TimeoutError as e:
                raise PublishError(
                    f"No member of group {group!r} took the message within "
                    f"{self._settings.send_timeout}s",
                    topic=topic,
                    message_id=envelope.id,
                ) from e

    async def _push(self, topic: str, group: str) -> zmq.asyncio.Socket:
        endpoint = self.endpoint(topic, group)

        async def provision() -> zmq.asyncio.Socket:
            socket = self.context.socket(zmq.PUSH)
            socket.setsockopt(zmq.LINGER, 0)
            socket.setsockopt(zmq.SNDHWM, self._settings.high_water_mark)
            try:
                socket.bind(endpoint)
            except zmq.ZMQError as e:
                socket.close(linger=0)
                raise ProvisioningError(
                    f"Binding {endpoint} failed: {e}", resource=endpoint
                ) from e
            return socket

        return await self._pushes.get_or_provision(endpoint, provision)

    # ── Consumer ─────────────────────────────────────────────────

    async def _subscribe(
        self,
        subscription: Subscription,
        handler: MessageHandler,
        opts: ConsumeOptions,
    ) -> None:
        topic, group = subscription.topic, subscription.group
        if not opts.ensure and group not in self.groups_for(topic):
            raise ResourceMissingError(f"{topic}/{group}", "group")
        endpoint = self.endpoint(topic, group)
        pull = self.context.socket(zmq.PULL)
        pull.setsockopt(zmq.LINGER, 0)
        pull.setsockopt(zmq.RCVHWM, self._settings.high_water_mark)
        subscription.add_releaser(_closer(pull))
        try:
            pull.connect(endpoint)
        except zmq.ZMQError as e:
            raise ProvisioningError(
                f"Connecting to {endpoint} failed: {e}", resource=endpoint
            ) from e

        key = (topic, group)
        self._local[key] += 1
        self._known[topic].add(group)

        async def forget() -> None:
            self._local[key] -= 1
            configured = self._settings.groups.get(topic, ())
            if self._local[key] <= 0 and group not in configured:
                self._known[topic].discard(group)

        subscription.add_releaser(forget)

        inbox = _Inbox(maxsize=opts.concurrency)
        self._spawn(subscription, self._read(subscription, pull, inbox))
        for _ in range(opts.concurrency):
            self._spawn(
                subscription, self._work(subscription, inbox, handler, opts)
            )

    async def _read(
        self,
        subscription: Subscription,
        pull: zmq.asyncio.Socket,
        inbox: _Inbox,
    ) -> None:
        # While the inbox is full the socket is not read, so the high-water
        # marks fill up and publishers block.
        while True:
            fetched, frame = await subscription.fetch(pull.recv)
            if not fetched or frame is None:
                return
            try:
                envelope = self._serializer.deserialize(frame)
            except MessagingSerializationError as e:
                logger.error(
                    "Dropping undecodable message on %s/%s: %s",
                    subscription.topic,
                    subscription.group,
                    e,
                )
                await self.report_error(e)
                continue
            stored, _ = await subscription.fetch(partial(inbox.put, envelope))
            if not stored:
                return

    async def _work(
        self,
        subscription: Subscription,
        inbox: _Inbox,
        handler: MessageHandler,
        opts: ConsumeOptions,
    ) -> None:
        key = (subscription.topic, subscription.group)
        while True:
            fetched, envelope = await subscription.fetch(
                inbox.get, give_back=inbox.requeue
            )
            if not fetched or envelope is None:
                return
            message = self._delivery(key, inbox, envelope)
            await self.dispatch(subscription, message, handler, opts)

    def _delivery(
        self,
        key: tuple[str, str],
        inbox: _Inbox,
        envelope: MessageEnvelope,
    ) -> BrokerMessage:
        async def ack() -> None:
            pass

        async def nack(requeue: bool) -> None:
            if requeue:
                inbox.requeue(envelope.next_attempt())
            else:
                logger.warning(
                    "Dead-lettering message %s in %s/%s locally", envelope.id, *key
                )
                self._dead_letters[key].append(envelope)

        return BrokerMessage(envelope, on_ack=ack, on_nack=nack)

    def dead_letters(self, topic: str, group: str) -> list[MessageEnvelope]:
        return list(self._dead_letters.get((topic, group), ()))


class _Inbox:
    """Messages read from a PULL socket, waiting for a worker.

    Fresh messages are bounded by *maxsize*; local requeues never block and
    are served first.
    """

    def __init__(self, maxsize: int) -> None:
        self._fresh: asyncio.Queue[MessageEnvelope] = asyncio.Queue(maxsize)
        self._retries: deque[MessageEnvelope] = deque()
        self._changed = asyncio.Event()

    async def put(self, envelope: MessageEnvelope) -> None:
        await self._fresh.put(envelope)
        self._changed.set()

    def requeue(self, envelope: MessageEnvelope) -> None:
        self._retries.append(envelope)
        self._changed.set()

    async def get(self) -> MessageEnvelope:
        while True:
            if self._retries:
                return self._retries.popleft()
            if not self._fresh.empty():
                return self._fresh.get_nowait()
            self._changed.clear()
            await self._changed.wait()


def _closer(socket: zmq.asyncio.Socket) -> Any:
    async def close() -> None:
        socket.close(linger=0)

    return close
