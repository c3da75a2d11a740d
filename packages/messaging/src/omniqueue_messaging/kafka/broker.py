"""KafkaBroker — consumer group per (topic, group), manual offset commit."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError, TopicAlreadyExistsError
from pydantic import Field

from omniqueue_core.broker import BaseBroker, release_all
from omniqueue_core.delivery import BrokerMessage
from omniqueue_core.ports.broker import BrokerCapabilities, PriorityStrategy
from omniqueue_core.primitives.exceptions import (
    BrokerConnectionError,
    MessagingSerializationError,
    ProvisioningError,
    ResourceMissingError,
)

from ..config import BrokerConfig
from ..naming import DIGEST_MARKER, digest, dotted_name, restricted_name
from ..provisioning import ProvisioningCache
from ..serialization import EnvelopeSerializer

if TYPE_CHECKING:
    from aiokafka.structs import ConsumerRecord

    from omniqueue_core.envelope import MessageEnvelope
    from omniqueue_core.options import ConsumeOptions, SendOptions
    from omniqueue_core.ports.broker import MessageHandler
    from omniqueue_core.subscription import Subscription

logger = logging.getLogger(__name__)

_KAFKA_ALLOWED = "A-Za-z0-9._-"
_KAFKA_MAX_LENGTH = 249
_TOPIC_ALREADY_EXISTS = TopicAlreadyExistsError.errno
PRIORITY_HEADER = "x-omniqueue-priority"


def topic_name(topic: str) -> str:
    return restricted_name(
        "", topic, allowed=_KAFKA_ALLOWED, sep=".", max_length=_KAFKA_MAX_LENGTH
    )


def dead_letter_topic_name(topic: str) -> str:
    """``<topic>--dlq``; user topics never map to a name with this suffix."""
    return _reserved_name(f"{topic_name(topic)}{DIGEST_MARKER}dlq", "dlq", topic)


def retry_topic_name(topic: str, group: str) -> str:
    """Per-group retry log ``<topic>--retry.<group>``, read only by that group."""
    return _reserved_name(
        f"{topic_name(topic)}{DIGEST_MARKER}retry.{topic_name(group)}",
        "retry",
        topic,
        group,
    )


def _reserved_name(name: str, *parts: str) -> str:
    # Mapped user topics contain the marker only as a trailing digest.
    if len(name) <= _KAFKA_MAX_LENGTH:
        return name
    suffix = DIGEST_MARKER + digest("reserved", *parts)
    return name[: _KAFKA_MAX_LENGTH - len(suffix)] + suffix


def group_id(topic: str, group: str) -> str:
    return dotted_name("oq", topic, group)


class KafkaConfig(BrokerConfig):
    bootstrap_servers: str | list[str] = "localhost:9092"
    num_partitions: int = Field(default=1, ge=1)
    replication_factor: int = Field(default=1, ge=1)
    client_options: dict[str, Any] = Field(default_factory=dict)


class KafkaBroker(BaseBroker):
    """Kafka adapter.

    Mapping:
      * topic → Kafka topic (restricted to ``[A-Za-z0-9._-]``)
      * group → consumer group ``oq.<topic>.<group>``, starting from the
        earliest offset, so late groups see the retained log
      * priority → partition bucket: priority ``p`` goes to the ``p``-th
        partition (clamped); without a priority the message id is the key
      * ack → commit ``offset + 1``
      * nack(requeue=True) → republish with ``attempt + 1`` (and the same
        priority) to the group's own retry topic, then commit
      * nack(requeue=False) → publish to ``<topic>--dlq``, then commit

    Each group consumer reads the topic and its retry topic, so a requeue is
    seen again by the failing group only.

    A subscription processes records sequentially: offsets are committed in
    order, so ``concurrency`` is not applied.
    """

    provider_name = "kafka"
    capabilities = BrokerCapabilities(
        priority_strategy=PriorityStrategy.PARTITION,
        negative_ack=True,
        native_fanout=True,
        retains_for_late_groups=True,
    )

    def __init__(
        self,
        config: Any = None,
        *,
        provider: str | None = None,
        serializer: EnvelopeSerializer | None = None,
    ) -> None:
        settings = KafkaConfig.load(config)
        super().__init__(
            config, provider=provider, redelivery=settings.redelivery_policy()
        )
        self._settings = settings
        self._serializer = serializer or EnvelopeSerializer()
        self._producer: AIOKafkaProducer | None = None
        self._admin: AIOKafkaAdminClient | None = None
        self._topics: ProvisioningCache[str] = ProvisioningCache()

    def _client_config(self) -> dict[str, Any]:
        return {
            "bootstrap_servers": self._settings.bootstrap_servers,
            **self._settings.client_options,
        }

    async def _connect(self) -> None:
        producer = AIOKafkaProducer(**self._client_config())
        admin = AIOKafkaAdminClient(**self._client_config())
        try:
            await producer.start()
            await admin.start()
        except KafkaError as e:
            await release_all(producer.stop, admin.close)
            raise BrokerConnectionError(str(e)) from e
        self._producer = producer
        self._admin = admin

    async def _disconnect(self) -> list[BaseException]:
        producer, self._producer = self._producer, None
        admin, self._admin = self._admin, None
        self._topics.clear()
        return await release_all(
            producer.stop if producer is not None else None,
            admin.close if admin is not None else None,
        )

    @property
    def producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            raise BrokerConnectionError("Not connected; call init() first")
        return self._producer

    # ── Provisioning ─────────────────────────────────────────────

    async def _topic(self, topic: str, ensure: bool) -> str:
        name = topic_name(topic)
        return await self._provision_topic(name, topic, ensure)

    async def _provision_topic(self, name: str, topic: str, ensure: bool) -> str:
        if self._admin is None:
            raise BrokerConnectionError("Not connected; call init() first")
        admin = self._admin

        async def provision() -> str:
            if not ensure:
                if name not in await admin.list_topics():
                    raise ResourceMissingError(topic, "topic")
                return name
            try:
                response = await admin.create_topics(
                    [
                        NewTopic(
                            name,
                            self._settings.num_partitions,
                            self._settings.replication_factor,
                        )
                    ]
                )
            except TopicAlreadyExistsError:
                return name
            except KafkaError as e:
                raise ProvisioningError(
                    f"Creating topic {name!r} failed: {e}", resource=name
                ) from e
            for error in getattr(response, "topic_errors", ()):
                code = error[1]
                if code not in (0, _TOPIC_ALREADY_EXISTS):
                    raise ProvisioningError(
                        f"Creating topic {name!r} failed with error code {code}",
                        resource=name,
                    )
            return name

        return await self._topics.get_or_provision(name, provision)

    # ── Producer ─────────────────────────────────────────────────

    async def _publish(
        self, topic: str, envelope: MessageEnvelope, opts: SendOptions
    ) -> None:
        name = await self._topic(topic, opts.ensure)
        await self._send(name, envelope, opts.priority)

    async def _send(
        self, name: str, envelope: MessageEnvelope, priority: int | None = None
    ) -> None:
        headers: list[tuple[str, bytes]] = []
        partition = None
        if priority is not None:
            headers.append((PRIORITY_HEADER, str(priority).encode()))
            partition = await self._partition_for(name, priority)
        await self.producer.send_and_wait(
            name,
            value=self._serializer.serialize(envelope),
            key=envelope.id.encode("utf-8"),
            partition=partition,
            headers=headers or None,
        )

    async def _partition_for(self, name: str, priority: int) -> int | None:
        partitions = sorted(await self.producer.partitions_for(name) or ())
        if not partitions:
            return None
        return partitions[max(0, min(priority, len(partitions) - 1))]

    # ── Consumer ─────────────────────────────────────────────────

    async def _subscribe(
        self,
        subscription: Subscription,
        handler: MessageHandler,
        opts: ConsumeOptions,
    ) -> None:
        topic, group = subscription.topic, subscription.group
        name = await self._topic(topic, opts.ensure)
        if opts.concurrency > 1:
            logger.debug(
                "Kafka subscriptions process sequentially; concurrency=%d ignored",
                opts.concurrency,
            )
        retries = await self._provision_topic(
            retry_topic_name(topic, group), topic, ensure=True
        )
        consumer = AIOKafkaConsumer(
            name,
            retries,
            group_id=group_id(topic, group),
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            **self._client_config(),
        )
        await consumer.start()
        subscription.add_releaser(consumer.stop)
        self._spawn(subscription, self._consume(subscription, consumer, handler, opts))

    async def _consume(
        self,
        subscription: Subscription,
        consumer: AIOKafkaConsumer,
        handler: MessageHandler,
        opts: ConsumeOptions,
    ) -> None:
        # A record fetched after stop is left uncommitted and redelivered later.
        while True:
            fetched, record = await subscription.fetch(consumer.getone)
            if not fetched or record is None:
                return
            try:
                envelope = self._serializer.deserialize(record.value)
            except MessagingSerializationError as e:
                logger.error(
                    "Skipping undecodable record %s[%d]@%d: %s",
                    record.topic,
                    record.partition,
                    record.offset,
                    e,
                )
                await self._commit(consumer, record)
                await self.report_error(e)
                continue
            message = self._delivery(subscription, consumer, record, envelope)
            await self.dispatch(subscription, message, handler, opts)

    def _delivery(
        self,
        subscription: Subscription,
        consumer: AIOKafkaConsumer,
        record: ConsumerRecord,
        envelope: MessageEnvelope,
    ) -> BrokerMessage:
        async def ack() -> None:
            await self._commit(consumer, record)

        async def nack(requeue: bool) -> None:
            if requeue:
                retries = await self._provision_topic(
                    retry_topic_name(subscription.topic, subscription.group),
                    subscription.topic,
                    ensure=True,
                )
                await self._send(
                    retries, envelope.next_attempt(), _record_priority(record)
                )
            else:
                dead_letters = await self._provision_topic(
                    dead_letter_topic_name(subscription.topic),
                    subscription.topic,
                    ensure=True,
                )
                logger.warning(
                    "Dead-lettering message %s to %s", envelope.id, dead_letters
                )
                await self._send(dead_letters, envelope)
            await self._commit(consumer, record)

        return BrokerMessage(envelope, on_ack=ack, on_nack=nack, raw=record)

    @staticmethod
    async def _commit(consumer: AIOKafkaConsumer, record: ConsumerRecord) -> None:
        partition = TopicPartition(record.topic, record.partition)
        await consumer.commit({partition: record.offset + 1})


def _record_priority(record: ConsumerRecord) -> int | None:
    for key, value in record.headers or ():
        if key == PRIORITY_HEADER:
            try:
                return int(value)
            except (TypeError, ValueError):
                return None
    return None
