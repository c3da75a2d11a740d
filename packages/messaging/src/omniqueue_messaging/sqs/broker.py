"""SnsSqsBroker — SNS topic per topic, SQS queue per group."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import TYPE_CHECKING, Any

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import Field

from omniqueue_core.broker import BaseBroker, release_all
from omniqueue_core.delivery import BrokerMessage
from omniqueue_core.ports.broker import BrokerCapabilities, PriorityStrategy
from omniqueue_core.primitives.exceptions import (
    AckError,
    ConsumeLoopError,
    MessagingSerializationError,
    ProvisioningError,
    ResourceMissingError,
)

from ..config import BrokerConfig
from ..naming import restricted_name
from ..provisioning import ProvisioningCache
from ..serialization import EnvelopeSerializer
from .connection import (
    NON_EXISTENT_QUEUE,
    QUEUE_ALREADY_EXISTS,
    SnsSqsConnectionManager,
    error_code,
)

if TYPE_CHECKING:
    from omniqueue_core.envelope import MessageEnvelope
    from omniqueue_core.options import ConsumeOptions, SendOptions
    from omniqueue_core.ports.broker import MessageHandler
    from omniqueue_core.subscription import Subscription

logger = logging.getLogger(__name__)

_AWS_ERRORS = (ClientError, BotoCoreError)
DEAD_LETTER_SUFFIX = "-dlq"


def topic_name(topic: str) -> str:
    return restricted_name("oq", topic, max_length=256)


def queue_name(topic: str, group: str) -> str:
    return restricted_name(
        "oq", topic, group, max_length=80 - len(DEAD_LETTER_SUFFIX)
    )


def queue_policy(queue_arn: str, topic_arn: str) -> str:
    """Allow the SNS topic, and only it, to deliver into the queue."""
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": "sns.amazonaws.com"},
                    "Action": "sqs:SendMessage",
                    "Resource": queue_arn,
                    "Condition": {"ArnEquals": {"aws:SourceArn": topic_arn}},
                }
            ],
        }
    )


class SnsSqsConfig(BrokerConfig):
    region_name: str = "us-east-1"
    endpoint_url: str | None = None
    client_options: dict[str, Any] = Field(default_factory=dict)
    wait_time_seconds: int = Field(default=20, ge=0, le=20)
    visibility_timeout: int = Field(default=30, ge=0, le=43200)
    max_messages: int = Field(default=10, ge=1, le=10)
    max_poll_failures: int = Field(default=5, ge=1)
    poll_backoff: float = Field(default=1.0, ge=0)


class SnsSqsBroker(BaseBroker):
    """SNS + SQS adapter.

    Mapping:
      * topic → SNS topic ``oq-<topic>``
      * group → SQS queue ``oq-<topic>-<group>`` subscribed to the topic with
        raw message delivery; group members long-poll the same queue
      * priority → ignored (kept as the ``priority`` message attribute)
      * ack → ``DeleteMessage``
      * nack(requeue=True) → visibility timeout reset to 0
      * nack(requeue=False) → copy to ``<queue>-dlq``, then ``DeleteMessage``

    SNS only delivers to queues subscribed at publish time; pre-provision
    groups with ``create_options={"groups": [...]}`` on an ``ensure=True``
    publish.
    """

    provider_name = "sns-sqs"
    capabilities = BrokerCapabilities(
        priority_strategy=PriorityStrategy.IGNORED,
        negative_ack=True,
    )

    def __init__(
        self,
        config: Any = None,
        *,
        provider: str | None = None,
        connection: SnsSqsConnectionManager | None = None,
        serializer: EnvelopeSerializer | None = None,
    ) -> None:
        settings = SnsSqsConfig.load(config)
        super().__init__(
            config, provider=provider, redelivery=settings.redelivery_policy()
        )
        self._settings = settings
        client_kwargs = dict(settings.client_options)
        if settings.endpoint_url is not None:
            client_kwargs["endpoint_url"] = settings.endpoint_url
        self._connection = connection or SnsSqsConnectionManager(
            settings.region_name, **client_kwargs
        )
        self._serializer = serializer or EnvelopeSerializer()
        self._topics: ProvisioningCache[str] = ProvisioningCache()
        self._queues: ProvisioningCache[str] = ProvisioningCache()

    async def _connect(self) -> None:
        await self._connection.connect()

    async def _disconnect(self) -> list[BaseException]:
        self._topics.clear()
        self._queues.clear()
        return await release_all(self._connection.close)

    # ── Provisioning ─────────────────────────────────────────────

    async def _topic_arn(self, topic: str, ensure: bool) -> str:
        name = topic_name(topic)
        sns = self._connection.sns

        async def provision() -> str:
            if ensure:
                # CreateTopic is idempotent and returns the existing ARN.
                out = await sns.create_topic(Name=name)
                return str(out["TopicArn"])
            arn = await self._find_topic(name)
            if arn is None:
                raise ResourceMissingError(topic, "topic")
            return arn

        return await self._provision(self._topics, name, provision)

    async def _find_topic(self, name: str) -> str | None:
        sns = self._connection.sns
        kwargs: dict[str, Any] = {}
        while True:
            page = await sns.list_topics(**kwargs)
            for entry in page.get("Topics", []):
                arn = str(entry["TopicArn"])
                if arn.rsplit(":", 1)[-1] == name:
                    return arn
            token = page.get("NextToken")
            if not token:
                return None
            kwargs = {"NextToken": token}

    async def _queue_url(self, topic: str, group: str, ensure: bool) -> str:
        name = queue_name(topic, group)

        async def provision() -> str:
            if not ensure:
                url = await self._lookup_queue(name)
                if url is None:
                    raise ResourceMissingError(f"{topic}/{group}", "group")
                return url
            topic_arn = await self._topic_arn(topic, ensure=True)
            url = await self._create_queue(name)
            await self._dead_letter_url(name)
            sqs = self._connection.sqs
            attributes = await sqs.get_queue_attributes(
                QueueUrl=url, AttributeNames=["QueueArn"]
            )
            queue_arn = attributes["Attributes"]["QueueArn"]
            await sqs.set_queue_attributes(
                QueueUrl=url,
                Attributes={"Policy": queue_policy(queue_arn, topic_arn)},
            )
            # Subscribe is idempotent for the same topic, protocol and endpoint.
            await self._connection.sns.subscribe(
                TopicArn=topic_arn,
                Protocol="sqs",
                Endpoint=queue_arn,
                Attributes={"RawMessageDelivery": "true"},
            )
            return url

        return await self._provision(self._queues, name, provision)

    async def _dead_letter_url(self, name: str) -> str:
        dead_letters = name + DEAD_LETTER_SUFFIX

        async def provision() -> str:
            return await self._create_queue(dead_letters)

        return await self._provision(self._queues, dead_letters, provision)

    async def _create_queue(self, name: str) -> str:
        sqs = self._connection.sqs
        try:
            out = await sqs.create_queue(
                QueueName=name,
                Attributes={
                    "VisibilityTimeout": str(self._settings.visibility_timeout)
                },
            )
        except ClientError as e:
            if error_code(e) not in QUEUE_ALREADY_EXISTS:
                raise
            out = await sqs.get_queue_url(QueueName=name)
        return str(out["QueueUrl"])

    async def _lookup_queue(self, name: str) -> str | None:
        try:
            out = await self._connection.sqs.get_queue_url(QueueName=name)
        except ClientError as e:
            if error_code(e) in NON_EXISTENT_QUEUE:
                return None
            raise
        return str(out["QueueUrl"])

    async def _provision(
        self, cache: ProvisioningCache[str], name: str, provision: Any
    ) -> str:
        try:
            return await cache.get_or_provision(name, provision)
        except (ResourceMissingError, ProvisioningError):
            raise
        except _AWS_ERRORS as e:
            raise ProvisioningError(
                f"Provisioning {name!r} failed: {e}", resource=name
            ) from e

    # ── Producer ─────────────────────────────────────────────────

    async def _publish(
        self, topic: str, envelope: MessageEnvelope, opts: SendOptions
    ) -> None:
        topic_arn = await self._topic_arn(topic, opts.ensure)
        if opts.ensure:
            for group in opts.create_options.get("groups", ()):
                await self._queue_url(topic, group, ensure=True)
        kwargs: dict[str, Any] = {
            "TopicArn": topic_arn,
            "Message": self._serializer.serialize(envelope).decode("utf-8"),
        }
        if opts.priority is not None:
            kwargs["MessageAttributes"] = {
                "priority": {"DataType": "Number", "StringValue": str(opts.priority)}
            }
        await self._connection.sns.publish(**kwargs)

    # ── Consumer ─────────────────────────────────────────────────

    async def _subscribe(
        self,
        subscription: Subscription,
        handler: MessageHandler,
        opts: ConsumeOptions,
    ) -> None:
        topic, group = subscription.topic, subscription.group
        url = await self._queue_url(topic, group, opts.ensure)
        name = queue_name(topic, group)
        for _ in range(opts.concurrency):
            self._spawn(
                subscription,
                self._poll(subscription, url, name, handler, opts),
            )

    async def _receive(self, url: str) -> dict[str, Any]:
        return await self._connection.sqs.receive_message(
            QueueUrl=url,
            MaxNumberOfMessages=self._settings.max_messages,
            WaitTimeSeconds=self._settings.wait_time_seconds,
            VisibilityTimeout=self._settings.visibility_timeout,
            AttributeNames=["ApproximateReceiveCount"],
            MessageAttributeNames=["All"],
        )

    async def _poll(
        self,
        subscription: Subscription,
        url: str,
        name: str,
        handler: MessageHandler,
        opts: ConsumeOptions,
    ) -> None:
        failures = 0
        while True:
            try:
                fetched, out = await subscription.fetch(lambda: self._receive(url))
            except _AWS_ERRORS as e:
                failures += 1
                if failures >= self._settings.max_poll_failures:
                    raise ConsumeLoopError(
                        f"receive_message failed {failures} times in a row: {e}",
                        subscription.topic,
                        subscription.group,
                    ) from e
                logger.warning(
                    "Polling %s failed (%d/%d): %s",
                    url,
                    failures,
                    self._settings.max_poll_failures,
                    e,
                )
                await self._pause(subscription)
                continue
            if not fetched or out is None:
                return
            failures = 0
            messages = out.get("Messages", [])
            for index, raw in enumerate(messages):
                if subscription.stopping.is_set():
                    await self._release(url, messages[index:])
                    return
                await self._handle(subscription, url, name, raw, handler, opts)

    async def _pause(self, subscription: Subscription) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(
                subscription.stopping.wait(), self._settings.poll_backoff
            )

    async def _release(self, url: str, messages: list[dict[str, Any]]) -> None:
        """Make received but unprocessed messages visible again."""
        for raw in messages:
            await self._connection.sqs.change_message_visibility(
                QueueUrl=url, ReceiptHandle=raw["ReceiptHandle"], VisibilityTimeout=0
            )

    async def _handle(
        self,
        subscription: Subscription,
        url: str,
        name: str,
        raw: dict[str, Any],
        handler: MessageHandler,
        opts: ConsumeOptions,
    ) -> None:
        body = raw.get("Body", "")
        try:
            envelope = self._serializer.deserialize(body)
        except MessagingSerializationError as e:
            logger.error("Dead-lettering undecodable message on %s: %s", url, e)
            await self.report_error(e)
            try:
                await self._dead_letter(url, name, raw)
            except (*_AWS_ERRORS, ProvisioningError) as move_error:
                # Left in the queue; it reappears after the visibility timeout.
                error = AckError(
                    f"Dead-lettering undecodable message failed: {move_error}",
                    message_id=raw.get("MessageId"),
                )
                error.__cause__ = move_error
                await self.report_error(error)
            return
        count = raw.get("Attributes", {}).get("ApproximateReceiveCount")
        attempt = int(count) if count is not None else envelope.attempt
        sqs = self._connection.sqs

        async def ack() -> None:
            await sqs.delete_message(QueueUrl=url, ReceiptHandle=raw["ReceiptHandle"])

        async def nack(requeue: bool) -> None:
            if requeue:
                await sqs.change_message_visibility(
                    QueueUrl=url,
                    ReceiptHandle=raw["ReceiptHandle"],
                    VisibilityTimeout=0,
                )
            else:
                await self._dead_letter(url, name, raw)

        message = BrokerMessage(
            envelope, on_ack=ack, on_nack=nack, attempt=attempt, raw=raw
        )
        await self.dispatch(subscription, message, handler, opts)

    async def _dead_letter(self, url: str, name: str, raw: dict[str, Any]) -> None:
        sqs = self._connection.sqs
        dead_letters = await self._dead_letter_url(name)
        logger.warning(
            "Dead-lettering message %s to %s", raw.get("MessageId"), dead_letters
        )
        await sqs.send_message(QueueUrl=dead_letters, MessageBody=raw.get("Body", ""))
        await sqs.delete_message(QueueUrl=url, ReceiptHandle=raw["ReceiptHandle"])
