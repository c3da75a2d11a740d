"""Unit tests for SnsSqsBroker with mocked aiobotocore clients (no real AWS)."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

pytest.importorskip("aiobotocore")

from botocore.exceptions import ClientError

from omniqueue_core.delivery import BrokerMessage
from omniqueue_core.envelope import MessageEnvelope
from omniqueue_core.primitives.exceptions import (
    AckError,
    BrokerConnectionError,
    ConsumeLoopError,
    MessagingSerializationError,
    ResourceMissingError,
)
from omniqueue_messaging.serialization import EnvelopeSerializer
from omniqueue_messaging.sqs import (
    SnsSqsBroker,
    SnsSqsConnectionManager,
    error_code,
    queue_name,
    queue_policy,
    topic_name,
)

TOPIC_ARN = "arn:aws:sns:us-east-1:123:oq-orders"
QUEUE_URL = "https://sqs.us-east-1.amazonaws.com/123/oq-orders-billing"
DLQ_URL = QUEUE_URL + "-dlq"


def _client_error(code: str, operation: str = "GetQueueUrl") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class Inbox:
    """Feeds ``receive_message`` batches, then long-polls forever."""

    def __init__(self) -> None:
        self.batches: list[dict[str, Any]] = []

    async def receive(self, **kwargs: Any) -> dict[str, Any]:
        if self.batches:
            return self.batches.pop(0)
        await asyncio.Event().wait()
        return {}


@pytest.fixture
def inbox() -> Inbox:
    return Inbox()


@pytest.fixture
def connection(inbox: Inbox) -> MagicMock:
    conn = MagicMock()
    conn.connect = AsyncMock()
    conn.close = AsyncMock()

    sns = MagicMock()
    sns.create_topic = AsyncMock(return_value={"TopicArn": TOPIC_ARN})
    sns.list_topics = AsyncMock(return_value={"Topics": []})
    sns.subscribe = AsyncMock(return_value={"SubscriptionArn": TOPIC_ARN + ":sub"})
    sns.publish = AsyncMock(return_value={"MessageId": "sns-1"})
    conn.sns = sns

    sqs = MagicMock()
    sqs.create_queue = AsyncMock(
        side_effect=lambda **kwargs: {
            "QueueUrl": "https://sqs.us-east-1.amazonaws.com/123/" + kwargs["QueueName"]
        }
    )
    sqs.get_queue_url = AsyncMock(return_value={"QueueUrl": QUEUE_URL})
    sqs.get_queue_attributes = AsyncMock(
        return_value={"Attributes": {"QueueArn": "arn:aws:sqs:us-east-1:123:q"}}
    )
    sqs.set_queue_attributes = AsyncMock()
    sqs.receive_message = AsyncMock(side_effect=inbox.receive)
    sqs.delete_message = AsyncMock()
    sqs.change_message_visibility = AsyncMock()
    sqs.send_message = AsyncMock()
    conn.sqs = sqs
    return conn


async def _broker(connection: MagicMock, **config: Any) -> SnsSqsBroker:
    broker = SnsSqsBroker(config, connection=connection)
    await broker.init()
    return broker


def _sqs_message(
    envelope: MessageEnvelope, receipt: str = "rh-1", receive_count: int = 1
) -> dict[str, Any]:
    return {
        "MessageId": "sqs-" + receipt,
        "ReceiptHandle": receipt,
        "Body": EnvelopeSerializer().serialize(envelope).decode("utf-8"),
        "Attributes": {"ApproximateReceiveCount": str(receive_count)},
    }


def test_resource_names() -> None:
    assert topic_name("orders") == "oq-orders"
    assert queue_name("orders", "billing") == "oq-orders-billing"
    assert len(queue_name("o" * 100, "g" * 100) + "-dlq") <= 80


def test_queue_policy_allows_only_the_topic() -> None:
    policy = json.loads(queue_policy("arn:queue", "arn:topic"))
    statement = policy["Statement"][0]
    assert statement["Resource"] == "arn:queue"
    assert statement["Condition"] == {"ArnEquals": {"aws:SourceArn": "arn:topic"}}


def test_error_code() -> None:
    assert error_code(_client_error("QueueDoesNotExist")) == "QueueDoesNotExist"
    assert error_code(RuntimeError("x")) is None


# ── Publish ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_publish_provisions_topic_and_groups(connection: MagicMock) -> None:
    broker = await _broker(connection)

    await broker.publish(
        "orders",
        {"id": "m-1", "body": {"n": 1}},
        {"ensure": True, "priority": 3, "create_options": {"groups": ["billing"]}},
    )

    connection.sns.create_topic.assert_awaited_once_with(Name="oq-orders")
    created = [
        c.kwargs["QueueName"] for c in connection.sqs.create_queue.await_args_list
    ]
    assert created == ["oq-orders-billing", "oq-orders-billing-dlq"]
    policy = connection.sqs.set_queue_attributes.await_args.kwargs["Attributes"]
    assert json.loads(policy["Policy"])["Statement"][0]["Resource"] == (
        "arn:aws:sqs:us-east-1:123:q"
    )
    connection.sns.subscribe.assert_awaited_once_with(
        TopicArn=TOPIC_ARN,
        Protocol="sqs",
        Endpoint="arn:aws:sqs:us-east-1:123:q",
        Attributes={"RawMessageDelivery": "true"},
    )

    kwargs = connection.sns.publish.await_args.kwargs
    assert kwargs["TopicArn"] == TOPIC_ARN
    assert EnvelopeSerializer().deserialize(kwargs["Message"]).id == "m-1"
    assert kwargs["MessageAttributes"]["priority"]["StringValue"] == "3"

    await broker.publish("orders", {"body": 2}, {"ensure": True})
    connection.sns.create_topic.assert_awaited_once()


@pytest.mark.asyncio
async def test_existing_queue_is_reused(connection: MagicMock) -> None:
    connection.sqs.create_queue = AsyncMock(
        side_effect=_client_error("QueueAlreadyExists", "CreateQueue")
    )
    broker = await _broker(connection)

    await broker.publish(
        "orders", {"body": 1}, {"ensure": True, "create_options": {"groups": ["g"]}}
    )

    assert connection.sqs.get_queue_url.await_count == 2
    connection.sns.publish.assert_awaited_once()


@pytest.mark.asyncio
async def test_publish_without_ensure_finds_topic_across_pages(
    connection: MagicMock,
) -> None:
    connection.sns.list_topics.side_effect = [
        {"Topics": [{"TopicArn": "arn:aws:sns:us-east-1:123:other"}], "NextToken": "t"},
        {"Topics": [{"TopicArn": TOPIC_ARN}]},
    ]
    broker = await _broker(connection)

    await broker.publish("orders", {"body": 1})

    assert connection.sns.list_topics.await_args_list[1].kwargs == {"NextToken": "t"}
    assert connection.sns.publish.await_args.kwargs["TopicArn"] == TOPIC_ARN
    connection.sns.create_topic.assert_not_awaited()


@pytest.mark.asyncio
async def test_publish_without_ensure_to_missing_topic(connection: MagicMock) -> None:
    broker = await _broker(connection)

    with pytest.raises(ResourceMissingError):
        await broker.publish("orders", {"body": 1})
    connection.sns.publish.assert_not_awaited()


@pytest.mark.asyncio
async def test_subscribe_without_ensure_to_missing_queue(
    connection: MagicMock,
) -> None:
    connection.sqs.get_queue_url.side_effect = _client_error(
        "AWS.SimpleQueueService.NonExistentQueue"
    )
    broker = await _broker(connection)

    with pytest.raises(ResourceMissingError):
        await broker.subscribe("orders", AsyncMock(), {"group": "billing"})
    connection.sqs.receive_message.assert_not_awaited()


# ── Consume ──────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_handled_message_is_deleted(
    connection: MagicMock, inbox: Inbox, wait_until
) -> None:
    broker = await _broker(connection, wait_time_seconds=1)
    received: list[BrokerMessage] = []

    async def handler(message: BrokerMessage) -> None:
        received.append(message)

    inbox.batches.append(
        {"Messages": [_sqs_message(MessageEnvelope(id="m-1", body="x"))]}
    )
    await broker.subscribe("orders", handler, {"group": "billing", "ensure": True})

    await wait_until(lambda: connection.sqs.delete_message.await_count == 1)
    assert [(m.id, m.attempt) for m in received] == [("m-1", 1)]
    connection.sqs.delete_message.assert_awaited_once_with(
        QueueUrl=QUEUE_URL, ReceiptHandle="rh-1"
    )
    assert connection.sqs.receive_message.await_args.kwargs["WaitTimeSeconds"] == 1
    await broker.close()
    connection.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_failure_makes_message_visible_again(
    connection: MagicMock, inbox: Inbox, wait_until
) -> None:
    broker = await _broker(connection)
    inbox.batches.append({"Messages": [_sqs_message(MessageEnvelope(body=1))]})
    await broker.subscribe(
        "orders",
        AsyncMock(side_effect=RuntimeError("boom")),
        {"group": "billing", "ensure": True},
    )

    await wait_until(lambda: connection.sqs.change_message_visibility.await_count == 1)
    connection.sqs.change_message_visibility.assert_awaited_once_with(
        QueueUrl=QUEUE_URL, ReceiptHandle="rh-1", VisibilityTimeout=0
    )
    connection.sqs.delete_message.assert_not_awaited()
    await broker.close()


@pytest.mark.asyncio
async def test_exhausted_message_moves_to_dead_letter_queue(
    connection: MagicMock, inbox: Inbox, wait_until
) -> None:
    broker = await _broker(connection, redelivery={"max_deliveries": 3})
    message = _sqs_message(MessageEnvelope(id="poison", body=1), receive_count=3)
    inbox.batches.append({"Messages": [message]})
    await broker.subscribe(
        "orders",
        AsyncMock(side_effect=RuntimeError("poison")),
        {"group": "billing", "ensure": True},
    )

    await wait_until(lambda: connection.sqs.delete_message.await_count == 1)
    connection.sqs.send_message.assert_awaited_once_with(
        QueueUrl=DLQ_URL, MessageBody=message["Body"]
    )
    await broker.close()


@pytest.mark.asyncio
async def test_undecodable_message_is_dead_lettered_and_reported(
    connection: MagicMock, inbox: Inbox, wait_until
) -> None:
    broker = await _broker(connection)
    handler = AsyncMock()
    message = _sqs_message(MessageEnvelope(body=1))
    message["Body"] = "{not json"
    inbox.batches.append({"Messages": [message]})
    await broker.subscribe("orders", handler, {"group": "billing", "ensure": True})

    await wait_until(lambda: connection.sqs.delete_message.await_count == 1)
    handler.assert_not_awaited()
    connection.sqs.send_message.assert_awaited_once()
    assert len(broker.errors) == 1
    await broker.close()


@pytest.mark.asyncio
async def test_failed_dead_letter_move_keeps_polling(
    connection: MagicMock, inbox: Inbox, wait_until
) -> None:
    connection.sqs.send_message.side_effect = _client_error(
        "AccessDenied", "SendMessage"
    )
    broker = await _broker(connection)
    received: list[str] = []

    async def handler(message: BrokerMessage) -> None:
        received.append(message.id)

    garbage = _sqs_message(MessageEnvelope(body=1), receipt="rh-bad")
    garbage["Body"] = "{not json"
    inbox.batches.append({"Messages": [garbage]})
    inbox.batches.append(
        {"Messages": [_sqs_message(MessageEnvelope(id="m-2", body=2), "rh-2")]}
    )
    subscription = await broker.subscribe(
        "orders", handler, {"group": "billing", "ensure": True}
    )

    await wait_until(lambda: received == ["m-2"])
    assert [type(e) for e in broker.errors] == [
        MessagingSerializationError,
        AckError,
    ]
    assert broker.errors[1].message_id == "sqs-rh-bad"
    assert subscription.exception() is None
    assert not subscription.done
    await broker.close()


@pytest.mark.asyncio
async def test_repeated_poll_failures_end_the_subscription(
    connection: MagicMock, wait_until
) -> None:
    connection.sqs.receive_message = AsyncMock(
        side_effect=_client_error("ServiceUnavailable", "ReceiveMessage")
    )
    broker = await _broker(connection, max_poll_failures=2, poll_backoff=0)
    reported: list[BaseException] = []
    broker.add_error_listener(reported.append)

    subscription = await broker.subscribe(
        "orders", AsyncMock(), {"group": "billing", "ensure": True}
    )

    await wait_until(lambda: subscription.done)
    assert isinstance(subscription.exception(), ConsumeLoopError)
    assert connection.sqs.receive_message.await_count == 2
    assert len(reported) == 1
    await broker.close()


# ── Connection manager ───────────────────────────────────────────


@pytest.fixture
def mock_session() -> MagicMock:
    session = MagicMock()
    clients: dict[str, MagicMock] = {}

    def create_client(service: str, **kwargs: Any) -> MagicMock:
        client = MagicMock()
        client.list_queues = AsyncMock(return_value={"QueueUrls": []})
        clients[service] = client
        cm = MagicMock()
        cm.__aenter__ = AsyncMock(return_value=client)
        cm.__aexit__ = AsyncMock(return_value=None)
        client.cm = cm
        return cm

    session.create_client = MagicMock(side_effect=create_client)
    session.clients = clients
    return session


@pytest.mark.asyncio
async def test_connection_manager_opens_both_clients(mock_session: MagicMock) -> None:
    conn = SnsSqsConnectionManager(
        "eu-west-1", session=mock_session, endpoint_url="http://localstack:4566"
    )
    await conn.connect()
    await conn.connect()

    services = [c.args[0] for c in mock_session.create_client.call_args_list]
    assert services == ["sns", "sqs"]
    assert mock_session.create_client.call_args.kwargs == {
        "region_name": "eu-west-1",
        "endpoint_url": "http://localstack:4566",
    }
    assert conn.sns is mock_session.clients["sns"]
    assert conn.sqs is mock_session.clients["sqs"]
    assert await conn.health_check() is True

    await conn.close()
    mock_session.clients["sns"].cm.__aexit__.assert_awaited_once()
    mock_session.clients["sqs"].cm.__aexit__.assert_awaited_once()
    with pytest.raises(BrokerConnectionError):
        _ = conn.sqs


@pytest.mark.asyncio
async def test_connection_manager_health_check_failure(
    mock_session: MagicMock,
) -> None:
    conn = SnsSqsConnectionManager(session=mock_session)
    assert await conn.health_check() is False

    await conn.connect()
    mock_session.clients["sqs"].list_queues.side_effect = RuntimeError("timeout")
    assert await conn.health_check() is False


@pytest.mark.asyncio
async def test_close_when_never_opened(mock_session: MagicMock) -> None:
    conn = SnsSqsConnectionManager(session=mock_session)
    await conn.close()
    mock_session.create_client.assert_not_called()
