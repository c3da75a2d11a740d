"""Integration tests for the Kafka provider (require aiokafka and testcontainers)."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator

import pytest
import pytest_asyncio

pytest.importorskip("aiokafka")
pytest.importorskip("testcontainers")

from testcontainers.kafka import KafkaContainer

from omniqueue_core.delivery import BrokerMessage
from omniqueue_core.registry import BrokerRegistry
from omniqueue_messaging.kafka import KafkaBroker, register_kafka


@pytest.fixture(scope="module")
def kafka_bootstrap_servers() -> Iterator[str]:
    with KafkaContainer("confluentinc/cp-kafka:7.5.0") as kafka:
        yield kafka.get_bootstrap_server()


@pytest_asyncio.fixture
async def broker(kafka_bootstrap_servers: str) -> AsyncIterator[KafkaBroker]:
    registry = BrokerRegistry()
    register_kafka(registry)
    b = await registry.create("kafka", {"bootstrap_servers": kafka_bootstrap_servers})
    assert isinstance(b, KafkaBroker)
    yield b
    await b.close()


@pytest.mark.asyncio
async def test_late_group_reads_retained_messages(
    broker: KafkaBroker, wait_until
) -> None:
    for i in range(100):
        await broker.publish("it-orders", {"id": f"o-{i}", "body": i}, {"ensure": True})

    received: list[str] = []

    async def handler(message: BrokerMessage) -> None:
        received.append(message.id)

    await broker.subscribe("it-orders", handler, {"group": "billing"})

    await wait_until(lambda: len(received) >= 100, timeout=30.0)
    assert set(received) == {f"o-{i}" for i in range(100)}
