"""In-memory backend shared by InMemoryBroker instances — topics, groups, queues."""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from omniqueue_core.envelope import MessageEnvelope

RECENT_ACKS = 1000


@dataclass(order=True)
class QueuedMessage:
    """Priority-queue entry: higher priority first, then publication order."""

    sort_key: tuple[int, int]
    envelope: MessageEnvelope = field(compare=False)
    priority: int | None = field(default=None, compare=False)


class GroupQueue:
    """One group's independent copy of a topic.

    Members of the group compete for entries of the same queue, which gives
    exclusive delivery within the group.
    """

    def __init__(
        self, topic: str, group: str, recent_acks: int = RECENT_ACKS
    ) -> None:
        self.topic = topic
        self.group = group
        self.queue: asyncio.PriorityQueue[QueuedMessage] = asyncio.PriorityQueue()
        self.dead_letters: list[MessageEnvelope] = []
        self.acked: deque[str] = deque(maxlen=recent_acks)
        self.ack_count = 0
        self._seq = itertools.count()

    def record_ack(self, message_id: str) -> None:
        """Count an ack; only the most recent ids are kept."""
        self.ack_count += 1
        self.acked.append(message_id)

    def put(self, envelope: MessageEnvelope, priority: int | None = None) -> None:
        key = (-(priority or 0), next(self._seq))
        self.queue.put_nowait(QueuedMessage(key, envelope, priority))

    def give_back(self, entry: QueuedMessage) -> None:
        """Return an entry fetched but never delivered, keeping its position."""
        self.queue.put_nowait(entry)

    @property
    def pending(self) -> int:
        return self.queue.qsize()


class TopicLog:
    """Retained log of a topic plus its groups.

    A group created after messages were published starts from the beginning of
    the log, like a new consumer group reading a partitioned log from the
    earliest offset.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.log: list[tuple[MessageEnvelope, int | None]] = []
        self.groups: dict[str, GroupQueue] = {}

    def ensure_group(self, group: str) -> GroupQueue:
        existing = self.groups.get(group)
        if existing is not None:
            return existing
        channel = GroupQueue(self.name, group)
        for envelope, priority in self.log:
            channel.put(envelope, priority)
        self.groups[group] = channel
        return channel

    def append(self, envelope: MessageEnvelope, priority: int | None) -> None:
        self.log.append((envelope, priority))
        for channel in self.groups.values():
            channel.put(envelope, priority)


class InMemoryBackend:
    """Shared "server": pass the same backend to several brokers so that a
    producer broker and consumer brokers see the same topics."""

    def __init__(self) -> None:
        self.topics: dict[str, TopicLog] = {}
        self.space = asyncio.Condition()

    def topic(self, name: str) -> TopicLog | None:
        return self.topics.get(name)

    def ensure_topic(self, name: str) -> TopicLog:
        existing = self.topics.get(name)
        if existing is not None:
            return existing
        log = TopicLog(name)
        self.topics[name] = log
        return log

    def group(self, topic: str, group: str) -> GroupQueue | None:
        log = self.topics.get(topic)
        return None if log is None else log.groups.get(group)

    def get_published(self, topic: str) -> list[MessageEnvelope]:
        """Return every envelope published to *topic*, in order."""
        log = self.topics.get(topic)
        return [] if log is None else [envelope for envelope, _ in log.log]

    def clear(self) -> None:
        """Drop all topics (for test teardown)."""
        self.topics.clear()
