"""Pytest fixtures for messaging tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable

import pytest
import pytest_asyncio

from omniqueue_messaging.memory import InMemoryBackend, InMemoryBroker

WaitUntil = Callable[..., Awaitable[None]]


@pytest.fixture
def wait_until() -> WaitUntil:
    """Poll *predicate* until it holds, failing after *timeout* seconds."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met within timeout")
            await asyncio.sleep(0.005)

    return _wait


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest_asyncio.fixture
async def memory_broker(backend: InMemoryBackend) -> AsyncIterator[InMemoryBroker]:
    broker = InMemoryBroker({"backend": backend})
    await broker.init()
    yield broker
    await broker.close()
