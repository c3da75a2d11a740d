from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from omniqueue_core.redelivery import RedeliveryPolicy


def test_defaults() -> None:
    policy = RedeliveryPolicy()
    assert policy.max_deliveries == 5
    assert policy.base_delay == 0.0
    assert policy.max_delay == 30.0
    assert policy.jitter is False


def test_should_requeue_until_max_deliveries() -> None:
    policy = RedeliveryPolicy(max_deliveries=3)
    assert policy.should_requeue(1) is True
    assert policy.should_requeue(2) is True
    assert policy.should_requeue(3) is False
    assert policy.should_requeue(4) is False
    assert policy.should_requeue(0) is False


def test_single_delivery_never_requeues() -> None:
    assert RedeliveryPolicy(max_deliveries=1).should_requeue(1) is False


def test_exponential_backoff_capped() -> None:
    policy = RedeliveryPolicy(base_delay=1.0, max_delay=5.0)
    assert policy.delay_for_attempt(1) == 1.0
    assert policy.delay_for_attempt(2) == 2.0
    assert policy.delay_for_attempt(3) == 4.0
    assert policy.delay_for_attempt(4) == 5.0
    assert policy.delay_for_attempt(0) == 0.0


def test_zero_base_delay_means_no_wait() -> None:
    assert RedeliveryPolicy().delay_for_attempt(3) == 0.0


def test_jitter_stays_within_bounds() -> None:
    policy = RedeliveryPolicy(base_delay=2.0, max_delay=2.0, jitter=True)
    for _ in range(20):
        assert 1.0 <= policy.delay_for_attempt(1) <= 3.0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_deliveries": 0},
        {"base_delay": -1.0},
        {"base_delay": 10.0, "max_delay": 1.0},
    ],
)
def test_invalid_arguments(kwargs: dict[str, float]) -> None:
    with pytest.raises(ValueError):
        RedeliveryPolicy(**kwargs)  # type: ignore[arg-type]


def test_coerce() -> None:
    policy = RedeliveryPolicy(max_deliveries=2)
    assert RedeliveryPolicy.coerce(policy) is policy
    assert RedeliveryPolicy.coerce(None).max_deliveries == 5
    assert RedeliveryPolicy.coerce({"max_deliveries": 7}).max_deliveries == 7


@pytest.mark.asyncio
async def test_wait_before_requeue_sleeps_backoff() -> None:
    policy = RedeliveryPolicy(base_delay=0.5, max_delay=10.0)
    with patch(
        "omniqueue_core.redelivery.asyncio.sleep", new_callable=AsyncMock
    ) as sleep:
        await policy.wait_before_requeue(2)
    sleep.assert_awaited_once_with(1.0)


@pytest.mark.asyncio
async def test_wait_before_requeue_skips_zero_delay() -> None:
    with patch(
        "omniqueue_core.redelivery.asyncio.sleep", new_callable=AsyncMock
    ) as sleep:
        await RedeliveryPolicy().wait_before_requeue(1)
    sleep.assert_not_awaited()
