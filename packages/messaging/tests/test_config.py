from __future__ import annotations

import pytest

from omniqueue_core.primitives.exceptions import InvalidOptionsError
from omniqueue_core.redelivery import RedeliveryPolicy
from omniqueue_messaging.config import BrokerConfig
from omniqueue_messaging.memory import InMemoryConfig


def test_load_none_gives_defaults() -> None:
    config = BrokerConfig.load(None)
    assert config.redelivery is None
    assert isinstance(config.redelivery_policy(), RedeliveryPolicy)
    assert config.redelivery_policy().max_deliveries == 5


def test_load_instance_passthrough() -> None:
    config = InMemoryConfig(max_pending=3)
    assert InMemoryConfig.load(config) is config


def test_load_mapping_with_redelivery() -> None:
    config = BrokerConfig.load({"redelivery": {"max_deliveries": 2, "base_delay": 1}})
    policy = config.redelivery_policy()
    assert policy.max_deliveries == 2
    assert policy.base_delay == 1.0


def test_unknown_keys_are_rejected() -> None:
    with pytest.raises(InvalidOptionsError):
        InMemoryConfig.load({"max_pendng": 3})


def test_non_mapping_is_rejected() -> None:
    with pytest.raises(InvalidOptionsError):
        BrokerConfig.load("amqp://localhost")


def test_field_constraints() -> None:
    with pytest.raises(InvalidOptionsError):
        InMemoryConfig.load({"max_pending": 0})
