"""Broker adapters for omniqueue — memory, RabbitMQ, Kafka, SNS+SQS, ZeroMQ.

Network adapters live in subpackages that import their backend library, so
they are only imported on demand (or via :func:`register_builtin_providers`).
"""

from __future__ import annotations

from .bootstrap import BUILTIN_PROVIDERS, register_builtin_providers
from .config import BrokerConfig
from .idempotency import IdempotencyFilter
from .memory import InMemoryBackend, InMemoryBroker, InMemoryConfig, register_memory
from .naming import digest, dotted_name, escape_part, restricted_name
from .provisioning import ProvisioningCache
from .serialization import EnvelopeSerializer

__all__ = [
    "BUILTIN_PROVIDERS",
    "BrokerConfig",
    "EnvelopeSerializer",
    "IdempotencyFilter",
    "InMemoryBackend",
    "InMemoryBroker",
    "InMemoryConfig",
    "ProvisioningCache",
    "digest",
    "dotted_name",
    "escape_part",
    "register_builtin_providers",
    "register_memory",
    "restricted_name",
]
