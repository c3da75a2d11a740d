"""omniqueue-core — broker-agnostic publish/subscribe-with-groups contract.

No backend dependencies; adapters live in ``omniqueue_messaging``.
"""

from __future__ import annotations

from .broker import BaseBroker, BrokerState, release_all
from .delivery import BrokerMessage, DeliveryState
from .envelope import MessageEnvelope
from .options import ConsumeOptions, SendOptions
from .ports import BrokerCapabilities, IBroker, PriorityStrategy
from .primitives.exceptions import (
    AckError,
    BrokerClosedError,
    BrokerCloseError,
    BrokerConnectionError,
    ConsumeLoopError,
    DuplicateRegistrationError,
    GroupRequiredError,
    InvalidOptionsError,
    MessagingError,
    MessagingSerializationError,
    OmniQueueError,
    ProviderNotRegisteredError,
    ProvisioningError,
    PublishError,
    RegistryError,
    ResourceMissingError,
)
from .redelivery import RedeliveryPolicy
from .registry import BrokerRegistry
from .subscription import Subscription

__all__ = [
    "AckError",
    "BaseBroker",
    "BrokerCapabilities",
    "BrokerCloseError",
    "BrokerClosedError",
    "BrokerConnectionError",
    "BrokerMessage",
    "BrokerRegistry",
    "BrokerState",
    "ConsumeLoopError",
    "ConsumeOptions",
    "DeliveryState",
    "DuplicateRegistrationError",
    "GroupRequiredError",
    "IBroker",
    "InvalidOptionsError",
    "MessageEnvelope",
    "MessagingError",
    "MessagingSerializationError",
    "OmniQueueError",
    "PriorityStrategy",
    "ProviderNotRegisteredError",
    "ProvisioningError",
    "PublishError",
    "RedeliveryPolicy",
    "RegistryError",
    "ResourceMissingError",
    "SendOptions",
    "Subscription",
    "release_all",
]
