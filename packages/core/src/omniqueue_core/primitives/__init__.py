from .exceptions import (
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

__all__ = [
    "AckError",
    "BrokerCloseError",
    "BrokerClosedError",
    "BrokerConnectionError",
    "ConsumeLoopError",
    "DuplicateRegistrationError",
    "GroupRequiredError",
    "InvalidOptionsError",
    "MessagingError",
    "MessagingSerializationError",
    "OmniQueueError",
    "ProviderNotRegisteredError",
    "ProvisioningError",
    "PublishError",
    "RegistryError",
    "ResourceMissingError",
]
