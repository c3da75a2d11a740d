"""Error taxonomy for omniqueue-core."""

from __future__ import annotations

from collections.abc import Iterable


class OmniQueueError(Exception):
    """Root exception for the entire omniqueue toolkit."""


# ── Registry ─────────────────────────────────────────────────────────


class RegistryError(OmniQueueError):
    """Base class for provider registration and resolution errors."""


class ProviderNotRegisteredError(RegistryError):
    """Raised when resolving a provider name that nobody registered.

    ``known`` lists the provider names registered at the time of the lookup.
    """

    def __init__(self, provider: str, known: Iterable[str] = ()) -> None:
        self.provider = provider
        self.known = sorted(known)
        listing = ", ".join(self.known) or "-"
        super().__init__(f"Broker {provider!r} not registered. Known: [{listing}]")


class DuplicateRegistrationError(RegistryError):
    """Raised when a provider name is registered twice in one registry."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Broker {provider!r} already registered")


# ── Contract misuse (raised before any backend I/O) ─────────────────


class GroupRequiredError(OmniQueueError):
    """Raised when a consume-side call omits the mandatory group."""

    def __init__(self, operation: str = "subscribe") -> None:
        self.operation = operation
        super().__init__(f"{operation}() requires a non-empty 'group' option")


class InvalidOptionsError(OmniQueueError):
    """Raised when send/consume options cannot be interpreted."""


class BrokerClosedError(OmniQueueError):
    """Raised when an operation is attempted on a closing or closed broker."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Broker {provider!r} is closed and cannot be reused")


# ── Backend-facing errors ───────────────────────────────────────────


class MessagingError(OmniQueueError):
    """Base class for errors raised while talking to a backend."""


class ResourceMissingError(MessagingError):
    """Raised when ``ensure=False`` and the addressed resource does not exist."""

    def __init__(self, resource: str, kind: str = "resource") -> None:
        self.resource = resource
        self.kind = kind
        super().__init__(f"{kind} {resource!r} does not exist and ensure=False")


class ProvisioningError(MessagingError):
    """Raised when creating a resource failed for a reason other than
    "already exists"."""

    def __init__(self, message: str, resource: str | None = None) -> None:
        self.resource = resource
        super().__init__(message)


class BrokerConnectionError(ProvisioningError):
    """Raised when connectivity to the backend cannot be established."""


class PublishError(MessagingError):
    """Raised when the backend rejected or could not accept a send."""

    def __init__(
        self, message: str, topic: str | None = None, message_id: str | None = None
    ) -> None:
        self.topic = topic
        self.message_id = message_id
        super().__init__(message)


class ConsumeLoopError(MessagingError):
    """Raised (and reported to error listeners) when a consumption loop hits an
    unrecoverable backend error."""

    def __init__(self, message: str, topic: str, group: str) -> None:
        self.topic = topic
        self.group = group
        super().__init__(f"[{topic}/{group}] {message}")


class AckError(MessagingError):
    """Raised when the backend rejected an ack or nack."""

    def __init__(self, message: str, message_id: str | None = None) -> None:
        self.message_id = message_id
        super().__init__(message)


class MessagingSerializationError(MessagingError):
    """Raised when envelope serialization or deserialization fails."""


class BrokerCloseError(MessagingError):
    """Releasing one or more resources failed during ``close()``.

    Every release is attempted; ``errors`` holds each failure in order.
    """

    def __init__(self, provider: str, errors: list[BaseException]) -> None:
        self.provider = provider
        self.errors = errors
        super().__init__(
            f"Closing broker {provider!r}: {len(errors)} resource(s) failed to "
            f"release. First error: {errors[0] if errors else 'unknown'}"
        )
