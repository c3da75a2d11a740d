"""MessageEnvelope — immutable wire form of a logical message."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class MessageEnvelope(BaseModel):
    """Immutable wrapper for messages over the wire.

    ``id`` identifies the logical message and stays the same across every
    redelivery; ``attempt`` is bumped by adapters that redeliver by republishing.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), min_length=1)
    body: Any = None
    headers: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempt: int = Field(default=1, ge=1, description="Delivery attempt count")

    @classmethod
    def coerce(cls, message: Any) -> MessageEnvelope:
        """Build an envelope from an envelope, an ``{id, body, headers}`` mapping,
        or a bare payload."""
        if isinstance(message, MessageEnvelope):
            return message
        if isinstance(message, Mapping) and "body" in message:
            data = {
                key: message[key]
                for key in ("id", "body", "headers")
                if message.get(key) is not None
            }
            return cls(**data)
        return cls(body=message)

    def next_attempt(self) -> MessageEnvelope:
        """Copy for redelivery: same id, attempt + 1."""
        return self.model_copy(update={"attempt": self.attempt + 1})
