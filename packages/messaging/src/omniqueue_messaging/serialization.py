"""EnvelopeSerializer — JSON roundtrip for MessageEnvelope."""

from __future__ import annotations

import json
from typing import Any

from omniqueue_core.envelope import MessageEnvelope
from omniqueue_core.primitives.exceptions import MessagingSerializationError


def _json_serializer(obj: Any) -> Any:
    """Serialize datetime and other non-JSON types."""
    if hasattr(obj, "isoformat"):
        return obj.isoformat()
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class EnvelopeSerializer:
    """Serialize/deserialize MessageEnvelope to/from JSON bytes.

    The whole envelope travels in the payload so id, headers and attempt survive
    backends without native message metadata.
    """

    content_type = "application/json"

    def serialize(self, envelope: MessageEnvelope) -> bytes:
        """Encode envelope to JSON bytes."""
        try:
            data = envelope.model_dump(mode="json")
            return json.dumps(data, default=_json_serializer).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise MessagingSerializationError(str(e)) from e

    def deserialize(self, raw: bytes | str) -> MessageEnvelope:
        """Decode JSON bytes to MessageEnvelope."""
        try:
            text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            data = json.loads(text)
            if not isinstance(data, dict):
                raise ValueError("envelope must be a JSON object")
            return MessageEnvelope.model_validate(data)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError, ValueError) as e:
            raise MessagingSerializationError(str(e)) from e
