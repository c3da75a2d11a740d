"""BrokerConfig — base pydantic model for adapter configuration blobs."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, ValidationError

from omniqueue_core.primitives.exceptions import InvalidOptionsError
from omniqueue_core.redelivery import RedeliveryPolicy

C = TypeVar("C", bound="BrokerConfig")


class BrokerConfig(BaseModel):
    """Settings shared by every adapter.

    The registry forwards config blobs untouched; each adapter validates its
    blob against its own subclass. Unknown keys are rejected.
    """

    model_config = ConfigDict(extra="forbid", arbitrary_types_allowed=True)

    redelivery: RedeliveryPolicy | dict[str, Any] | None = None

    @classmethod
    def load(cls: type[C], config: Any) -> C:
        """Validate ``None``, an instance, or a mapping into this model."""
        if config is None:
            return cls()
        if isinstance(config, cls):
            return config
        if not isinstance(config, Mapping):
            raise InvalidOptionsError(
                f"{cls.__name__} expects a mapping, got {type(config).__name__}"
            )
        try:
            return cls.model_validate(dict(config))
        except ValidationError as e:
            raise InvalidOptionsError(str(e)) from e

    def redelivery_policy(self) -> RedeliveryPolicy:
        return RedeliveryPolicy.coerce(self.redelivery)
