"""SendOptions / ConsumeOptions — producer and consumer options."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .primitives.exceptions import GroupRequiredError, InvalidOptionsError


class SendOptions(BaseModel):
    """Producer-side options for ``publish``/``send``.

    ``priority`` is a best-effort hint; how (and whether) it is honoured
    depends on the provider's declared priority strategy.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    priority: int | None = Field(
        default=None, validation_alias=AliasChoices("priority", "prio")
    )
    ensure: bool = False
    create_options: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("create_options", "createOptions"),
    )
    delay: float | None = Field(default=None, ge=0)

    @classmethod
    def coerce(cls, options: Any) -> SendOptions:
        """Accept ``None``, an options instance, or a mapping."""
        if options is None:
            return cls()
        if type(options) is cls:
            return options
        if isinstance(options, BaseModel):
            options = options.model_dump(exclude_unset=True)
        if not isinstance(options, Mapping):
            raise InvalidOptionsError(
                f"Expected {cls.__name__} or mapping, got {type(options).__name__}"
            )
        try:
            return cls.model_validate(dict(options))
        except ValidationError as e:
            raise InvalidOptionsError(str(e)) from e


class ConsumeOptions(SendOptions):
    """Consumer-side options for ``subscribe``/``receive``.

    ``group`` is the unit of work-sharing: every group receives its own copy of
    each message, and within a group exactly one member processes it.
    """

    group: str = Field(min_length=1)
    auto_ack: bool = Field(
        default=True,
        description="Ack deliveries the handler returned from without settling",
    )
    concurrency: int = Field(default=1, ge=1)

    @classmethod
    def coerce(cls, options: Any, operation: str = "subscribe") -> ConsumeOptions:
        """Like ``SendOptions.coerce`` but raises ``GroupRequiredError`` first."""
        if isinstance(options, Mapping):
            group = options.get("group")
        else:
            group = getattr(options, "group", None)
        if not isinstance(group, str) or not group.strip():
            raise GroupRequiredError(operation)
        return super().coerce(options)  # type: ignore[return-value]
