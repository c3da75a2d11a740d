"""Explicit registration of the built-in providers."""

from __future__ import annotations

import importlib
import logging
from typing import TYPE_CHECKING

from omniqueue_core.primitives.exceptions import InvalidOptionsError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from omniqueue_core.registry import BrokerRegistry

logger = logging.getLogger(__name__)

# provider name → (module, registration function)
BUILTIN_PROVIDERS: dict[str, tuple[str, str]] = {
    "memory": ("omniqueue_messaging.memory", "register_memory"),
    "rabbitmq": ("omniqueue_messaging.rabbitmq", "register_rabbitmq"),
    "kafka": ("omniqueue_messaging.kafka", "register_kafka"),
    "sns-sqs": ("omniqueue_messaging.sqs", "register_sns_sqs"),
    "zeromq": ("omniqueue_messaging.zeromq", "register_zeromq"),
}


def register_builtin_providers(
    registry: BrokerRegistry, names: Iterable[str] | None = None
) -> list[str]:
    """Register built-in providers on *registry* and return their names.

    Adapter modules are imported here, not at package import, so an adapter
    whose optional extra is not installed only fails when it is named. With
    ``names=None`` every adapter whose backend library is importable is
    registered and the others are skipped.
    """
    explicit = names is not None
    selected = list(names) if names is not None else list(BUILTIN_PROVIDERS)
    unknown = [n for n in selected if n not in BUILTIN_PROVIDERS]
    if unknown:
        raise InvalidOptionsError(
            f"Unknown built-in provider(s): {', '.join(unknown)}. "
            f"Available: {', '.join(BUILTIN_PROVIDERS)}"
        )
    registered: list[str] = []
    for name in selected:
        module_name, function_name = BUILTIN_PROVIDERS[name]
        try:
            module = importlib.import_module(module_name)
        except ImportError:
            if explicit:
                raise
            logger.debug("Skipping provider %s: backend library not installed", name)
            continue
        getattr(module, function_name)(registry)
        registered.append(name)
    return registered
