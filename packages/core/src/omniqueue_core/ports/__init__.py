from omniqueue_core.ports.broker import BrokerCapabilities, IBroker, PriorityStrategy

__all__ = [
    "BrokerCapabilities",
    "IBroker",
    "PriorityStrategy",
]
