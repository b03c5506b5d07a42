from console_core.gateway.base import (
    AuthEvent,
    AuthSession,
    ChangeEvent,
    ChangeType,
    RemoteGateway,
    Row,
    Unsubscribe,
)
from console_core.gateway.memory import InMemoryGateway
from console_core.gateway.rest import RestGateway

__all__ = [
    "AuthEvent",
    "AuthSession",
    "ChangeEvent",
    "ChangeType",
    "RemoteGateway",
    "Row",
    "Unsubscribe",
    "InMemoryGateway",
    "RestGateway",
]
