"""Gateway connectivity: RPC client, push events, and instance registry."""

from .client import (
    GatewayClient,
    GatewayConnection,
    GatewayError,
    GatewayNotConnected,
    GatewayRequestError,
    GatewayTimeout,
)
from .events import AgentEvent, ChatEvent, ConnectionLost, EventBus, EventSubscription
from .registry import GatewayRegistry

__all__ = [
    "AgentEvent",
    "ChatEvent",
    "ConnectionLost",
    "EventBus",
    "EventSubscription",
    "GatewayClient",
    "GatewayConnection",
    "GatewayError",
    "GatewayNotConnected",
    "GatewayRegistry",
    "GatewayRequestError",
    "GatewayTimeout",
]
