"""Typed gateway events and the per-connection publish/subscribe bus."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Union

from ..chat.content import MessageContent, message_content, normalize_message_content

logger = logging.getLogger(__name__)


CHAT_CHANNEL = "chat"
AGENT_CHANNEL = "agent"


@dataclass(frozen=True)
class ChatEvent:
    """A ``chat`` push event: streaming state of one run's assistant message."""

    run_id: str | None
    state: str
    content: MessageContent = ""
    session_key: str | None = None
    error_message: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChatEvent":
        error_message = payload.get("errorMessage")
        return cls(
            run_id=_optional_str(payload.get("runId")),
            state=str(payload.get("state") or ""),
            content=normalize_message_content(message_content(payload.get("message"))),
            session_key=_optional_str(payload.get("sessionKey")),
            error_message=str(error_message) if error_message is not None else None,
        )


@dataclass(frozen=True)
class AgentEvent:
    """An ``agent`` push event, e.g. tool lifecycle notifications."""

    run_id: str | None
    stream: str | None
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AgentEvent":
        data = payload.get("data")
        return cls(
            run_id=_optional_str(payload.get("runId")),
            stream=_optional_str(payload.get("stream")),
            data=data if isinstance(data, dict) else {},
        )


@dataclass(frozen=True)
class ConnectionLost:
    """Delivered to every subscriber when the gateway socket goes away."""

    reason: str


GatewayEvent = Union[ChatEvent, AgentEvent, ConnectionLost]


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def parse_event(channel: str, payload: Any) -> ChatEvent | AgentEvent | None:
    if not isinstance(payload, dict):
        return None
    if channel == CHAT_CHANNEL:
        return ChatEvent.from_payload(payload)
    if channel == AGENT_CHANNEL:
        return AgentEvent.from_payload(payload)
    return None


_CLOSED = object()


class EventSubscription:
    """Async stream of gateway events for one consumer.

    Use it as an async context manager so the subscription is released
    exactly once, whatever way the consumer exits.
    """

    def __init__(self, bus: "EventBus", channels: Iterable[str]) -> None:
        self._bus = bus
        self.channels = frozenset(channels)
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: GatewayEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    async def get(self) -> GatewayEvent | None:
        """Return the next event, or ``None`` once the subscription is closed."""

        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus.discard(self)
        self._queue.put_nowait(_CLOSED)

    async def __aenter__(self) -> "EventSubscription":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> GatewayEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class EventBus:
    """Fan gateway push events out to subscribers."""

    def __init__(self) -> None:
        self._subscribers: set[EventSubscription] = set()

    def __len__(self) -> int:
        return len(self._subscribers)

    def subscribe(
        self, channels: Iterable[str] = (CHAT_CHANNEL, AGENT_CHANNEL)
    ) -> EventSubscription:
        subscription = EventSubscription(self, channels)
        self._subscribers.add(subscription)
        return subscription

    def discard(self, subscription: EventSubscription) -> None:
        self._subscribers.discard(subscription)

    def publish(self, channel: str, payload: Any) -> None:
        event = parse_event(channel, payload)
        if event is None:
            return
        for subscription in list(self._subscribers):
            if channel in subscription.channels:
                subscription.deliver(event)

    def broadcast_disconnect(self, reason: str) -> None:
        event = ConnectionLost(reason)
        for subscription in list(self._subscribers):
            subscription.deliver(event)


__all__ = [
    "AGENT_CHANNEL",
    "AgentEvent",
    "CHAT_CHANNEL",
    "ChatEvent",
    "ConnectionLost",
    "EventBus",
    "EventSubscription",
    "GatewayEvent",
    "parse_event",
]
