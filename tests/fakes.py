"""In-memory gateway used by the chat engine tests."""

from __future__ import annotations

import inspect
from typing import Any, Callable, Sequence

from agent_console.gateway.events import AGENT_CHANNEL, CHAT_CHANNEL, EventBus


class FakeGateway:
    """Implements the gateway connection protocol on top of a real EventBus."""

    def __init__(
        self,
        *,
        history: Sequence[dict[str, Any]] | None = None,
        agents: Sequence[dict[str, Any]] | None = None,
        connected: bool = True,
    ) -> None:
        self.events = EventBus()
        self.history = list(history or [])
        self.agents = list(agents or [])
        self.connected = connected
        self.sent: list[dict[str, Any]] = []
        self.deleted: list[str] = []
        self.history_calls: list[dict[str, Any]] = []
        self.on_send: Callable[[str], Any] | None = None
        self.send_error: Exception | None = None
        self.history_error: Exception | None = None
        self.delete_error: Exception | None = None
        self.closed = False

    def is_connected(self) -> bool:
        return self.connected

    async def close(self) -> None:
        self.closed = True

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        raise NotImplementedError(method)

    async def send_message(
        self,
        session_key: str,
        message: str,
        idempotency_key: str,
        attachments: Sequence[dict[str, Any]] | None = None,
    ) -> Any:
        self.sent.append(
            {
                "sessionKey": session_key,
                "message": message,
                "idempotencyKey": idempotency_key,
                "attachments": list(attachments) if attachments else None,
            }
        )
        if self.send_error is not None:
            raise self.send_error
        if self.on_send is not None:
            result = self.on_send(idempotency_key)
            if inspect.isawaitable(result):
                await result
        return {"runId": idempotency_key, "status": "started"}

    async def chat_history(
        self, session_key: str, *, limit: int = 200, timeout: float | None = None
    ) -> list[dict[str, Any]]:
        self.history_calls.append(
            {"sessionKey": session_key, "limit": limit, "timeout": timeout}
        )
        if self.history_error is not None:
            raise self.history_error
        return list(self.history)

    async def delete_session(self, session_key: str) -> None:
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(session_key)

    async def list_agents(self) -> list[dict[str, Any]]:
        return list(self.agents)

    # Helpers for pushing events the way the gateway does

    def chat(
        self,
        run_id: str,
        state: str,
        content: Any = None,
        *,
        error_message: str | None = None,
    ) -> None:
        payload: dict[str, Any] = {"runId": run_id, "state": state}
        if content is not None:
            payload["message"] = {"role": "assistant", "content": content}
        if error_message is not None:
            payload["errorMessage"] = error_message
        self.events.publish(CHAT_CHANNEL, payload)

    def tool(self, run_id: str, phase: str, name: str | None = None, **data: Any) -> None:
        body: dict[str, Any] = {"phase": phase, **data}
        if name is not None:
            body["name"] = name
        self.events.publish(
            AGENT_CHANNEL, {"runId": run_id, "stream": "tool", "data": body}
        )
