"""WebSocket client for the agent gateway RPC and event protocol."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import uuid
from contextlib import suppress
from typing import Any, Protocol, Sequence

import websockets
from websockets.exceptions import ConnectionClosed

from .events import EventBus

logger = logging.getLogger(__name__)


PROTOCOL_VERSION = 3
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_CONNECT_TIMEOUT = 15.0
ATTACHMENT_SEND_TIMEOUT = 120.0
DEFAULT_TICK_INTERVAL = 30.0
MAX_RECONNECT_ATTEMPTS = 10
BASE_RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 32.0

OPERATOR_SCOPES = ["operator.read", "operator.write", "operator.admin"]


class GatewayError(RuntimeError):
    """Base error raised for gateway failures."""


class GatewayNotConnected(GatewayError):
    """Raised when a request is attempted without an open socket."""


class GatewayTimeout(GatewayError):
    """Raised when a request or handshake does not complete in time."""


class GatewayRequestError(GatewayError):
    """Raised when the gateway answers a request with ``ok: false``."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message


class GatewayConnection(Protocol):
    """What the chat engine needs from one connected gateway instance."""

    events: EventBus

    def is_connected(self) -> bool:
        ...

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        ...

    async def send_message(
        self,
        session_key: str,
        message: str,
        idempotency_key: str,
        attachments: Sequence[dict[str, Any]] | None = None,
    ) -> Any:
        ...

    async def chat_history(
        self, session_key: str, *, limit: int = 200, timeout: float | None = None
    ) -> list[dict[str, Any]]:
        ...

    async def delete_session(self, session_key: str) -> None:
        ...

    async def list_agents(self) -> list[dict[str, Any]]:
        ...


def history_messages(result: Any) -> list[dict[str, Any]]:
    """Pull the message list out of a ``chat.history`` payload."""

    if isinstance(result, dict):
        messages = result.get("messages")
    else:
        messages = result
    if not isinstance(messages, list):
        return []
    return [message for message in messages if isinstance(message, dict)]


def _loopback_origin(url: str) -> str:
    http_url = url.replace("wss://", "https://", 1).replace("ws://", "http://", 1)
    return http_url.replace("host.docker.internal", "127.0.0.1")


class GatewayClient:
    """Duplex connection to one gateway instance.

    Requests are correlated with responses by id; push events are fanned
    out through :attr:`events`. The connection authenticates by answering
    the gateway's ``connect.challenge``, watches ``tick`` events for
    liveness, and reconnects with exponential backoff until closed.
    """

    def __init__(
        self,
        url: str,
        token: str,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
        client_version: str = "0.1.0",
    ) -> None:
        self._url = url
        self._token = token
        self._request_timeout = request_timeout
        self._connect_timeout = connect_timeout
        self._max_reconnect_attempts = max_reconnect_attempts
        self._client_version = client_version

        self.events = EventBus()
        self.server_version: str | None = None
        self.status = "disconnected"

        self._ws: Any = None
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._handshake: asyncio.Future[Any] | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._tick_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._tick_interval = DEFAULT_TICK_INTERVAL
        self._last_tick = 0.0
        self._connected = False
        self._closing = False
        self._reconnect_attempts = 0

    @property
    def url(self) -> str:
        return self._url

    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Open the socket and complete the authentication handshake."""

        self._closing = False
        try:
            await self._open()
        except Exception:
            self._schedule_reconnect()
            raise

    async def close(self) -> None:
        """Shut the connection down without reconnecting."""

        self._closing = True
        for task in (self._reconnect_task, self._tick_task):
            if task is not None and not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._reconnect_task = None
        self._tick_task = None
        self._fail_pending(GatewayNotConnected("Client disconnected"))
        ws = self._ws
        if ws is not None:
            with suppress(Exception):
                await ws.close()
        if self._reader_task is not None:
            with suppress(asyncio.CancelledError, Exception):
                await self._reader_task
            self._reader_task = None
        self._ws = None
        self._connected = False
        self.status = "disconnected"

    async def request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send a request frame and wait for its response payload."""

        ws = self._ws
        if ws is None:
            raise GatewayNotConnected("WebSocket is not connected")

        effective_timeout = timeout if timeout is not None else self._request_timeout
        request_id = str(uuid.uuid4())
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        frame: dict[str, Any] = {"type": "req", "id": request_id, "method": method}
        if params is not None:
            frame["params"] = params

        try:
            await ws.send(json.dumps(frame))
            return await asyncio.wait_for(future, timeout=effective_timeout)
        except asyncio.TimeoutError as exc:
            raise GatewayTimeout(
                f"Request {method} (id={request_id}) timed out after {effective_timeout}s"
            ) from exc
        except ConnectionClosed as exc:
            raise GatewayNotConnected(f"Connection closed during {method}") from exc
        finally:
            self._pending.pop(request_id, None)

    async def send_message(
        self,
        session_key: str,
        message: str,
        idempotency_key: str,
        attachments: Sequence[dict[str, Any]] | None = None,
    ) -> Any:
        params: dict[str, Any] = {
            "sessionKey": session_key,
            "message": message,
            "idempotencyKey": idempotency_key,
        }
        timeout: float | None = None
        if attachments:
            # Base64 payloads make for large frames
            params["attachments"] = list(attachments)
            timeout = ATTACHMENT_SEND_TIMEOUT
        return await self.request("chat.send", params, timeout=timeout)

    async def chat_history(
        self, session_key: str, *, limit: int = 200, timeout: float | None = None
    ) -> list[dict[str, Any]]:
        result = await self.request(
            "chat.history", {"sessionKey": session_key, "limit": limit}, timeout=timeout
        )
        return history_messages(result)

    async def delete_session(self, session_key: str) -> None:
        await self.request("sessions.delete", {"key": session_key})

    async def list_agents(self) -> list[dict[str, Any]]:
        result = await self.request("agents.list")
        if isinstance(result, dict):
            result = result.get("agents")
        if not isinstance(result, list):
            return []
        return [agent for agent in result if isinstance(agent, dict)]

    # ------------------------------------------------------------------
    # Connection management

    async def _open(self) -> None:
        self.status = "connecting"
        try:
            await asyncio.wait_for(self._establish(), timeout=self._connect_timeout)
        except asyncio.TimeoutError as exc:
            await self._drop_socket(4001, "connect timeout")
            self.status = "disconnected"
            raise GatewayTimeout("Connect handshake timed out") from exc
        except Exception:
            await self._drop_socket(1008, "connect failed")
            self.status = "disconnected"
            raise

    async def _establish(self) -> None:
        loop = asyncio.get_running_loop()
        self._handshake = loop.create_future()
        ws = await websockets.connect(
            self._url,
            origin=_loopback_origin(self._url),  # type: ignore[arg-type]
            max_size=None,
        )
        self._ws = ws
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        hello = await self._handshake
        self._on_hello(hello)

    def _on_hello(self, payload: Any) -> None:
        self._connected = True
        self._reconnect_attempts = 0
        self.status = "connected"
        if isinstance(payload, dict):
            server = payload.get("server")
            if isinstance(server, dict):
                version = server.get("version")
                if isinstance(version, str) and version:
                    self.server_version = version
            policy = payload.get("policy")
            if isinstance(policy, dict):
                interval_ms = policy.get("tickIntervalMs")
                if isinstance(interval_ms, (int, float)) and interval_ms > 0:
                    self._tick_interval = interval_ms / 1000.0
        self._last_tick = asyncio.get_running_loop().time()
        if self._tick_task is not None:
            self._tick_task.cancel()
        self._tick_task = asyncio.create_task(self._watch_ticks(self._ws))
        logger.info(
            "Connected to gateway %s (server version %s)",
            self._url,
            self.server_version or "unknown",
        )

    async def _send_connect(self) -> None:
        handshake = self._handshake
        params = {
            "minProtocol": PROTOCOL_VERSION,
            "maxProtocol": PROTOCOL_VERSION,
            "client": {
                "id": "agent-console",
                "version": self._client_version,
                "platform": sys.platform,
                "mode": "backend",
            },
            "auth": {"token": self._token},
            "scopes": OPERATOR_SCOPES,
            "caps": [],
        }
        try:
            hello = await self.request("connect", params)
        except Exception as exc:
            if handshake is not None and not handshake.done():
                handshake.set_exception(exc)
            return
        if handshake is not None and not handshake.done():
            handshake.set_result(hello)

    async def _read_loop(self, ws: Any) -> None:
        reason = "Gateway connection closed"
        try:
            async for raw in ws:
                self._handle_frame(raw)
        except ConnectionClosed as exc:
            reason = f"Gateway connection closed: {exc}"
        finally:
            self._on_socket_closed(ws, reason)

    def _handle_frame(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring malformed gateway frame")
            return
        if not isinstance(message, dict):
            return

        kind = message.get("type")
        if kind == "res":
            self._handle_response(message)
        elif kind == "event":
            self._handle_event(message)

    def _handle_response(self, message: dict[str, Any]) -> None:
        future = self._pending.get(str(message.get("id")))
        if future is None or future.done():
            return
        if message.get("ok"):
            future.set_result(message.get("payload"))
            return
        error = message.get("error")
        if not isinstance(error, dict):
            error = {}
        future.set_exception(
            GatewayRequestError(
                str(error.get("code") or "UNKNOWN"),
                str(error.get("message") or "Unknown gateway error"),
            )
        )

    def _handle_event(self, message: dict[str, Any]) -> None:
        name = message.get("event")
        if name == "connect.challenge":
            self._connect_task = asyncio.create_task(self._send_connect())
            return
        if name == "tick":
            self._last_tick = asyncio.get_running_loop().time()
            return
        if isinstance(name, str):
            self.events.publish(name, message.get("payload"))

    def _on_socket_closed(self, ws: Any, reason: str) -> None:
        if ws is not self._ws:
            return
        was_connected = self._connected
        self._ws = None
        self._connected = False
        if self._tick_task is not None:
            self._tick_task.cancel()
            self._tick_task = None
        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(
                GatewayNotConnected("WebSocket closed before handshake completed")
            )
        self._fail_pending(GatewayNotConnected(reason))
        self.events.broadcast_disconnect(reason)
        if self._closing:
            return
        self.status = "disconnected"
        if was_connected:
            logger.warning("Gateway %s disconnected: %s", self._url, reason)
        self._schedule_reconnect()

    async def _watch_ticks(self, ws: Any) -> None:
        loop = asyncio.get_running_loop()
        interval = max(self._tick_interval, 1.0)
        while True:
            await asyncio.sleep(interval)
            if loop.time() - self._last_tick > self._tick_interval * 2:
                logger.warning("Gateway %s missed ticks; closing socket", self._url)
                with suppress(Exception):
                    await ws.close(4000, "tick timeout")
                return

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self._closing and not self._connected:
            if self._reconnect_attempts >= self._max_reconnect_attempts:
                self.status = "error"
                logger.error(
                    "Gateway %s unreachable after %d reconnect attempts",
                    self._url,
                    self._reconnect_attempts,
                )
                return
            delay = min(
                BASE_RECONNECT_DELAY * 2**self._reconnect_attempts,
                MAX_RECONNECT_DELAY,
            )
            self._reconnect_attempts += 1
            await asyncio.sleep(delay)
            if self._closing:
                return
            try:
                await self._open()
            except Exception as exc:
                logger.debug(
                    "Reconnect attempt %d to %s failed: %s",
                    self._reconnect_attempts,
                    self._url,
                    exc,
                )

    async def _drop_socket(self, code: int, reason: str) -> None:
        ws = self._ws
        if ws is None:
            return
        with suppress(Exception):
            await ws.close(code, reason)

    def _fail_pending(self, exc: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(exc)


__all__ = [
    "ATTACHMENT_SEND_TIMEOUT",
    "GatewayClient",
    "GatewayConnection",
    "GatewayError",
    "GatewayNotConnected",
    "GatewayRequestError",
    "GatewayTimeout",
    "history_messages",
]
