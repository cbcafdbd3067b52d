"""Gateway client tests against a local WebSocket server."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import pytest
import websockets

from agent_console.gateway.client import (
    GatewayClient,
    GatewayNotConnected,
    GatewayRequestError,
    GatewayTimeout,
)
from agent_console.gateway.events import ChatEvent, ConnectionLost


class FakeGatewayServer:
    """Speaks just enough of the gateway protocol for the client."""

    def __init__(self, *, reject_connect: bool = False) -> None:
        self.reject_connect = reject_connect
        self.requests: list[dict[str, Any]] = []

    async def handler(self, ws: Any) -> None:
        await ws.send(json.dumps({"type": "event", "event": "connect.challenge", "payload": {"nonce": "n"}}))
        async for raw in ws:
            frame = json.loads(raw)
            self.requests.append(frame)
            method = frame.get("method")
            if method == "connect":
                if self.reject_connect:
                    await self._fail(ws, frame, "AUTH", "bad token")
                else:
                    await self._ok(
                        ws,
                        frame,
                        {
                            "type": "hello-ok",
                            "server": {"version": "1.2.3"},
                            "policy": {"tickIntervalMs": 30000},
                        },
                    )
            elif method == "chat.history":
                await self._ok(
                    ws,
                    frame,
                    {"messages": [{"role": "user", "content": "hi"}, "junk"]},
                )
            elif method == "chat.send":
                run_id = frame["params"]["idempotencyKey"]
                await self._ok(ws, frame, {"runId": run_id, "status": "started"})
                await ws.send("not json")
                await ws.send(json.dumps({"type": "event", "event": "tick", "payload": {}}))
                await ws.send(
                    json.dumps(
                        {
                            "type": "event",
                            "event": "chat",
                            "payload": {
                                "runId": run_id,
                                "state": "final",
                                "message": {"role": "assistant", "content": "pong"},
                            },
                        }
                    )
                )
            elif method == "agents.list":
                await self._ok(ws, frame, {"agents": [{"id": "main"}, "skip"]})
            elif method == "sessions.delete":
                await self._fail(ws, frame, "NOT_FOUND", "no such session")
            # anything else is left unanswered

    async def _ok(self, ws: Any, frame: dict[str, Any], payload: Any) -> None:
        await ws.send(json.dumps({"type": "res", "id": frame["id"], "ok": True, "payload": payload}))

    async def _fail(self, ws: Any, frame: dict[str, Any], code: str, message: str) -> None:
        await ws.send(
            json.dumps(
                {
                    "type": "res",
                    "id": frame["id"],
                    "ok": False,
                    "error": {"code": code, "message": message},
                }
            )
        )


@asynccontextmanager
async def running(server: FakeGatewayServer) -> AsyncIterator[str]:
    async with websockets.serve(server.handler, "127.0.0.1", 0) as ws_server:
        port = list(ws_server.sockets)[0].getsockname()[1]
        yield f"ws://127.0.0.1:{port}"


def _client(url: str) -> GatewayClient:
    return GatewayClient(
        url,
        "secret-token",
        request_timeout=2.0,
        connect_timeout=2.0,
        max_reconnect_attempts=0,
    )


@pytest.mark.anyio
async def test_handshake_and_requests() -> None:
    server = FakeGatewayServer()
    async with running(server) as url:
        client = _client(url)
        await client.connect()
        try:
            assert client.is_connected()
            assert client.status == "connected"
            assert client.server_version == "1.2.3"
            connect = server.requests[0]
            assert connect["method"] == "connect"
            assert connect["params"]["auth"] == {"token": "secret-token"}
            assert connect["params"]["minProtocol"] == 3

            assert await client.chat_history("agent:main:tc:u", limit=5) == [
                {"role": "user", "content": "hi"}
            ]
            assert server.requests[-1]["params"] == {"sessionKey": "agent:main:tc:u", "limit": 5}
            assert await client.list_agents() == [{"id": "main"}]

            with pytest.raises(GatewayRequestError) as excinfo:
                await client.delete_session("agent:main:tc:u")
            assert excinfo.value.code == "NOT_FOUND"
            assert str(excinfo.value) == "[NOT_FOUND] no such session"

            with pytest.raises(GatewayTimeout):
                await client.request("never.answered", timeout=0.1)
        finally:
            await client.close()
        assert not client.is_connected()


@pytest.mark.anyio
async def test_push_events_reach_subscribers() -> None:
    server = FakeGatewayServer()
    async with running(server) as url:
        client = _client(url)
        await client.connect()
        subscription = client.events.subscribe()
        try:
            ack = await client.send_message("agent:main:tc:u", "ping", "run-7")
            event = await asyncio.wait_for(subscription.get(), timeout=2.0)
        finally:
            await client.close()

        assert ack == {"runId": "run-7", "status": "started"}
        assert server.requests[-1]["params"] == {
            "sessionKey": "agent:main:tc:u",
            "message": "ping",
            "idempotencyKey": "run-7",
        }
        assert isinstance(event, ChatEvent)
        assert event.run_id == "run-7"
        assert event.state == "final"
        assert isinstance(await subscription.get(), ConnectionLost)


@pytest.mark.anyio
async def test_rejected_handshake_raises() -> None:
    server = FakeGatewayServer(reject_connect=True)
    async with running(server) as url:
        client = _client(url)
        try:
            with pytest.raises(GatewayRequestError):
                await client.connect()
            assert not client.is_connected()
        finally:
            await client.close()


@pytest.mark.anyio
async def test_request_without_socket() -> None:
    client = _client("ws://127.0.0.1:9")
    with pytest.raises(GatewayNotConnected):
        await client.request("chat.history")
