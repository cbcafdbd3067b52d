"""Integration tests for the chat orchestrator wiring."""

from __future__ import annotations

import asyncio

import pytest

from agent_console.chat.orchestrator import (
    ChatOrchestrator,
    SessionAccessDenied,
    SessionArchived,
    SessionNotFound,
)
from agent_console.config import GatewayInstanceConfig, Settings
from agent_console.gateway.client import GatewayNotConnected, GatewayTimeout
from agent_console.gateway.registry import GatewayRegistry
from agent_console.schemas.chat import (
    ChatAttachment,
    NewConversationRequest,
    SendMessageRequest,
)
from agent_console.services.workspace import LocalWorkspaceFiles
from fakes import FakeGateway

HISTORY = [
    {"role": "user", "content": "[2024-01-01 10:00:00 UTC] hello"},
    {"role": "assistant", "content": "Hi there"},
]


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        chat_database_path=tmp_path / "chat.db",
        media_allowed_dirs=[str(tmp_path)],
        workspace_root=tmp_path / "workspace",
        gateway_instances=[],
    )


@pytest.fixture
def gateway() -> FakeGateway:
    gateway = FakeGateway(history=HISTORY, agents=[{"id": "main", "name": "Main"}])

    def reply(run_id: str) -> None:
        gateway.chat(run_id, "delta", "Hi")
        gateway.chat(run_id, "final", "Hi there")

    gateway.on_send = reply
    return gateway


@pytest.fixture
async def orchestrator(settings, gateway, tmp_path):
    registry = GatewayRegistry()
    registry.register("inst-1", gateway)
    orchestrator = ChatOrchestrator(
        settings,
        registry,
        workspace=LocalWorkspaceFiles(settings.workspace_root),
    )
    await orchestrator.initialize()
    try:
        yield orchestrator
    finally:
        await orchestrator.shutdown()


def _request(**overrides) -> SendMessageRequest:
    fields = {"instanceId": "inst-1", "agentId": "main", "message": "hello"}
    fields.update(overrides)
    return SendMessageRequest.model_validate(fields)


async def _drain(orchestrator: ChatOrchestrator, request: SendMessageRequest) -> list[dict]:
    stream = await orchestrator.open_stream("user-1", request)
    return [event.to_payload() async for event in stream]


@pytest.mark.anyio
async def test_open_stream_relays_run_and_stores_live_snapshot(orchestrator, gateway):
    events = await _drain(orchestrator, _request())

    session_id = events[0]["sessionId"]
    assert events[0] == {"type": "session", "sessionId": session_id}
    assert events[1:] == [{"type": "text", "content": "Hi"}, {"type": "text", "content": " there"}, {"type": "done"}]
    sent = gateway.sent[0]
    assert sent["sessionKey"] == "agent:main:tc:user-1"
    assert sent["message"] == "hello"
    assert sent["attachments"] is None
    assert len(sent["idempotencyKey"]) == 32

    await asyncio.gather(*list(orchestrator._background))
    session = await orchestrator.repository.get_session(session_id)
    assert session is not None
    assert session.message_count == 1
    assert [m["content"] for m in session.live_messages or []] == ["hello", "Hi there"]


@pytest.mark.anyio
async def test_open_stream_forwards_uploads_and_session_images(orchestrator, gateway, settings):
    first = await _drain(orchestrator, _request())
    session_id = first[0]["sessionId"]
    input_dir = settings.workspace_root / "main" / "sessions" / session_id / "input"
    (input_dir / "drop.png").write_bytes(b"png")
    upload = ChatAttachment(name="a.txt", content="YQ==", mime_type="text/plain")

    await _drain(orchestrator, _request(attachments=[upload.model_dump(by_alias=True)]))

    attachments = gateway.sent[1]["attachments"]
    assert [a["fileName"] for a in attachments] == ["a.txt", "drop.png"]
    assert attachments[1]["mimeType"] == "image/png"


@pytest.mark.anyio
async def test_open_stream_requires_connected_instance(orchestrator):
    with pytest.raises(GatewayNotConnected):
        await orchestrator.open_stream("user-1", _request(instanceId="inst-2"))
    assert await orchestrator.list_sessions("user-1") == []


@pytest.mark.anyio
async def test_new_conversation_archives_active_session(orchestrator, gateway):
    first = await _drain(orchestrator, _request())
    old_id = first[0]["sessionId"]

    created = await orchestrator.new_conversation(
        "user-1", NewConversationRequest(instanceId="inst-1", agentId="main")
    )

    assert created["id"] != old_id
    assert created["isActive"] is True
    assert created["messageCount"] == 0
    assert gateway.deleted == ["agent:main:tc:user-1"]
    sessions = {s["id"]: s for s in await orchestrator.list_sessions("user-1")}
    assert sessions[old_id]["isActive"] is False
    assert sessions[old_id]["title"] == "hello"


@pytest.mark.anyio
async def test_sending_with_archived_session_id_resumes_it(orchestrator, gateway):
    first = await _drain(orchestrator, _request())
    old_id = first[0]["sessionId"]
    created = await orchestrator.new_conversation(
        "user-1", NewConversationRequest(instanceId="inst-1", agentId="main")
    )

    events = await _drain(orchestrator, _request(sessionId=old_id))

    assert events[0]["sessionId"] == old_id
    sessions = {s["id"]: s for s in await orchestrator.list_sessions("user-1")}
    assert sessions[old_id]["isActive"] is True
    assert sessions[created["id"]]["isActive"] is False


@pytest.mark.anyio
async def test_history_access_rules(orchestrator):
    first = await _drain(orchestrator, _request())
    session_id = first[0]["sessionId"]

    history = await orchestrator.get_history("user-1", session_id)
    assert history["isActive"] is True
    assert [m["role"] for m in history["currentMessages"]] == ["user", "assistant"]

    with pytest.raises(SessionNotFound):
        await orchestrator.get_history("user-1", "missing")
    with pytest.raises(SessionAccessDenied):
        await orchestrator.get_history("user-2", session_id)


@pytest.mark.anyio
async def test_clear_context_keeps_session_active(orchestrator, gateway):
    first = await _drain(orchestrator, _request())
    session_id = first[0]["sessionId"]

    await orchestrator.clear_context("user-1", session_id)

    history = await orchestrator.get_history("user-1", session_id)
    assert history["isActive"] is True
    assert len(history["snapshots"]) == 1
    assert gateway.deleted == ["agent:main:tc:user-1"]


@pytest.mark.anyio
async def test_clear_context_errors(orchestrator, gateway):
    first = await _drain(orchestrator, _request())
    session_id = first[0]["sessionId"]

    gateway.delete_error = GatewayTimeout("slow")
    with pytest.raises(GatewayTimeout):
        await orchestrator.clear_context("user-1", session_id)

    gateway.delete_error = None
    await orchestrator.new_conversation(
        "user-1", NewConversationRequest(instanceId="inst-1", agentId="main")
    )
    with pytest.raises(SessionArchived):
        await orchestrator.clear_context("user-1", session_id)


@pytest.mark.anyio
async def test_delete_session_is_best_effort_remotely(orchestrator, gateway):
    first = await _drain(orchestrator, _request())
    session_id = first[0]["sessionId"]
    gateway.delete_error = GatewayTimeout("gone")

    await orchestrator.delete_session("user-1", session_id)

    assert await orchestrator.list_sessions("user-1") == []
    with pytest.raises(SessionNotFound):
        await orchestrator.delete_session("user-1", session_id)


@pytest.mark.anyio
async def test_list_agents_spans_connected_instances(settings, tmp_path):
    settings.gateway_instances = [
        GatewayInstanceConfig(id="inst-1", url="ws://a", name="Home"),
    ]
    registry = GatewayRegistry()
    registry.register("inst-1", FakeGateway(agents=[{"id": "main", "model": "m1"}, {"name": "nameless"}]))
    registry.register("inst-2", FakeGateway(agents=[{"id": "ops", "name": "Ops", "status": "idle"}]))
    registry.register("inst-3", FakeGateway(agents=[{"id": "x"}], connected=False))
    orchestrator = ChatOrchestrator(settings, registry)

    agents = await orchestrator.list_agents()

    assert agents == [
        {
            "instanceId": "inst-1",
            "instanceName": "Home",
            "agentId": "main",
            "agentName": "main",
            "status": "active",
            "model": "m1",
        },
        {
            "instanceId": "inst-2",
            "instanceName": "inst-2",
            "agentId": "ops",
            "agentName": "Ops",
            "status": "idle",
            "model": None,
        },
    ]
