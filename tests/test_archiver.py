from __future__ import annotations

import pytest

from agent_console.chat.archiver import SessionArchiver, build_snapshot_batch
from agent_console.gateway.client import GatewayTimeout
from agent_console.repository import ChatRepository
from fakes import FakeGateway

KEY = "agent:main:tc:user-1"

HISTORY = [
    {"role": "user", "content": "[2024-01-01 10:00:00 UTC] What is in the report?"},
    {
        "role": "assistant",
        "content": [
            {"type": "thinking", "thinking": "check the file"},
            {"type": "text", "text": "<final>Let me look.</final>"},
        ],
    },
    {
        "role": "toolResult",
        "toolName": "read_file",
        "content": [{"type": "text", "text": "Quarterly numbers"}],
    },
]


@pytest.fixture
async def repository(tmp_path):
    repo = ChatRepository(tmp_path / "chat.db")
    await repo.initialize()
    try:
        yield repo
    finally:
        await repo.close()


class TestBuildSnapshotBatch:
    def test_tool_result_folds_into_previous_assistant(self) -> None:
        batch = build_snapshot_batch(HISTORY)

        assert [row.role for row in batch.rows] == ["user", "assistant"]
        assert [row.order_index for row in batch.rows] == [0, 1]
        assert batch.rows[0].content == "What is in the report?"
        assert batch.first_user_message == "What is in the report?"
        assistant = batch.rows[1]
        assert assistant.content == "Let me look."
        assert assistant.thinking == "check the file"
        assert assistant.tool_calls == [
            {"toolName": "read_file", "toolInput": None, "toolOutput": "Quarterly numbers"}
        ]

    def test_orphan_tool_result_is_dropped(self) -> None:
        batch = build_snapshot_batch([{"role": "toolResult", "content": "x"}, {"role": "user", "content": "hi"}])
        assert [row.role for row in batch.rows] == ["user"]

    def test_tool_name_defaults(self) -> None:
        batch = build_snapshot_batch(
            [{"role": "assistant", "content": "ok"}, {"role": "toolResult", "content": "out"}]
        )
        assert batch.rows[0].tool_calls == [{"toolName": "tool", "toolInput": None, "toolOutput": "out"}]

    def test_thinking_fallback_applies_to_empty_text(self) -> None:
        batch = build_snapshot_batch(
            [{"role": "assistant", "content": [{"type": "thinking", "thinking": "<think>plan</think>Answer"}]}]
        )
        assert batch.rows[0].content == "Answer"
        assert batch.rows[0].thinking == "plan"


@pytest.mark.anyio
async def test_archive_and_activate_snapshots_active_session(repository):
    gateway = FakeGateway(history=HISTORY)
    archiver = SessionArchiver(repository)
    old = await repository.record_message("user-1", "inst-1", "main", KEY)
    current = await repository.create_active_session("user-1", "inst-1", "main", KEY)

    await archiver.archive_and_activate("user-1", "inst-1", "main", old.id, gateway)

    assert gateway.history_calls == [{"sessionKey": KEY, "limit": 200, "timeout": 30.0}]
    assert gateway.deleted == [KEY]
    rows = await repository.get_snapshots(current.id)
    assert [row["role"] for row in rows] == ["user", "assistant"]
    assert len({row["batch_id"] for row in rows}) == 1
    archived = await repository.get_session(current.id)
    assert archived is not None
    assert not archived.is_active
    assert archived.title == "What is in the report?"
    active = await repository.find_active_session("user-1", "inst-1", "main")
    assert active is not None and active.id == old.id


@pytest.mark.anyio
async def test_archive_and_activate_is_idempotent(repository):
    gateway = FakeGateway(history=HISTORY)
    archiver = SessionArchiver(repository)
    old = await repository.record_message("user-1", "inst-1", "main", KEY)
    await repository.create_active_session("user-1", "inst-1", "main", KEY)

    await archiver.archive_and_activate("user-1", "inst-1", "main", old.id, gateway)
    calls = len(gateway.history_calls)
    await archiver.archive_and_activate("user-1", "inst-1", "main", old.id, gateway)

    assert len(gateway.history_calls) == calls
    assert len(gateway.deleted) == 1
    active = await repository.find_active_session("user-1", "inst-1", "main")
    assert active is not None and active.id == old.id


@pytest.mark.anyio
async def test_gateway_failure_still_switches(repository):
    gateway = FakeGateway()
    gateway.history_error = GatewayTimeout("slow")
    archiver = SessionArchiver(repository)
    old = await repository.record_message("user-1", "inst-1", "main", KEY)
    current = await repository.create_active_session("user-1", "inst-1", "main", KEY)

    await archiver.archive_and_activate("user-1", "inst-1", "main", old.id, gateway)

    assert await repository.get_snapshots(current.id) == []
    assert gateway.deleted == []
    active = await repository.find_active_session("user-1", "inst-1", "main")
    assert active is not None and active.id == old.id


@pytest.mark.anyio
async def test_archive_without_client_only_deactivates(repository):
    archiver = SessionArchiver(repository)
    session = await repository.record_message("user-1", "inst-1", "main", KEY)
    await repository.save_live_messages(session.id, [{"role": "user", "content": "hi"}])

    await archiver.archive_session(session, None)

    stored = await repository.get_session(session.id)
    assert stored is not None
    assert not stored.is_active
    assert stored.live_messages is None


@pytest.mark.anyio
async def test_reset_context_propagates_errors_and_keeps_row_active(repository):
    gateway = FakeGateway(history=HISTORY)
    gateway.delete_error = GatewayTimeout("gone")
    archiver = SessionArchiver(repository)
    session = await repository.record_message("user-1", "inst-1", "main", KEY)

    with pytest.raises(GatewayTimeout):
        await archiver.reset_context(session, gateway)

    stored = await repository.get_session(session.id)
    assert stored is not None and stored.is_active
    assert len(await repository.get_snapshots(session.id)) == 2


@pytest.mark.anyio
async def test_empty_history_stores_nothing(repository):
    gateway = FakeGateway()
    archiver = SessionArchiver(repository)
    session = await repository.record_message("user-1", "inst-1", "main", KEY)

    assert await archiver.snapshot(session, gateway) is None
    assert await repository.get_snapshots(session.id) == []
