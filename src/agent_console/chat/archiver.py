"""Snapshot a gateway conversation into permanent storage and switch sessions."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from ..gateway.client import GatewayConnection
from ..repository import ChatRepository, ChatSessionRecord, SnapshotRow
from .content import (
    extract_content_blocks,
    extract_text,
    resolve_assistant_text,
    strip_user_metadata,
)

logger = logging.getLogger(__name__)


ARCHIVE_HISTORY_LIMIT = 200
ARCHIVE_HISTORY_TIMEOUT = 30.0
TITLE_MAX_LENGTH = 50
DEFAULT_TOOL_NAME = "tool"


@dataclass
class SnapshotBatch:
    rows: list[SnapshotRow] = field(default_factory=list)
    first_user_message: str | None = None


def tool_call_from_result(message: dict[str, Any]) -> dict[str, Any]:
    """Describe a ``toolResult`` history entry as a stored tool call."""

    tool_name = message.get("toolName")
    return {
        "toolName": str(tool_name) if tool_name else DEFAULT_TOOL_NAME,
        "toolInput": None,
        "toolOutput": extract_text(message.get("content")),
    }


def build_snapshot_batch(messages: Sequence[dict[str, Any]]) -> SnapshotBatch:
    """Turn raw ``chat.history`` messages into ordered snapshot rows.

    Tool results are folded into the assistant row directly before them;
    a tool result with no preceding assistant row is dropped.
    """

    batch = SnapshotBatch()
    for message in messages:
        role = message.get("role")
        content = message.get("content")
        if role == "user":
            text = strip_user_metadata(extract_text(content))
            if batch.first_user_message is None and text:
                batch.first_user_message = text
            batch.rows.append(
                SnapshotRow(
                    role="user",
                    content=text,
                    order_index=len(batch.rows),
                    content_blocks=extract_content_blocks(content),
                )
            )
        elif role == "assistant":
            text, thinking = resolve_assistant_text(content)
            batch.rows.append(
                SnapshotRow(
                    role="assistant",
                    content=text,
                    order_index=len(batch.rows),
                    content_blocks=extract_content_blocks(content),
                    thinking=thinking or None,
                )
            )
        elif role == "toolResult":
            if not batch.rows or batch.rows[-1].role != "assistant":
                continue
            previous = batch.rows[-1]
            previous.tool_calls = [*(previous.tool_calls or []), tool_call_from_result(message)]
    return batch


class SessionArchiver:
    """Archive a session's live gateway history and manage activation."""

    def __init__(
        self,
        repository: ChatRepository,
        *,
        history_limit: int = ARCHIVE_HISTORY_LIMIT,
        history_timeout: float = ARCHIVE_HISTORY_TIMEOUT,
    ) -> None:
        self._repo = repository
        self._history_limit = history_limit
        self._history_timeout = history_timeout

    async def snapshot(
        self, session: ChatSessionRecord, client: GatewayConnection
    ) -> str | None:
        """Persist the gateway's current history of ``session`` as one batch.

        Returns the batch id, or ``None`` when there was nothing to store.
        Gateway errors propagate.
        """

        messages = await client.chat_history(
            session.session_key,
            limit=self._history_limit,
            timeout=self._history_timeout,
        )
        if not messages:
            return None

        batch = build_snapshot_batch(messages)
        batch_id: str | None = None
        if batch.rows:
            batch_id = await self._repo.add_snapshot_batch(session.id, batch.rows)
            logger.info(
                "Archived %d messages from session %s (batch %s)",
                len(batch.rows),
                session.id,
                batch_id,
            )
        if batch.first_user_message:
            await self._repo.set_title_if_missing(
                session.id, batch.first_user_message[:TITLE_MAX_LENGTH]
            )
        return batch_id

    async def reset_context(
        self, session: ChatSessionRecord, client: GatewayConnection
    ) -> None:
        """Snapshot then delete the remote session, keeping the row active."""

        await self.snapshot(session, client)
        await client.delete_session(session.session_key)

    async def archive_session(
        self,
        session: ChatSessionRecord,
        client: GatewayConnection | None,
    ) -> None:
        """Snapshot and reset the remote session, then deactivate the row.

        Gateway failures are logged and skipped so the local state change
        always happens.
        """

        if client is not None:
            try:
                await self.reset_context(session, client)
            except Exception as exc:
                logger.warning(
                    "Could not archive gateway history for session %s: %s",
                    session.id,
                    exc,
                )
        await self._repo.deactivate_session(session.id)

    async def archive_and_activate(
        self,
        user_id: str,
        instance_id: str,
        agent_id: str,
        target_session_id: str,
        client: GatewayConnection | None,
    ) -> None:
        """Archive whichever session is active and activate the target.

        Calling this when the target is already active is a no-op apart
        from re-asserting its active flag.
        """

        active = await self._repo.find_active_session(user_id, instance_id, agent_id)
        if active is not None and active.id != target_session_id:
            await self.archive_session(active, client)
        await self._repo.activate_session(target_session_id)


__all__ = [
    "SessionArchiver",
    "SnapshotBatch",
    "build_snapshot_batch",
    "tool_call_from_result",
]
