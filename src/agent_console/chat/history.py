"""Rebuild displayable conversation history from snapshots and the gateway."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Sequence

from ..gateway.client import GatewayConnection
from ..repository import ChatRepository, ChatSessionRecord, SnapshotRecord, SnapshotRow
from .archiver import tool_call_from_result
from .content import (
    extract_content_blocks,
    extract_text,
    extract_thinking,
    image_content_block,
    recover_text_from_thinking,
    strip_final_tags,
    strip_user_metadata,
)
from .media import (
    MediaLocator,
    extract_file_protocol_paths,
    extract_media_paths,
    mime_type_for,
    strip_media_references,
)

logger = logging.getLogger(__name__)


LIVE_HISTORY_LIMIT = 200
LIVE_HISTORY_TIMEOUT = 10.0
STALE_SESSION_AGE = timedelta(seconds=30)

ChatMessage = dict[str, Any]


@dataclass(frozen=True)
class PendingImage:
    message_index: int
    path: str


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def transform_history(
    messages: Sequence[dict[str, Any]], *, collect_media: bool = True
) -> tuple[list[ChatMessage], list[PendingImage]]:
    """Convert raw gateway history into client chat messages.

    With ``collect_media`` the server-local image references are stripped
    from assistant text and returned as pending loads instead.
    """

    result: list[ChatMessage] = []
    pending: list[PendingImage] = []

    for message in messages:
        role = message.get("role")
        content = message.get("content")
        if role == "user":
            entry: ChatMessage = {
                "id": str(uuid.uuid4()),
                "role": "user",
                "content": strip_user_metadata(extract_text(content)),
                "createdAt": _now_iso(),
            }
            blocks = extract_content_blocks(content)
            if blocks:
                entry["contentBlocks"] = blocks
            result.append(entry)
        elif role == "assistant":
            raw_text = extract_text(content)
            visible = strip_media_references(raw_text) if collect_media else raw_text
            text, thinking = recover_text_from_thinking(
                strip_final_tags(visible), extract_thinking(content)
            )
            entry = {
                "id": str(uuid.uuid4()),
                "role": "assistant",
                "content": text,
                "createdAt": _now_iso(),
            }
            blocks = extract_content_blocks(content)
            if blocks:
                entry["contentBlocks"] = blocks
            if thinking:
                entry["thinking"] = thinking
            result.append(entry)
            if collect_media:
                for path in extract_file_protocol_paths(raw_text):
                    pending.append(PendingImage(len(result) - 1, path))
        elif role == "toolResult":
            if not result or result[-1]["role"] != "assistant":
                continue
            call = tool_call_from_result(message)
            result[-1]["toolCalls"] = [*result[-1].get("toolCalls", []), call]
            if collect_media:
                for path in extract_media_paths(call["toolOutput"]):
                    pending.append(PendingImage(len(result) - 1, path))

    # Assistant text that accompanies tool calls is narration, not an answer
    for entry in result:
        if entry["role"] == "assistant" and entry.get("toolCalls") and entry["content"]:
            narration = entry["content"]
            existing = entry.get("thinking")
            entry["thinking"] = f"{narration}\n\n{existing}" if existing else narration
            entry["content"] = ""

    return result, pending


def group_snapshots(records: Sequence[SnapshotRecord]) -> list[dict[str, Any]]:
    """Group stored snapshot rows into batches, preserving query order."""

    batches: dict[str, dict[str, Any]] = {}
    for record in records:
        batch = batches.get(record["batch_id"])
        if batch is None:
            batch = {
                "batchId": record["batch_id"],
                "createdAt": record["created_at"],
                "messages": [],
            }
            batches[record["batch_id"]] = batch
        entry: ChatMessage = {
            "id": record["id"],
            "role": record["role"],
            "content": record["content"],
            "createdAt": record["created_at"],
        }
        if record["content_blocks"]:
            entry["contentBlocks"] = record["content_blocks"]
        if record["thinking"]:
            entry["thinking"] = record["thinking"]
        if record["tool_calls"]:
            entry["toolCalls"] = record["tool_calls"]
        batch["messages"].append(entry)
    return list(batches.values())


def rows_from_messages(messages: Sequence[ChatMessage]) -> list[SnapshotRow]:
    conversational = [m for m in messages if m.get("role") in ("user", "assistant")]
    return [
        SnapshotRow(
            role=message["role"],
            content=str(message.get("content") or ""),
            order_index=index,
            content_blocks=message.get("contentBlocks"),
            thinking=message.get("thinking"),
            tool_calls=message.get("toolCalls"),
        )
        for index, message in enumerate(conversational)
    ]


class ChatHistoryService:
    """Serve session history and keep the post-run live snapshot current."""

    def __init__(
        self,
        repository: ChatRepository,
        media: MediaLocator,
        *,
        stale_after: timedelta = STALE_SESSION_AGE,
    ) -> None:
        self._repo = repository
        self._media = media
        self._stale_after = stale_after

    async def save_live_snapshot(
        self, session_id: str, client: GatewayConnection, session_key: str
    ) -> None:
        """Store the transformed live history on the session row."""

        messages = await client.chat_history(
            session_key, limit=LIVE_HISTORY_LIMIT, timeout=LIVE_HISTORY_TIMEOUT
        )
        if not messages:
            return
        live, _ = transform_history(messages, collect_media=False)
        await self._repo.save_live_messages(session_id, live)

    async def load(
        self, session: ChatSessionRecord, client: GatewayConnection | None
    ) -> dict[str, Any]:
        snapshots = group_snapshots(await self._repo.get_snapshots(session.id))
        current: list[ChatMessage] = []
        is_active = session.is_active
        connection_status = "ok"

        if session.is_active:
            if client is None:
                connection_status = "unreachable"
            else:
                try:
                    raw = await client.chat_history(
                        session.session_key,
                        limit=LIVE_HISTORY_LIMIT,
                        timeout=LIVE_HISTORY_TIMEOUT,
                    )
                except Exception as exc:
                    logger.warning(
                        "Live history unavailable for session %s: %s", session.id, exc
                    )
                    connection_status = "unreachable"
                else:
                    current, pending = transform_history(raw)
                    await self._attach_images(current, pending)
                    if not current and self._is_stale(session):
                        recovered = await self._recover_stale(session)
                        if recovered is not None:
                            snapshots.append(recovered)
                        is_active = False

        response: dict[str, Any] = {
            "snapshots": snapshots,
            "currentMessages": current,
            "isActive": is_active,
        }
        if connection_status != "ok":
            response["connectionStatus"] = connection_status
        return response

    def _is_stale(self, session: ChatSessionRecord) -> bool:
        # Brand-new sessions may not have reached the gateway yet
        created = session.created_datetime
        if created is None:
            return False
        return datetime.now(timezone.utc) - created > self._stale_after

    async def _recover_stale(self, session: ChatSessionRecord) -> dict[str, Any] | None:
        """Promote stored live messages of a vanished remote session."""

        recovered: dict[str, Any] | None = None
        if session.live_messages:
            recovered = {
                "batchId": f"recovered-{session.id}",
                "createdAt": session.updated_at,
                "messages": session.live_messages,
            }
            try:
                await self._repo.add_snapshot_batch(
                    session.id, rows_from_messages(session.live_messages)
                )
            except Exception as exc:
                logger.warning(
                    "Could not persist recovered messages for session %s: %s",
                    session.id,
                    exc,
                )
        logger.info("Remote session for %s is gone; deactivating", session.id)
        await self._repo.deactivate_session(session.id)
        return recovered

    async def _attach_images(
        self, messages: list[ChatMessage], pending: Sequence[PendingImage]
    ) -> None:
        if not pending:
            return
        loaded = await asyncio.gather(
            *(self._media.read_data_url(item.path) for item in pending)
        )
        for item, data_url in zip(pending, loaded):
            if data_url is None:
                continue
            message = messages[item.message_index]
            if message["role"] != "assistant":
                continue
            message["contentBlocks"] = [
                *message.get("contentBlocks", []),
                image_content_block(data_url, mime_type_for(item.path) or "image/png"),
            ]


__all__ = [
    "ChatHistoryService",
    "PendingImage",
    "group_snapshots",
    "rows_from_messages",
    "transform_history",
]
