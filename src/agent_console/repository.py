"""SQLite-backed repository for chat sessions and archived message snapshots."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import aiosqlite

SnapshotRecord = dict[str, Any]


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _normalize_db_timestamp(value: str | None) -> str | None:
    """Convert SQLite timestamp strings to ISO8601 in UTC."""

    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return value
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    else:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.isoformat()


def _parse_db_timestamp(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _encode_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value)


def _decode_json(value: str | None) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


@dataclass
class ChatSessionRecord:
    """One conversation lineage between a user and an agent."""

    id: str
    user_id: str
    instance_id: str
    agent_id: str
    session_key: str
    title: str | None
    last_message_at: str | None
    message_count: int
    is_active: bool
    live_messages: list[dict[str, Any]] | None
    created_at: str | None
    updated_at: str | None

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "ChatSessionRecord":
        live = _decode_json(row["live_messages"])
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            instance_id=row["instance_id"],
            agent_id=row["agent_id"],
            session_key=row["session_key"],
            title=row["title"],
            last_message_at=_normalize_db_timestamp(row["last_message_at"]),
            message_count=int(row["message_count"] or 0),
            is_active=bool(row["is_active"]),
            live_messages=live if isinstance(live, list) else None,
            created_at=_normalize_db_timestamp(row["created_at"]),
            updated_at=_normalize_db_timestamp(row["updated_at"]),
        )

    @property
    def created_datetime(self) -> datetime | None:
        return _parse_db_timestamp(self.created_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "instanceId": self.instance_id,
            "agentId": self.agent_id,
            "sessionKey": self.session_key,
            "title": self.title,
            "lastMessageAt": self.last_message_at,
            "messageCount": self.message_count,
            "isActive": self.is_active,
            "createdAt": self.created_at,
        }


@dataclass
class SnapshotRow:
    """A single message ready to be archived."""

    role: str
    content: str
    order_index: int
    content_blocks: list[dict[str, Any]] | None = None
    thinking: str | None = None
    tool_calls: list[dict[str, Any]] | None = None


class ChatRepository:
    """Persist chat sessions and immutable message snapshots."""

    def __init__(self, database_path: Path):
        self._path = database_path
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Open the SQLite connection and ensure tables exist."""

        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA foreign_keys=ON;")
        await self._create_schema()

    async def _create_schema(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS chat_sessions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                instance_id TEXT NOT NULL,
                agent_id TEXT NOT NULL,
                session_key TEXT NOT NULL,
                title TEXT,
                last_message_at TEXT,
                message_count INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS message_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_session_id TEXT NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
                batch_id TEXT NOT NULL,
                order_index INTEGER NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                content_blocks TEXT,
                thinking TEXT,
                tool_calls TEXT,
                created_at TEXT NOT NULL
            );

            -- At most one active session per user, instance, and agent
            CREATE UNIQUE INDEX IF NOT EXISTS idx_chat_sessions_one_active
                ON chat_sessions(user_id, instance_id, agent_id)
                WHERE is_active = 1;
            CREATE INDEX IF NOT EXISTS idx_chat_sessions_user
                ON chat_sessions(user_id, last_message_at);
            CREATE INDEX IF NOT EXISTS idx_message_snapshots_session
                ON message_snapshots(chat_session_id, created_at, order_index);
            """
        )
        await self._connection.commit()
        await self._ensure_column("chat_sessions", "live_messages", "TEXT")

    async def _ensure_column(self, table: str, column: str, definition: str) -> None:
        """Ensure a column exists on a table, adding it if necessary."""

        assert self._connection is not None
        cursor = await self._connection.execute(f"PRAGMA table_info({table})")
        rows = await cursor.fetchall()
        await cursor.close()
        existing = {row[1] for row in rows}
        if column in existing:
            return
        await self._connection.execute(
            f"ALTER TABLE {table} ADD COLUMN {column} {definition}"
        )
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    # ------------------------------------------------------------------
    # Sessions

    async def _fetch_session(self, query: str, params: Iterable[Any]) -> ChatSessionRecord | None:
        assert self._connection is not None
        cursor = await self._connection.execute(query, tuple(params))
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return ChatSessionRecord.from_row(row)

    async def get_session(self, session_id: str) -> ChatSessionRecord | None:
        return await self._fetch_session(
            "SELECT * FROM chat_sessions WHERE id = ? LIMIT 1", (session_id,)
        )

    async def find_active_session(
        self, user_id: str, instance_id: str, agent_id: str
    ) -> ChatSessionRecord | None:
        return await self._fetch_session(
            """
            SELECT * FROM chat_sessions
            WHERE user_id = ? AND instance_id = ? AND agent_id = ? AND is_active = 1
            LIMIT 1
            """,
            (user_id, instance_id, agent_id),
        )

    async def list_sessions(
        self,
        user_id: str,
        *,
        instance_id: str | None = None,
        agent_id: str | None = None,
    ) -> list[ChatSessionRecord]:
        """Return a user's sessions, most recently used first."""

        assert self._connection is not None
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if instance_id is not None:
            clauses.append("instance_id = ?")
            params.append(instance_id)
        if agent_id is not None:
            clauses.append("agent_id = ?")
            params.append(agent_id)
        cursor = await self._connection.execute(
            f"""
            SELECT * FROM chat_sessions
            WHERE {' AND '.join(clauses)}
            ORDER BY last_message_at IS NULL, last_message_at DESC, created_at DESC
            """,
            params,
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [ChatSessionRecord.from_row(row) for row in rows]

    async def record_message(
        self,
        user_id: str,
        instance_id: str,
        agent_id: str,
        session_key: str,
    ) -> ChatSessionRecord:
        """Find or create the active session and count one more message.

        Runs as a single write transaction; the partial unique index turns a
        concurrent duplicate insert into a retry against the winning row.
        """

        for _ in range(2):
            try:
                return await self._record_message_once(
                    user_id, instance_id, agent_id, session_key
                )
            except sqlite3.IntegrityError:
                continue
        raise RuntimeError("Could not resolve active chat session")

    async def _record_message_once(
        self,
        user_id: str,
        instance_id: str,
        agent_id: str,
        session_key: str,
    ) -> ChatSessionRecord:
        assert self._connection is not None
        now = _utcnow()
        async with self._write_lock:
            try:
                existing = await self.find_active_session(user_id, instance_id, agent_id)
                if existing is not None:
                    await self._connection.execute(
                        """
                        UPDATE chat_sessions
                        SET session_key = ?, last_message_at = ?,
                            message_count = message_count + 1, updated_at = ?
                        WHERE id = ?
                        """,
                        (session_key, now, now, existing.id),
                    )
                    session_id = existing.id
                else:
                    session_id = uuid.uuid4().hex
                    await self._connection.execute(
                        """
                        INSERT INTO chat_sessions(
                            id, user_id, instance_id, agent_id, session_key,
                            last_message_at, message_count, is_active,
                            created_at, updated_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, 1, 1, ?, ?)
                        """,
                        (
                            session_id,
                            user_id,
                            instance_id,
                            agent_id,
                            session_key,
                            now,
                            now,
                            now,
                        ),
                    )
                await self._connection.commit()
            except Exception:
                await self._connection.rollback()
                raise
        record = await self.get_session(session_id)
        assert record is not None
        return record

    async def create_active_session(
        self,
        user_id: str,
        instance_id: str,
        agent_id: str,
        session_key: str,
    ) -> ChatSessionRecord:
        """Start a fresh, empty active session, deactivating any sibling."""

        assert self._connection is not None
        now = _utcnow()
        session_id = uuid.uuid4().hex
        async with self._write_lock:
            try:
                await self._connection.execute(
                    """
                    UPDATE chat_sessions
                    SET is_active = 0, live_messages = NULL, updated_at = ?
                    WHERE user_id = ? AND instance_id = ? AND agent_id = ? AND is_active = 1
                    """,
                    (now, user_id, instance_id, agent_id),
                )
                await self._connection.execute(
                    """
                    INSERT INTO chat_sessions(
                        id, user_id, instance_id, agent_id, session_key,
                        last_message_at, message_count, is_active,
                        created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, NULL, 0, 1, ?, ?)
                    """,
                    (session_id, user_id, instance_id, agent_id, session_key, now, now),
                )
                await self._connection.commit()
            except Exception:
                await self._connection.rollback()
                raise
        record = await self.get_session(session_id)
        assert record is not None
        return record

    async def activate_session(self, session_id: str) -> None:
        """Make ``session_id`` the active session of its lineage.

        Any other active session of the same user, instance, and agent is
        deactivated in the same transaction.
        """

        assert self._connection is not None
        now = _utcnow()
        async with self._write_lock:
            try:
                await self._connection.execute(
                    """
                    UPDATE chat_sessions
                    SET is_active = 0, live_messages = NULL, updated_at = ?
                    WHERE is_active = 1 AND id != ?
                      AND (user_id, instance_id, agent_id) = (
                          SELECT user_id, instance_id, agent_id
                          FROM chat_sessions WHERE id = ?
                      )
                    """,
                    (now, session_id, session_id),
                )
                await self._connection.execute(
                    "UPDATE chat_sessions SET is_active = 1, updated_at = ? WHERE id = ?",
                    (now, session_id),
                )
                await self._connection.commit()
            except Exception:
                await self._connection.rollback()
                raise

    async def deactivate_session(self, session_id: str) -> None:
        assert self._connection is not None
        async with self._write_lock:
            await self._connection.execute(
                """
                UPDATE chat_sessions
                SET is_active = 0, live_messages = NULL, updated_at = ?
                WHERE id = ?
                """,
                (_utcnow(), session_id),
            )
            await self._connection.commit()

    async def delete_session(self, session_id: str) -> bool:
        """Remove a session row and, through the cascade, its snapshots."""

        assert self._connection is not None
        async with self._write_lock:
            cursor = await self._connection.execute(
                "DELETE FROM chat_sessions WHERE id = ?", (session_id,)
            )
            await self._connection.commit()
            deleted = cursor.rowcount > 0
            await cursor.close()
        return deleted

    async def set_title_if_missing(self, session_id: str, title: str) -> bool:
        """Set the session title unless one is already present."""

        assert self._connection is not None
        async with self._write_lock:
            cursor = await self._connection.execute(
                """
                UPDATE chat_sessions SET title = ?, updated_at = ?
                WHERE id = ? AND (title IS NULL OR title = '')
                """,
                (title, _utcnow(), session_id),
            )
            await self._connection.commit()
            updated = cursor.rowcount > 0
            await cursor.close()
        return updated

    async def save_live_messages(
        self, session_id: str, messages: list[dict[str, Any]]
    ) -> None:
        assert self._connection is not None
        async with self._write_lock:
            await self._connection.execute(
                "UPDATE chat_sessions SET live_messages = ?, updated_at = ? WHERE id = ?",
                (json.dumps(messages), _utcnow(), session_id),
            )
            await self._connection.commit()

    # ------------------------------------------------------------------
    # Snapshots

    async def add_snapshot_batch(
        self,
        chat_session_id: str,
        rows: Iterable[SnapshotRow],
        *,
        batch_id: str | None = None,
    ) -> str:
        """Insert one archived batch; return its batch id."""

        assert self._connection is not None
        batch = batch_id or str(uuid.uuid4())
        created_at = _utcnow()
        values = [
            (
                chat_session_id,
                batch,
                row.order_index,
                row.role,
                row.content,
                _encode_json(row.content_blocks),
                row.thinking,
                _encode_json(row.tool_calls),
                created_at,
            )
            for row in rows
        ]
        if not values:
            return batch
        async with self._write_lock:
            try:
                await self._connection.executemany(
                    """
                    INSERT INTO message_snapshots(
                        chat_session_id, batch_id, order_index, role, content,
                        content_blocks, thinking, tool_calls, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values,
                )
                await self._connection.commit()
            except Exception:
                await self._connection.rollback()
                raise
        return batch

    async def get_snapshots(self, chat_session_id: str) -> list[SnapshotRecord]:
        """Return archived messages ordered by batch time then position."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT id, batch_id, order_index, role, content, content_blocks,
                   thinking, tool_calls, created_at
            FROM message_snapshots
            WHERE chat_session_id = ?
            ORDER BY created_at ASC, order_index ASC
            """,
            (chat_session_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [
            {
                "id": str(row["id"]),
                "batch_id": row["batch_id"],
                "order_index": row["order_index"],
                "role": row["role"],
                "content": row["content"],
                "content_blocks": _decode_json(row["content_blocks"]),
                "thinking": row["thinking"],
                "tool_calls": _decode_json(row["tool_calls"]),
                "created_at": _normalize_db_timestamp(row["created_at"]),
            }
            for row in rows
        ]


__all__ = ["ChatRepository", "ChatSessionRecord", "SnapshotRecord", "SnapshotRow"]
