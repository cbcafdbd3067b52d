"""Chat orchestrator coordinating sessions, gateway streams, and history."""

from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable

from fastapi import UploadFile

from ..gateway.client import GatewayConnection, GatewayNotConnected
from ..gateway.registry import GatewayRegistry
from ..repository import ChatRepository, ChatSessionRecord
from ..schemas.chat import NewConversationRequest, SendMessageRequest, StreamEvent
from ..services.workspace import WorkspaceFiles
from .archiver import SessionArchiver
from .attachments import AttachmentAssembler
from .files import SessionFileService
from .history import ChatHistoryService
from .media import MediaLocator
from .sessions import ResolvedSession, SessionResolver, build_session_key
from .streaming import ChatStreamCorrelator

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)


class SessionNotFound(RuntimeError):
    """Raised when a chat session id does not exist."""


class SessionAccessDenied(RuntimeError):
    """Raised when a chat session belongs to another user."""


class SessionArchived(RuntimeError):
    """Raised when an operation needs an active session but got an archived one."""


class ChatOrchestrator:
    """High-level coordination for chat sessions."""

    def __init__(
        self,
        settings: Settings,
        registry: GatewayRegistry,
        *,
        repository: ChatRepository | None = None,
        workspace: WorkspaceFiles | None = None,
    ):
        project_root = Path(__file__).resolve().parents[3]

        db_path = settings.chat_database_path
        if not db_path.is_absolute():
            db_path = project_root / db_path

        self._settings = settings
        self._registry = registry
        self._repo = repository or ChatRepository(db_path)
        self._media = MediaLocator(
            settings.media_allowed_dirs, max_bytes=settings.media_max_bytes
        )
        self._archiver = SessionArchiver(self._repo)
        self._resolver = SessionResolver(self._repo, self._archiver)
        self._attachments = AttachmentAssembler(
            workspace, max_image_bytes=settings.session_image_max_bytes
        )
        self._files = SessionFileService(
            workspace, max_upload_bytes=settings.session_upload_max_bytes
        )
        self._history = ChatHistoryService(self._repo, self._media)
        self._stream_timeout = settings.chat_stream_timeout_seconds
        self._background: set[asyncio.Task[None]] = set()
        self._init_lock = asyncio.Lock()
        self._ready = asyncio.Event()

    async def initialize(self) -> None:
        """Open the database and connect configured gateways once."""

        async with self._init_lock:
            if self._ready.is_set():
                return

            await self._repo.initialize()
            await self._registry.connect_all(self._settings.gateway_instances)
            self._ready.set()
            logger.info(
                "Chat orchestrator ready: %d gateway instance(s) connected",
                len(self._registry.connected_ids()),
            )

    async def shutdown(self) -> None:
        """Clean up held resources."""

        if self._background:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*list(self._background), return_exceptions=True),
                    timeout=5.0,
                )
            except asyncio.TimeoutError:
                logger.warning("Background chat tasks did not finish before shutdown")

        try:
            await asyncio.wait_for(self._registry.disconnect_all(), timeout=5.0)
        except (asyncio.TimeoutError, Exception) as exc:
            logger.warning("Error disconnecting gateways: %s", exc)

        try:
            await asyncio.wait_for(self._repo.close(), timeout=2.0)
        except (asyncio.TimeoutError, Exception) as exc:
            logger.warning("Error closing repository: %s", exc)

        self._ready.clear()

    @property
    def repository(self) -> ChatRepository:
        return self._repo

    @property
    def registry(self) -> GatewayRegistry:
        return self._registry

    def require_client(self, instance_id: str) -> GatewayConnection:
        client = self._registry.get_client(instance_id)
        if client is None:
            raise GatewayNotConnected(f"Instance {instance_id} is not connected")
        return client

    # ------------------------------------------------------------------
    # Sending

    async def open_stream(
        self, user_id: str, request: SendMessageRequest
    ) -> AsyncIterator[StreamEvent]:
        """Resolve the session for ``request`` and return its event stream.

        Gateway lookup and session resolution happen before the stream is
        returned, so their failures surface as plain exceptions rather than
        stream events.
        """

        client = self.require_client(request.instance_id)
        resolved = await self._resolver.resolve(
            user_id,
            request.instance_id,
            request.agent_id,
            client,
            request.session_id,
        )
        return self._relay(client, resolved, request)

    async def _relay(
        self,
        client: GatewayConnection,
        resolved: ResolvedSession,
        request: SendMessageRequest,
    ) -> AsyncIterator[StreamEvent]:
        session = resolved.session
        yield StreamEvent.session(session.id)

        attachments = await self._attachments.assemble(
            request.agent_id, session.id, request.attachments
        )
        run_id = uuid.uuid4().hex
        correlator = ChatStreamCorrelator(
            client,
            run_id=run_id,
            session_key=resolved.session_key,
            media=self._media,
            timeout=self._stream_timeout,
        )

        async def send() -> Any:
            return await client.send_message(
                resolved.session_key,
                request.message,
                run_id,
                attachments or None,
            )

        logger.info(
            "Relaying run %s for session %s (%d attachment(s))",
            run_id,
            session.id,
            len(attachments),
        )
        async for event in correlator.stream(send):
            yield event

        if correlator.completed:
            self._spawn(
                self._history.save_live_snapshot(
                    session.id, client, resolved.session_key
                ),
                f"live snapshot for session {session.id}",
            )

    def _spawn(self, coro: Awaitable[None], label: str) -> None:
        async def _runner() -> None:
            try:
                await coro
            except Exception as exc:
                logger.debug("Background %s failed: %s", label, exc)

        task = asyncio.create_task(_runner())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Sessions

    async def _owned_session(self, user_id: str, session_id: str) -> ChatSessionRecord:
        session = await self._repo.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        if session.user_id != user_id:
            raise SessionAccessDenied(f"Session {session_id} belongs to another user")
        return session

    async def list_sessions(
        self,
        user_id: str,
        *,
        instance_id: str | None = None,
        agent_id: str | None = None,
    ) -> list[dict[str, Any]]:
        sessions = await self._repo.list_sessions(
            user_id, instance_id=instance_id, agent_id=agent_id
        )
        return [session.to_dict() for session in sessions]

    async def get_history(self, user_id: str, session_id: str) -> dict[str, Any]:
        session = await self._owned_session(user_id, session_id)
        client = self._registry.get_client(session.instance_id)
        return await self._history.load(session, client)

    async def clear_context(self, user_id: str, session_id: str) -> None:
        """Archive the live conversation and reset the remote context.

        The session row stays active; gateway failures propagate.
        """

        session = await self._owned_session(user_id, session_id)
        if not session.is_active:
            raise SessionArchived("Session is archived; its context cannot be cleared")
        client = self.require_client(session.instance_id)
        await self._archiver.reset_context(session, client)
        logger.info("Cleared context of session %s", session.id)

    async def new_conversation(
        self, user_id: str, request: NewConversationRequest
    ) -> dict[str, Any]:
        """Archive the active session (if any) and start an empty one."""

        active = await self._repo.find_active_session(
            user_id, request.instance_id, request.agent_id
        )
        if active is not None:
            client = self._registry.get_client(request.instance_id)
            await self._archiver.archive_session(active, client)

        session = await self._repo.create_active_session(
            user_id,
            request.instance_id,
            request.agent_id,
            build_session_key(request.agent_id, user_id),
        )
        logger.info("Started new conversation %s", session.id)
        return session.to_dict()

    async def delete_session(self, user_id: str, session_id: str) -> None:
        """Drop a session; the remote conversation is removed best-effort."""

        session = await self._owned_session(user_id, session_id)
        client = self._registry.get_client(session.instance_id)
        if client is not None:
            try:
                await client.delete_session(session.session_key)
            except Exception as exc:
                logger.debug(
                    "Remote delete failed for session %s: %s", session.id, exc
                )
        await self._repo.delete_session(session.id)

    # ------------------------------------------------------------------
    # Session files

    async def list_session_files(
        self, user_id: str, session_id: str, zone: str, directory: str = ""
    ) -> dict[str, Any]:
        session = await self._owned_session(user_id, session_id)
        return await self._files.list_files(session.agent_id, session.id, zone, directory)

    async def read_session_file(
        self, user_id: str, session_id: str, zone: str, relative_path: str
    ) -> bytes:
        session = await self._owned_session(user_id, session_id)
        return await self._files.read_file(session.agent_id, session.id, zone, relative_path)

    async def upload_session_file(
        self, user_id: str, session_id: str, upload: UploadFile, directory: str = ""
    ) -> dict[str, Any]:
        session = await self._owned_session(user_id, session_id)
        return await self._files.upload(session.agent_id, session.id, upload, directory)

    async def delete_session_file(
        self, user_id: str, session_id: str, zone: str, relative_path: str
    ) -> None:
        session = await self._owned_session(user_id, session_id)
        await self._files.delete_file(session.agent_id, session.id, zone, relative_path)

    async def make_session_directory(
        self, user_id: str, session_id: str, directory: str
    ) -> None:
        session = await self._owned_session(user_id, session_id)
        await self._files.make_directory(session.agent_id, session.id, directory)

    async def move_session_file(
        self, user_id: str, session_id: str, source: str, target: str
    ) -> None:
        session = await self._owned_session(user_id, session_id)
        await self._files.move(session.agent_id, session.id, source, target)

    # ------------------------------------------------------------------
    # Agents

    async def list_agents(self) -> list[dict[str, Any]]:
        """Agents reported by every connected gateway; silent ones are skipped."""

        instance_ids = self._registry.connected_ids()
        names = {
            config.id: config.name or config.id
            for config in self._settings.gateway_instances
        }

        async def _fetch(instance_id: str) -> list[dict[str, Any]]:
            client = self._registry.get_client(instance_id)
            if client is None:
                return []
            return await client.list_agents()

        results = await asyncio.gather(
            *(_fetch(instance_id) for instance_id in instance_ids),
            return_exceptions=True,
        )

        agents: list[dict[str, Any]] = []
        for instance_id, result in zip(instance_ids, results):
            if isinstance(result, BaseException):
                logger.warning("Could not list agents on %s: %s", instance_id, result)
                continue
            for agent in result:
                agent_id = agent.get("id")
                if not agent_id:
                    continue
                agents.append(
                    {
                        "instanceId": instance_id,
                        "instanceName": names.get(instance_id, instance_id),
                        "agentId": agent_id,
                        "agentName": agent.get("name") or agent_id,
                        "status": agent.get("status") or "active",
                        "model": agent.get("model"),
                    }
                )
        return agents


__all__ = [
    "ChatOrchestrator",
    "SessionAccessDenied",
    "SessionArchived",
    "SessionNotFound",
]
