"""Resolve which chat session an incoming message belongs to."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..gateway.client import GatewayConnection
from ..repository import ChatRepository, ChatSessionRecord
from .archiver import SessionArchiver

logger = logging.getLogger(__name__)


def build_session_key(agent_id: str, user_id: str) -> str:
    """Gateway conversation key shared by every session of a user/agent pair."""

    return f"agent:{agent_id}:tc:{user_id}"


@dataclass(frozen=True)
class ResolvedSession:
    session: ChatSessionRecord
    session_key: str


class SessionResolver:
    def __init__(self, repository: ChatRepository, archiver: SessionArchiver) -> None:
        self._repo = repository
        self._archiver = archiver

    async def resolve(
        self,
        user_id: str,
        instance_id: str,
        agent_id: str,
        client: GatewayConnection | None,
        target_session_id: str | None = None,
    ) -> ResolvedSession:
        """Return the active session for this message, switching if asked.

        A target that belongs to the caller's lineage but is archived is
        reactivated after the current active session is archived. Targets
        that are unknown, foreign, or already active are ignored.
        """

        session_key = build_session_key(agent_id, user_id)

        if target_session_id:
            target = await self._repo.get_session(target_session_id)
            if (
                target is not None
                and target.user_id == user_id
                and target.instance_id == instance_id
                and target.agent_id == agent_id
                and not target.is_active
            ):
                logger.info("Resuming archived session %s", target.id)
                await self._archiver.archive_and_activate(
                    user_id, instance_id, agent_id, target.id, client
                )

        session = await self._repo.record_message(
            user_id, instance_id, agent_id, session_key
        )
        return ResolvedSession(session=session, session_key=session_key)


__all__ = ["ResolvedSession", "SessionResolver", "build_session_key"]
