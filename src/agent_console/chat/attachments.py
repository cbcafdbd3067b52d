"""Build the attachment list sent to the gateway with a chat message."""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Sequence

from ..schemas.chat import ChatAttachment
from ..services.workspace import CONTAINER_WORKSPACE_ROOT, WorkspaceFiles
from .media import MIME_BY_EXT, image_extension

logger = logging.getLogger(__name__)


SESSION_IMAGE_MAX_BYTES = 5 * 1024 * 1024

GatewayAttachment = dict[str, Any]


def session_base_path(agent_id: str, chat_session_id: str) -> str:
    return f"{CONTAINER_WORKSPACE_ROOT}/{agent_id}/sessions/{chat_session_id}/"


def session_input_path(agent_id: str, chat_session_id: str) -> str:
    return f"{session_base_path(agent_id, chat_session_id)}input/"


def session_output_path(agent_id: str, chat_session_id: str) -> str:
    return f"{session_base_path(agent_id, chat_session_id)}output/"


def current_session_link_path(agent_id: str) -> str:
    return f"{CONTAINER_WORKSPACE_ROOT}/{agent_id}/current-session"


def current_session_target(chat_session_id: str) -> str:
    # Relative so it resolves inside the container too
    return f"sessions/{chat_session_id}"


class AttachmentAssembler:
    """Merge user uploads with images dropped into the session's input folder."""

    def __init__(
        self,
        workspace: WorkspaceFiles | None,
        *,
        max_image_bytes: int = SESSION_IMAGE_MAX_BYTES,
    ) -> None:
        self._workspace = workspace
        self._max_image_bytes = max_image_bytes

    async def assemble(
        self,
        agent_id: str,
        chat_session_id: str,
        explicit: Sequence[ChatAttachment] | None = None,
    ) -> list[GatewayAttachment]:
        attachments: list[GatewayAttachment] = [
            {
                "fileName": item.name,
                "mimeType": item.mime_type,
                "content": item.content,
            }
            for item in explicit or ()
        ]
        attachments.extend(await self.discover_session_images(agent_id, chat_session_id))
        return attachments

    async def prepare_session_dirs(self, agent_id: str, chat_session_id: str) -> None:
        """Create input/output folders and repoint ``current-session``."""

        if self._workspace is None:
            return
        await asyncio.gather(
            self._workspace.symlink(
                current_session_target(chat_session_id),
                current_session_link_path(agent_id),
            ),
            self._workspace.ensure_dir(session_input_path(agent_id, chat_session_id)),
            self._workspace.ensure_dir(session_output_path(agent_id, chat_session_id)),
        )

    async def discover_session_images(
        self, agent_id: str, chat_session_id: str
    ) -> list[GatewayAttachment]:
        """Base64-encode images in the session's input folder.

        Every failure here is skipped; discovery never blocks a message.
        """

        if self._workspace is None:
            return []

        try:
            await self.prepare_session_dirs(agent_id, chat_session_id)
        except Exception as exc:
            logger.debug("Could not prepare session dirs for %s: %s", chat_session_id, exc)

        input_path = session_input_path(agent_id, chat_session_id)
        try:
            entries = await self._workspace.list_dir(input_path)
        except Exception as exc:
            logger.debug("Could not list %s: %s", input_path, exc)
            return []

        found: list[GatewayAttachment] = []
        for entry in entries:
            if entry.type != "file" or entry.size > self._max_image_bytes:
                continue
            mime_type = MIME_BY_EXT.get(image_extension(entry.name))
            if mime_type is None:
                continue
            try:
                data = await self._workspace.read_file(f"{input_path}{entry.name}")
            except Exception as exc:
                logger.debug("Skipping unreadable session image %s: %s", entry.name, exc)
                continue
            found.append(
                {
                    "fileName": entry.name,
                    "mimeType": mime_type,
                    "content": base64.b64encode(data).decode("ascii"),
                }
            )
        return found


__all__ = [
    "AttachmentAssembler",
    "GatewayAttachment",
    "current_session_link_path",
    "current_session_target",
    "session_base_path",
    "session_input_path",
    "session_output_path",
]
