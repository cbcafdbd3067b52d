"""Session-scoped file management inside an agent's workspace.

Each chat session owns two folders under the agent workspace:
``input/`` for files the user hands to the agent and ``output/`` for what
the agent produces. Both can be browsed and downloaded; writes are limited
to ``input/``.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import UploadFile

from ..services.workspace import WorkspaceError, WorkspaceFiles, WorkspacePathError
from .attachments import session_input_path, session_output_path

logger = logging.getLogger(__name__)


MAX_UPLOAD_BYTES = 50 * 1024 * 1024


class SessionFileError(WorkspaceError):
    """Raised for invalid session file requests."""


class SessionFileNotFound(SessionFileError):
    """Raised when a session file or folder does not exist."""


class SessionFileTooLarge(SessionFileError):
    """Raised when an upload exceeds the configured size limit."""


class ReadOnlyZone(SessionFileError):
    """Raised when a write targets the agent-owned ``output/`` zone."""


def is_session_path_safe(relative_path: str) -> bool:
    if not relative_path:
        return False
    if ".." in relative_path or "\0" in relative_path:
        return False
    return not relative_path.startswith("/")


def resolve_session_file_path(
    agent_id: str,
    chat_session_id: str,
    zone: str,
    relative_path: str | None = None,
) -> str:
    if zone == "input":
        base = session_input_path(agent_id, chat_session_id)
    elif zone == "output":
        base = session_output_path(agent_id, chat_session_id)
    else:
        raise SessionFileError(f"Invalid zone: {zone}")
    if not relative_path:
        return base
    if not is_session_path_safe(relative_path):
        raise WorkspacePathError(f"Invalid file path: {relative_path}")
    return f"{base}{relative_path}"


def _check_file_name(name: str | None) -> str:
    if not name or ".." in name or "/" in name or "\0" in name:
        raise SessionFileError("Invalid file name")
    return name


class SessionFileService:
    """Browse and edit the ``input/`` and ``output/`` folders of a session."""

    def __init__(
        self,
        workspace: WorkspaceFiles | None,
        *,
        max_upload_bytes: int = MAX_UPLOAD_BYTES,
    ) -> None:
        self._workspace = workspace
        self._max_upload_bytes = max_upload_bytes

    def _require_workspace(self) -> WorkspaceFiles:
        if self._workspace is None:
            raise SessionFileError("Agent workspace is not configured")
        return self._workspace

    async def list_files(
        self, agent_id: str, chat_session_id: str, zone: str, directory: str = ""
    ) -> dict[str, Any]:
        """List one folder; a folder that does not exist yet lists as empty."""

        workspace = self._require_workspace()
        path = resolve_session_file_path(agent_id, chat_session_id, zone, directory or None)
        try:
            entries = await workspace.list_dir(path)
        except (FileNotFoundError, NotADirectoryError):
            entries = []
        prefix = f"{directory.rstrip('/')}/" if directory else ""
        files = [
            {
                "name": entry.name,
                "path": f"{prefix}{entry.name}",
                "type": entry.type,
                "size": entry.size,
            }
            for entry in entries
        ]
        return {"files": files, "zone": zone, "dir": directory}

    async def read_file(
        self, agent_id: str, chat_session_id: str, zone: str, relative_path: str
    ) -> bytes:
        workspace = self._require_workspace()
        path = resolve_session_file_path(agent_id, chat_session_id, zone, relative_path)
        try:
            return await workspace.read_file(path)
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
            raise SessionFileNotFound(f"File not found: {relative_path}") from exc

    async def upload(
        self,
        agent_id: str,
        chat_session_id: str,
        upload: UploadFile,
        directory: str = "",
    ) -> dict[str, Any]:
        workspace = self._require_workspace()
        name = _check_file_name(upload.filename)
        if directory and not is_session_path_safe(directory):
            raise WorkspacePathError(f"Invalid directory: {directory}")
        relative = f"{directory.rstrip('/')}/{name}" if directory else name
        path = resolve_session_file_path(agent_id, chat_session_id, "input", relative)

        data = await self._read_upload(upload)
        try:
            await workspace.write_file(path, data)
        except OSError as exc:
            raise SessionFileError(f"Upload failed: {exc}") from exc
        logger.info(
            "Stored %s (%d bytes) in session %s input", relative, len(data), chat_session_id
        )
        return {"name": name, "path": relative, "type": "file", "size": len(data)}

    async def delete_file(
        self, agent_id: str, chat_session_id: str, zone: str, relative_path: str
    ) -> None:
        if zone != "input":
            raise ReadOnlyZone("Only files in input/ can be deleted")
        workspace = self._require_workspace()
        path = resolve_session_file_path(agent_id, chat_session_id, zone, relative_path)
        try:
            await workspace.remove_file(path)
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as exc:
            raise SessionFileNotFound(f"File not found: {relative_path}") from exc

    async def make_directory(
        self, agent_id: str, chat_session_id: str, directory: str
    ) -> None:
        workspace = self._require_workspace()
        path = resolve_session_file_path(agent_id, chat_session_id, "input", directory)
        try:
            await workspace.ensure_dir(path)
        except OSError as exc:
            raise SessionFileError(f"Could not create folder: {directory}") from exc

    async def move(
        self, agent_id: str, chat_session_id: str, source: str, target: str
    ) -> None:
        workspace = self._require_workspace()
        source_path = resolve_session_file_path(agent_id, chat_session_id, "input", source)
        target_path = resolve_session_file_path(agent_id, chat_session_id, "input", target)
        try:
            await workspace.move(source_path, target_path)
        except OSError as exc:
            raise SessionFileError("Move failed, source file may not exist") from exc

    async def _read_upload(self, upload: UploadFile) -> bytes:
        chunk_size = 1024 * 1024  # 1 MiB
        size = 0
        chunks: list[bytes] = []
        try:
            while True:
                chunk = await upload.read(chunk_size)
                if not chunk:
                    break
                size += len(chunk)
                if size > self._max_upload_bytes:
                    raise SessionFileTooLarge(
                        f"File exceeds the {self._max_upload_bytes // (1024 * 1024)} MB limit"
                    )
                chunks.append(chunk)
        finally:
            await upload.close()
        return b"".join(chunks)


__all__ = [
    "MAX_UPLOAD_BYTES",
    "ReadOnlyZone",
    "SessionFileError",
    "SessionFileNotFound",
    "SessionFileService",
    "SessionFileTooLarge",
    "is_session_path_safe",
    "resolve_session_file_path",
]
