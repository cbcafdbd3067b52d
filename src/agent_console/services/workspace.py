"""File access to agent workspaces mounted on the host."""

from __future__ import annotations

import asyncio
import os
import uuid
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Protocol


CONTAINER_WORKSPACE_ROOT = "/workspace"


class WorkspaceError(RuntimeError):
    """Base error raised for workspace file failures."""


class WorkspacePathError(WorkspaceError):
    """Raised when a path escapes the workspace root."""


@dataclass(frozen=True)
class WorkspaceEntry:
    name: str
    path: str
    type: str
    size: int


class WorkspaceFiles(Protocol):
    """Operations on container paths under ``/workspace``."""

    async def ensure_dir(self, path: str) -> None:
        ...

    async def symlink(self, target: str, link_path: str) -> None:
        ...

    async def list_dir(self, path: str) -> list[WorkspaceEntry]:
        ...

    async def read_file(self, path: str) -> bytes:
        ...

    async def write_file(self, path: str, data: bytes) -> None:
        ...

    async def remove_file(self, path: str) -> None:
        ...

    async def move(self, source: str, target: str) -> None:
        ...


class LocalWorkspaceFiles:
    """Maps container ``/workspace/...`` paths onto a host directory."""

    def __init__(
        self, root: Path, *, container_root: str = CONTAINER_WORKSPACE_ROOT
    ) -> None:
        self._root = root
        self._container_root = PurePosixPath(container_root)

    @property
    def root(self) -> Path:
        return self._root

    def host_path(self, container_path: str) -> Path:
        pure = PurePosixPath(container_path)
        try:
            relative = pure.relative_to(self._container_root)
        except ValueError as exc:
            raise WorkspacePathError(f"{container_path} is outside the workspace") from exc
        if any(part in ("..", "") for part in relative.parts) or "\0" in container_path:
            raise WorkspacePathError(f"Unsafe workspace path: {container_path}")
        return self._root.joinpath(*relative.parts)

    async def ensure_dir(self, path: str) -> None:
        host = self.host_path(path)
        await asyncio.to_thread(host.mkdir, parents=True, exist_ok=True)

    async def symlink(self, target: str, link_path: str) -> None:
        """Point ``link_path`` at ``target``, replacing any existing link."""

        host_link = self.host_path(link_path)

        def _replace_link() -> None:
            host_link.parent.mkdir(parents=True, exist_ok=True)
            staging = host_link.with_name(f".{host_link.name}.{uuid.uuid4().hex}")
            os.symlink(target, staging)
            try:
                os.replace(staging, host_link)
            except OSError:
                staging.unlink(missing_ok=True)
                raise

        await asyncio.to_thread(_replace_link)

    async def list_dir(self, path: str) -> list[WorkspaceEntry]:
        host = self._contained(self.host_path(path))

        def _scan() -> list[WorkspaceEntry]:
            entries: list[WorkspaceEntry] = []
            with os.scandir(host) as iterator:
                for item in iterator:
                    if item.is_symlink():
                        kind = "symlink"
                    elif item.is_dir(follow_symlinks=False):
                        kind = "directory"
                    else:
                        kind = "file"
                    size = item.stat(follow_symlinks=False).st_size
                    entries.append(
                        WorkspaceEntry(
                            name=item.name,
                            path=str(PurePosixPath(path) / item.name),
                            type=kind,
                            size=size,
                        )
                    )
            return sorted(entries, key=lambda entry: entry.name)

        return await asyncio.to_thread(_scan)

    async def read_file(self, path: str) -> bytes:
        host = self._contained(self.host_path(path))
        return await asyncio.to_thread(host.read_bytes)

    async def write_file(self, path: str, data: bytes) -> None:
        host = self._contained(self.host_path(path))

        def _write() -> None:
            host.parent.mkdir(parents=True, exist_ok=True)
            host.write_bytes(data)

        await asyncio.to_thread(_write)

    async def remove_file(self, path: str) -> None:
        host = self.host_path(path)
        self._contained(host.parent)
        await asyncio.to_thread(host.unlink)

    async def move(self, source: str, target: str) -> None:
        host_source = self.host_path(source)
        host_target = self._contained(self.host_path(target))
        self._contained(host_source.parent)

        def _move() -> None:
            if not os.path.lexists(host_source):
                raise FileNotFoundError(source)
            host_target.parent.mkdir(parents=True, exist_ok=True)
            os.replace(host_source, host_target)

        await asyncio.to_thread(_move)

    def _contained(self, host: Path) -> Path:
        """Reject host paths that resolve outside the workspace root."""

        root = self._root.resolve()
        resolved = host.resolve()
        if resolved != root and root not in resolved.parents:
            raise WorkspacePathError(f"{host} resolves outside the workspace")
        return host


__all__ = [
    "CONTAINER_WORKSPACE_ROOT",
    "LocalWorkspaceFiles",
    "WorkspaceEntry",
    "WorkspaceError",
    "WorkspaceFiles",
    "WorkspacePathError",
]
