"""Locate image files referenced in agent output and load them as data URLs."""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import re
from typing import Iterable, Sequence

logger = logging.getLogger(__name__)


MIME_BY_EXT: dict[str, str] = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
}
IMAGE_EXTENSIONS: frozenset[str] = frozenset(MIME_BY_EXT)

DEFAULT_ALLOWED_DIRS: tuple[str, ...] = ("/tmp", "/home")
DEFAULT_MAX_BYTES = 10 * 1024 * 1024

_MEDIA_PATTERN = re.compile(r"MEDIA:\s*(\S+)", re.IGNORECASE)
_IMAGE_SAVED_PATTERN = re.compile(r"Image saved:\s*(\S+)", re.IGNORECASE)
_FILE_URL_PATTERN = re.compile(
    r"file:///(\S+?\.(?:png|jpg|jpeg|gif|webp|bmp))(?=[)\s\]\"]|$)",
    re.IGNORECASE,
)


def image_extension(path: str) -> str:
    return os.path.splitext(path)[1].lower()


def mime_type_for(path: str) -> str | None:
    return MIME_BY_EXT.get(image_extension(path))


def _append_unique(paths: list[str], candidate: str) -> None:
    if candidate and candidate not in paths:
        paths.append(candidate)


def extract_media_paths(text: str | None) -> list[str]:
    """Return image paths announced by ``MEDIA:`` or ``Image saved:`` lines."""

    if not text:
        return []
    paths: list[str] = []
    for pattern in (_MEDIA_PATTERN, _IMAGE_SAVED_PATTERN):
        for match in pattern.finditer(text):
            candidate = match.group(1)
            if image_extension(candidate) in IMAGE_EXTENSIONS:
                _append_unique(paths, candidate)
    return paths


def extract_file_protocol_paths(text: str | None) -> list[str]:
    """Return absolute paths of ``file:///`` image references in ``text``."""

    if not text:
        return []
    paths: list[str] = []
    for match in _FILE_URL_PATTERN.finditer(text):
        _append_unique(paths, "/" + match.group(1))
    return paths


def strip_media_references(text: str) -> str:
    """Remove server-local image references from text shown to users."""

    text = re.sub(r"\n*MEDIA:\s*\S+", "", text, flags=re.IGNORECASE)
    text = re.sub(r"\n*Image saved:\s*\S+", "", text, flags=re.IGNORECASE)
    text = re.sub(r"!\[[^\]]*\]\(file:///[^)]+\)", "", text, flags=re.IGNORECASE)
    text = _FILE_URL_PATTERN.sub("", text)
    return text.strip()


def is_allowed_image_path(
    path: str, allowed_dirs: Iterable[str] = DEFAULT_ALLOWED_DIRS
) -> bool:
    """Return True when ``path`` resolves strictly inside an allowed root."""

    try:
        resolved = os.path.realpath(path)
    except ValueError:
        # embedded NUL
        return False
    for directory in allowed_dirs:
        try:
            root = os.path.realpath(directory).rstrip("/")
        except ValueError:
            continue
        if resolved.startswith(root + "/"):
            return True
    return False


def _read_capped(path: str, max_bytes: int) -> bytes | None:
    if os.path.getsize(path) > max_bytes:
        return None
    with open(path, "rb") as handle:
        data = handle.read(max_bytes + 1)
    if len(data) > max_bytes:
        return None
    return data


async def read_image_as_data_url(
    path: str,
    *,
    allowed_dirs: Iterable[str] = DEFAULT_ALLOWED_DIRS,
    max_bytes: int = DEFAULT_MAX_BYTES,
) -> str | None:
    """Load an image file as a ``data:`` URL.

    Returns ``None`` instead of raising when the path is outside the
    allow-list, the file cannot be read, or it is larger than ``max_bytes``.
    """

    if not is_allowed_image_path(path, allowed_dirs):
        logger.debug("Refusing to read image outside allowed dirs: %s", path)
        return None
    try:
        data = await asyncio.to_thread(_read_capped, path, max_bytes)
    except (OSError, ValueError) as exc:
        logger.debug("Could not read image %s: %s", path, exc)
        return None
    if data is None:
        logger.debug("Image %s exceeds %d bytes; skipping", path, max_bytes)
        return None
    mime = mime_type_for(path) or "image/png"
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime};base64,{encoded}"


class MediaLocator:
    """Reads agent-produced images from allow-listed host directories."""

    def __init__(
        self,
        allowed_dirs: Sequence[str] = DEFAULT_ALLOWED_DIRS,
        *,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self._allowed_dirs = tuple(allowed_dirs)
        self._max_bytes = max_bytes

    @property
    def allowed_dirs(self) -> tuple[str, ...]:
        return self._allowed_dirs

    def is_allowed(self, path: str) -> bool:
        return is_allowed_image_path(path, self._allowed_dirs)

    async def read_data_url(self, path: str) -> str | None:
        return await read_image_as_data_url(
            path, allowed_dirs=self._allowed_dirs, max_bytes=self._max_bytes
        )

    async def load_many(self, paths: Sequence[str]) -> list[tuple[str, str]]:
        """Read ``paths`` concurrently; return ``(path, data_url)`` for hits."""

        if not paths:
            return []
        results = await asyncio.gather(*(self.read_data_url(path) for path in paths))
        return [
            (path, data_url)
            for path, data_url in zip(paths, results)
            if data_url is not None
        ]


__all__ = [
    "DEFAULT_ALLOWED_DIRS",
    "DEFAULT_MAX_BYTES",
    "IMAGE_EXTENSIONS",
    "MIME_BY_EXT",
    "MediaLocator",
    "extract_file_protocol_paths",
    "extract_media_paths",
    "image_extension",
    "is_allowed_image_path",
    "mime_type_for",
    "read_image_as_data_url",
    "strip_media_references",
]
