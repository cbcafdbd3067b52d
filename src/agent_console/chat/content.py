"""Normalize gateway message content and extract text, thinking, and images."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Union


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ThinkingBlock:
    thinking: str


@dataclass(frozen=True)
class ImageBlock:
    """An image carried inline by a message, already resolved to a URL."""

    url: str
    mime_type: str | None = None
    alt: str | None = None


ContentBlock = Union[TextBlock, ThinkingBlock, ImageBlock]

# A message body is either a bare string or a list of typed blocks.
MessageContent = Union[str, list[ContentBlock]]


@dataclass(frozen=True)
class ThinkingSplit:
    thinking: str
    text: str


_USER_METADATA_PATTERN = re.compile(r"\[[\w\s:+\-]+UTC\]\s*")
_FINAL_TAG_PATTERN = re.compile(r"<final>([\s\S]*?)</final>")
_THINK_TAG_PATTERN = re.compile(r"<think>([\s\S]*?)</think>([\s\S]*)")
_ZERO_WIDTH_JOINER = "\u200d"
_MIN_RECOVERED_TEXT = 2


def _image_from_dict(block: dict[str, Any]) -> ImageBlock | None:
    source = block.get("source")
    media_type: str | None = None
    url = ""
    if isinstance(source, dict):
        raw_media_type = source.get("media_type")
        if isinstance(raw_media_type, str) and raw_media_type:
            media_type = raw_media_type
        data = source.get("data")
        if source.get("type") == "base64" and isinstance(data, str) and data:
            url = f"data:{media_type or 'image/png'};base64,{data}"
    if not url:
        candidate = block.get("url")
        if isinstance(candidate, str):
            url = candidate
    if not url:
        return None
    alt = block.get("alt")
    return ImageBlock(
        url=url,
        mime_type=media_type,
        alt=alt if isinstance(alt, str) else None,
    )


def _block_from_dict(block: dict[str, Any]) -> ContentBlock | None:
    kind = block.get("type")
    if kind == "text":
        text = block.get("text")
        if isinstance(text, str) and text:
            return TextBlock(text)
    elif kind == "thinking":
        thinking = block.get("thinking")
        if isinstance(thinking, str) and thinking:
            return ThinkingBlock(thinking)
    elif kind == "image":
        return _image_from_dict(block)
    return None


def normalize_content(content: Any) -> list[ContentBlock]:
    """Convert loosely typed message content into a list of typed blocks.

    Strings become a single text block, lists are converted element by
    element (unknown or malformed entries are dropped), anything else is
    treated as empty.
    """

    if isinstance(content, str):
        return [TextBlock(content)] if content else []
    if not isinstance(content, list):
        return []

    blocks: list[ContentBlock] = []
    for item in content:
        if isinstance(item, (TextBlock, ThinkingBlock, ImageBlock)):
            blocks.append(item)
        elif isinstance(item, dict):
            block = _block_from_dict(item)
            if block is not None:
                blocks.append(block)
    return blocks


def normalize_message_content(content: Any) -> MessageContent:
    """Keep bare strings untouched; type everything else."""

    if isinstance(content, str):
        return content
    return normalize_content(content)


def message_content(message: Any) -> Any:
    """Return the raw ``content`` field of a gateway message dict."""

    if isinstance(message, dict):
        return message.get("content")
    return None


def _iter_blocks(content: Any) -> Iterable[ContentBlock]:
    if isinstance(content, str):
        return ()
    return normalize_content(content)


def extract_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    parts = [block.text for block in _iter_blocks(content) if isinstance(block, TextBlock)]
    return "\n".join(parts).strip()


def extract_thinking(content: Any) -> str:
    parts = [
        block.thinking
        for block in _iter_blocks(content)
        if isinstance(block, ThinkingBlock)
    ]
    return "\n".join(parts).strip()


def extract_images(content: Any) -> list[ImageBlock]:
    return [block for block in _iter_blocks(content) if isinstance(block, ImageBlock)]


def image_content_block(url: str, mime_type: str | None) -> dict[str, Any]:
    """Serialized image block as stored on snapshots and returned to clients."""

    block: dict[str, Any] = {"type": "image", "imageUrl": url}
    if mime_type:
        block["mimeType"] = mime_type
    return block


def extract_content_blocks(content: Any) -> list[dict[str, Any]] | None:
    """Return stored image blocks for ``content``, or ``None`` when it has none."""

    blocks = [image_content_block(image.url, image.mime_type) for image in extract_images(content)]
    return blocks or None


def strip_user_metadata(text: str) -> str:
    """Drop the delivery header the gateway prepends to user messages.

    Everything up to and including the first ``[... UTC]`` timestamp is
    removed, but only when something remains after it.
    """

    match = _USER_METADATA_PATTERN.search(text)
    if match is not None:
        remainder = text[match.end():]
        if remainder:
            return remainder
    return text


def strip_final_tags(text: str) -> str:
    return _FINAL_TAG_PATTERN.sub(r"\1", text).strip()


def split_thinking_fallback(thinking: str) -> ThinkingSplit:
    """Recover response text that a model leaked into its thinking block.

    Two shapes are recognised: the whole block wrapped as
    ``<think>...</think>answer`` and a reasoning prefix separated from the
    answer by a zero-width joiner. A candidate answer shorter than two
    characters is not accepted. When nothing matches, the entire input is
    treated as response text.
    """

    match = _THINK_TAG_PATTERN.fullmatch(thinking)
    if match is not None:
        interior = match.group(1).strip()
        trailer = match.group(2).strip()
        if len(trailer) >= _MIN_RECOVERED_TEXT:
            return ThinkingSplit(thinking=interior, text=trailer)

    joiner_index = thinking.rfind(_ZERO_WIDTH_JOINER)
    if joiner_index != -1:
        before = thinking[:joiner_index].strip()
        after = thinking[joiner_index + 1:].strip()
        if len(after) >= _MIN_RECOVERED_TEXT:
            return ThinkingSplit(thinking=before, text=after)

    return ThinkingSplit(thinking="", text=thinking)


def resolve_assistant_text(content: Any) -> tuple[str, str]:
    """Return ``(text, thinking)`` for a stored assistant message.

    ``<final>`` wrappers are removed and, when the message has no text of
    its own, the thinking block is split to recover the answer.
    """

    return recover_text_from_thinking(
        strip_final_tags(extract_text(content)), extract_thinking(content)
    )


def recover_text_from_thinking(text: str, thinking: str) -> tuple[str, str]:
    if not text and thinking:
        split = split_thinking_fallback(thinking)
        if split.text:
            return split.text, split.thinking
    return text, thinking


__all__ = [
    "ContentBlock",
    "ImageBlock",
    "MessageContent",
    "TextBlock",
    "ThinkingBlock",
    "ThinkingSplit",
    "extract_content_blocks",
    "extract_images",
    "extract_text",
    "extract_thinking",
    "image_content_block",
    "message_content",
    "normalize_content",
    "normalize_message_content",
    "recover_text_from_thinking",
    "resolve_assistant_text",
    "split_thinking_fallback",
    "strip_final_tags",
    "strip_user_metadata",
]
