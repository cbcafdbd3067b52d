"""Pydantic models for chat requests, responses, and stream events."""

from __future__ import annotations

import json
from typing import Annotated, Any, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


class ChatAttachment(BaseModel):
    """A user-supplied file forwarded to the agent alongside the message."""

    name: str = Field(..., max_length=255)
    content: str = Field(..., description="Base64 payload without a data: prefix")
    mime_type: str = Field(..., alias="mimeType", max_length=100)

    model_config = ConfigDict(populate_by_name=True)


class SendMessageRequest(BaseModel):
    """Incoming chat message payload."""

    instance_id: str = Field(..., alias="instanceId", min_length=1)
    agent_id: str = Field(..., alias="agentId", min_length=1)
    message: str = Field(..., min_length=1, max_length=32000)
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    attachments: Optional[List[ChatAttachment]] = Field(default=None, max_length=5)

    model_config = ConfigDict(populate_by_name=True)


class NewConversationRequest(BaseModel):
    instance_id: str = Field(..., alias="instanceId", min_length=1)
    agent_id: str = Field(..., alias="agentId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


def _check_relative_path(value: str) -> str:
    if ".." in value:
        raise ValueError("Path must not contain '..'")
    if "\0" in value:
        raise ValueError("Path contains an invalid character")
    if value.startswith("/"):
        raise ValueError("Path must be relative")
    return value


SessionRelativePath = Annotated[
    str, Field(min_length=1, max_length=500), AfterValidator(_check_relative_path)
]


class MakeDirectoryRequest(BaseModel):
    dir: SessionRelativePath


class MoveFileRequest(BaseModel):
    source: SessionRelativePath
    target: SessionRelativePath


StreamEventType = Literal[
    "session",
    "text",
    "thinking",
    "image",
    "tool_call",
    "tool_result",
    "error",
    "done",
]


class StreamEvent(BaseModel):
    """One server-sent event of a chat stream.

    Only fields passed to the constructor are serialized, so a tool result
    without output still carries an explicit ``"toolOutput": null``.
    """

    type: StreamEventType
    content: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    alt: Optional[str] = None
    tool_name: Optional[str] = Field(default=None, alias="toolName")
    tool_input: Any = Field(default=None, alias="toolInput")
    tool_output: Any = Field(default=None, alias="toolOutput")
    error: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False)

    def encode(self) -> str:
        """Render as a complete SSE frame."""

        return f"data: {self.to_json()}\n\n"

    @classmethod
    def session(cls, session_id: str) -> "StreamEvent":
        return cls(type="session", session_id=session_id)

    @classmethod
    def text(cls, content: str) -> "StreamEvent":
        return cls(type="text", content=content)

    @classmethod
    def thinking(cls, content: str) -> "StreamEvent":
        return cls(type="thinking", content=content)

    @classmethod
    def image(
        cls, image_url: str, mime_type: str | None = None, alt: str | None = None
    ) -> "StreamEvent":
        fields: dict[str, Any] = {"type": "image", "image_url": image_url}
        if mime_type is not None:
            fields["mime_type"] = mime_type
        if alt is not None:
            fields["alt"] = alt
        return cls(**fields)

    @classmethod
    def tool_call(cls, tool_name: str, tool_input: Any) -> "StreamEvent":
        return cls(type="tool_call", tool_name=tool_name, tool_input=tool_input)

    @classmethod
    def tool_result(cls, tool_name: str, tool_output: Any) -> "StreamEvent":
        return cls(type="tool_result", tool_name=tool_name, tool_output=tool_output)

    @classmethod
    def failure(cls, message: str) -> "StreamEvent":
        return cls(type="error", error=message)

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls(type="done")


__all__ = [
    "ChatAttachment",
    "MakeDirectoryRequest",
    "MoveFileRequest",
    "NewConversationRequest",
    "SendMessageRequest",
    "StreamEvent",
    "StreamEventType",
]
