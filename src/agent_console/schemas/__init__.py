"""Request and event schemas."""

from .chat import ChatAttachment, NewConversationRequest, SendMessageRequest, StreamEvent

__all__ = ["ChatAttachment", "NewConversationRequest", "SendMessageRequest", "StreamEvent"]
