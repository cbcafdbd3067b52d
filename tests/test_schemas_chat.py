import pytest
from pydantic import ValidationError

from agent_console.schemas.chat import SendMessageRequest, StreamEvent


def test_send_request_accepts_camel_case_fields():
    request = SendMessageRequest.model_validate(
        {
            "instanceId": "inst-1",
            "agentId": "main",
            "message": "hi",
            "sessionId": "abc",
            "attachments": [{"name": "a.png", "content": "AA==", "mimeType": "image/png"}],
        }
    )

    assert request.instance_id == "inst-1"
    assert request.session_id == "abc"
    assert request.attachments is not None
    assert request.attachments[0].mime_type == "image/png"


def test_send_request_limits():
    with pytest.raises(ValidationError):
        SendMessageRequest.model_validate({"instanceId": "i", "agentId": "a", "message": ""})
    with pytest.raises(ValidationError):
        SendMessageRequest.model_validate(
            {"instanceId": "i", "agentId": "a", "message": "x" * 32001}
        )


def test_stream_event_serializes_only_set_fields():
    assert StreamEvent.text("hi").to_payload() == {"type": "text", "content": "hi"}
    assert StreamEvent.session("s1").to_payload() == {"type": "session", "sessionId": "s1"}
    assert StreamEvent.done().to_payload() == {"type": "done"}
    assert StreamEvent.image("data:x", "image/png").to_payload() == {
        "type": "image",
        "imageUrl": "data:x",
        "mimeType": "image/png",
    }


def test_stream_event_keeps_explicit_nulls_and_unicode():
    assert StreamEvent.tool_result("t", None).to_payload() == {
        "type": "tool_result",
        "toolName": "t",
        "toolOutput": None,
    }
    assert StreamEvent.failure("héllo").encode() == 'data: {"type": "error", "error": "héllo"}\n\n'
