"""Chat streaming and session API routes."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional, TypeVar
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, Query, Request, Response, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sse_starlette.sse import EventSourceResponse

from ..auth import CurrentUser, get_current_user
from ..chat.files import ReadOnlyZone, SessionFileNotFound
from ..chat.orchestrator import (
    ChatOrchestrator,
    SessionAccessDenied,
    SessionArchived,
    SessionNotFound,
)
from ..gateway.client import GatewayError, GatewayNotConnected
from ..schemas.chat import (
    MakeDirectoryRequest,
    MoveFileRequest,
    NewConversationRequest,
    SendMessageRequest,
    StreamEvent,
)
from ..services.workspace import WorkspaceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/chat", tags=["chat"])

ModelT = TypeVar("ModelT", bound=BaseModel)

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.chat_orchestrator


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


def _domain_error(exc: Exception) -> JSONResponse:
    if isinstance(exc, SessionNotFound):
        return _error(404, "Session not found")
    if isinstance(exc, SessionAccessDenied):
        return _error(403, "No access to this session")
    if isinstance(exc, SessionArchived):
        return _error(400, str(exc))
    if isinstance(exc, SessionFileNotFound):
        return _error(404, "File not found")
    if isinstance(exc, ReadOnlyZone):
        return _error(403, str(exc))
    if isinstance(exc, WorkspaceError):
        return _error(400, str(exc))
    if isinstance(exc, GatewayNotConnected):
        return _error(502, "Instance not connected")
    return _error(502, str(exc) or "Gateway request failed")


async def _read_payload(request: Request, model: type[ModelT]) -> ModelT | JSONResponse:
    """Validate the JSON body, answering 400 instead of FastAPI's 422."""

    try:
        body = await request.json()
    except ValueError:
        return _error(400, "Invalid request body")
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        return _error(
            400, "Validation failed", details=json.loads(exc.json(include_url=False))
        )


@router.post("/send", response_model=None, status_code=200)
async def send_message(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Send a message to an agent and stream its reply as Server-Sent Events."""

    payload = await _read_payload(request, SendMessageRequest)
    if isinstance(payload, JSONResponse):
        return payload

    try:
        stream = await orchestrator.open_stream(user.id, payload)
    except GatewayNotConnected as exc:
        logger.info("Send rejected: %s", exc)
        return _domain_error(exc)

    async def event_publisher() -> AsyncIterator[dict[str, str]]:
        try:
            async for event in stream:
                yield {"data": event.to_json()}
        except Exception as exc:  # pragma: no cover
            logger.exception("Chat stream failed")
            yield {"data": StreamEvent.failure(str(exc) or "Stream failed").to_json()}

    return EventSourceResponse(event_publisher(), headers=SSE_HEADERS, sep="\n")


@router.get("/sessions")
async def list_sessions(
    instance_id: Optional[str] = Query(default=None, alias="instanceId"),
    agent_id: Optional[str] = Query(default=None, alias="agentId"),
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    sessions = await orchestrator.list_sessions(
        user.id, instance_id=instance_id, agent_id=agent_id
    )
    return {"sessions": sessions}


@router.get("/sessions/{session_id}/history", response_model=None)
async def get_session_history(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any] | JSONResponse:
    """Archived snapshot batches plus the live conversation when active."""

    try:
        return await orchestrator.get_history(user.id, session_id)
    except (SessionNotFound, SessionAccessDenied) as exc:
        return _domain_error(exc)


@router.post("/sessions/{session_id}/clear-context", response_model=None)
async def clear_session_context(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any] | JSONResponse:
    try:
        await orchestrator.clear_context(user.id, session_id)
    except (SessionNotFound, SessionAccessDenied, SessionArchived, GatewayError) as exc:
        return _domain_error(exc)
    return {"success": True}


@router.delete("/sessions/{session_id}", status_code=204, response_model=None)
async def delete_session(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> Response:
    try:
        await orchestrator.delete_session(user.id, session_id)
    except (SessionNotFound, SessionAccessDenied) as exc:
        return _domain_error(exc)
    return Response(status_code=204)


FILE_ERRORS = (SessionNotFound, SessionAccessDenied, WorkspaceError)


@router.get("/sessions/{session_id}/files", response_model=None)
async def list_session_files(
    session_id: str,
    zone: str = Query(default="input"),
    directory: str = Query(default="", alias="dir"),
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any] | JSONResponse:
    """List a folder of the session's ``input/`` or ``output/`` zone."""

    try:
        return await orchestrator.list_session_files(user.id, session_id, zone, directory)
    except FILE_ERRORS as exc:
        return _domain_error(exc)


@router.post("/sessions/{session_id}/files/upload", response_model=None)
async def upload_session_file(
    session_id: str,
    file: Optional[UploadFile] = File(default=None),
    directory: str = Form(default="", alias="dir"),
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any] | JSONResponse:
    if file is None:
        return _error(400, "Missing file")
    try:
        entry = await orchestrator.upload_session_file(user.id, session_id, file, directory)
    except FILE_ERRORS as exc:
        return _domain_error(exc)
    return {"success": True, "file": entry}


@router.post("/sessions/{session_id}/files/mkdir", response_model=None)
async def make_session_directory(
    session_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any] | JSONResponse:
    payload = await _read_payload(request, MakeDirectoryRequest)
    if isinstance(payload, JSONResponse):
        return payload
    try:
        await orchestrator.make_session_directory(user.id, session_id, payload.dir)
    except FILE_ERRORS as exc:
        return _domain_error(exc)
    return {"success": True}


@router.post("/sessions/{session_id}/files/move", response_model=None)
async def move_session_file(
    session_id: str,
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any] | JSONResponse:
    payload = await _read_payload(request, MoveFileRequest)
    if isinstance(payload, JSONResponse):
        return payload
    try:
        await orchestrator.move_session_file(
            user.id, session_id, payload.source, payload.target
        )
    except FILE_ERRORS as exc:
        return _domain_error(exc)
    return {"success": True}


@router.get("/sessions/{session_id}/files/{zone}/{file_path:path}", response_model=None)
async def download_session_file(
    session_id: str,
    zone: str,
    file_path: str,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> Response:
    try:
        data = await orchestrator.read_session_file(user.id, session_id, zone, file_path)
    except FILE_ERRORS as exc:
        return _domain_error(exc)
    file_name = file_path.rstrip("/").rsplit("/", 1)[-1]
    return Response(
        content=data,
        media_type="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{quote(file_name)}"'},
    )


@router.delete(
    "/sessions/{session_id}/files/{zone}/{file_path:path}",
    status_code=204,
    response_model=None,
)
async def delete_session_file(
    session_id: str,
    zone: str,
    file_path: str,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> Response:
    try:
        await orchestrator.delete_session_file(user.id, session_id, zone, file_path)
    except FILE_ERRORS as exc:
        return _domain_error(exc)
    return Response(status_code=204)


@router.post("/conversations/new", response_model=None)
async def new_conversation(
    request: Request,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any] | JSONResponse:
    """Archive the active session and start an empty one."""

    payload = await _read_payload(request, NewConversationRequest)
    if isinstance(payload, JSONResponse):
        return payload
    session = await orchestrator.new_conversation(user.id, payload)
    return {"session": session}


@router.get("/agents")
async def list_agents(
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return {"agents": await orchestrator.list_agents()}


__all__ = ["get_orchestrator", "router"]
