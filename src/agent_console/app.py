"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from functools import partial
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .chat.orchestrator import ChatOrchestrator
from .config import Settings, get_settings
from .gateway.client import GatewayClient
from .gateway.registry import GatewayRegistry
from .routers.chat import router as chat_router
from .services.workspace import LocalWorkspaceFiles


def _configure_logging() -> None:
    """Configure logging based on LOG_LEVEL environment variable."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    handlers: list[logging.Handler] = []
    log_file = os.getenv("LOG_FILE")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger("agent_console").setLevel(log_level)
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    # Frame-level chatter is only useful when debugging the gateway link
    if log_level > logging.DEBUG:
        logging.getLogger("websockets").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def _build_registry(settings: Settings) -> GatewayRegistry:
    factory = partial(
        GatewayClient,
        request_timeout=settings.gateway_request_timeout,
        connect_timeout=settings.gateway_connect_timeout,
        max_reconnect_attempts=settings.gateway_max_reconnect_attempts,
    )
    return GatewayRegistry(client_factory=factory)


def create_app(
    settings: Settings | None = None,
    *,
    registry: GatewayRegistry | None = None,
) -> FastAPI:
    # Configure logging first thing
    _configure_logging()

    settings = settings or get_settings()
    project_root = Path(__file__).resolve().parent.parent.parent

    workspace_root = settings.workspace_root
    if not workspace_root.is_absolute():
        workspace_root = project_root / workspace_root

    registry = registry or _build_registry(settings)
    orchestrator = ChatOrchestrator(
        settings,
        registry,
        workspace=LocalWorkspaceFiles(workspace_root),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await orchestrator.initialize()
        try:
            yield
        finally:
            # Add timeout to prevent hanging during shutdown (especially in tests)
            try:
                await asyncio.wait_for(orchestrator.shutdown(), timeout=10.0)
            except asyncio.TimeoutError:
                logging.warning("Orchestrator shutdown timed out after 10s")
            except Exception as exc:
                logging.warning("Error during orchestrator shutdown: %s", exc)

    app = FastAPI(
        title="Agent Console Chat Backend",
        version="0.1.0",
        description="Streams gateway agent conversations and keeps session history.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.gateway_registry = registry
    app.state.chat_orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, object]:
        return {
            "status": "ok",
            "gateways": registry.connected_ids(),
        }

    return app


__all__ = ["create_app"]
