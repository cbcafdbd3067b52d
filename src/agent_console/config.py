"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class GatewayInstanceConfig(BaseModel):
    """Connection details for one remote gateway instance."""

    id: str
    url: str
    token: SecretStr = SecretStr("")
    name: Optional[str] = None


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    chat_database_path: Path = Field(
        default_factory=lambda: Path("data/agent_console.db"),
        validation_alias=AliasChoices("CHAT_DATABASE_PATH", "chat_db"),
    )

    # Gateways are declared as a JSON list: [{"id": ..., "url": ..., "token": ...}]
    gateway_instances: list[GatewayInstanceConfig] = Field(
        default_factory=list,
        validation_alias=AliasChoices("GATEWAY_INSTANCES", "gateway_instances"),
    )
    gateway_request_timeout: float = Field(
        default=30.0,
        ge=1,
        validation_alias=AliasChoices(
            "GATEWAY_REQUEST_TIMEOUT", "gateway_request_timeout"
        ),
    )
    gateway_connect_timeout: float = Field(
        default=15.0,
        ge=1,
        validation_alias=AliasChoices(
            "GATEWAY_CONNECT_TIMEOUT", "gateway_connect_timeout"
        ),
    )
    gateway_max_reconnect_attempts: int = Field(
        default=10,
        ge=0,
        validation_alias=AliasChoices(
            "GATEWAY_MAX_RECONNECT_ATTEMPTS", "gateway_max_reconnect_attempts"
        ),
    )

    chat_stream_timeout_seconds: float = Field(
        default=600.0,
        ge=1,
        validation_alias=AliasChoices(
            "CHAT_STREAM_TIMEOUT_SECONDS", "chat_stream_timeout_seconds"
        ),
    )

    media_allowed_dirs: list[str] = Field(
        default_factory=lambda: ["/tmp", "/home"],
        validation_alias=AliasChoices("MEDIA_ALLOWED_DIRS", "media_allowed_dirs"),
    )
    media_max_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1,
        validation_alias=AliasChoices("MEDIA_MAX_BYTES", "media_max_bytes"),
    )

    # Host directory where the agent containers' /workspace is mounted
    workspace_root: Path = Field(
        default_factory=lambda: Path("data/workspace"),
        validation_alias=AliasChoices("WORKSPACE_ROOT", "workspace_root"),
    )
    session_image_max_bytes: int = Field(
        default=5 * 1024 * 1024,
        ge=1,
        validation_alias=AliasChoices(
            "SESSION_IMAGE_MAX_BYTES", "session_image_max_bytes"
        ),
    )
    session_upload_max_bytes: int = Field(
        default=50 * 1024 * 1024,
        ge=1,
        validation_alias=AliasChoices(
            "SESSION_UPLOAD_MAX_BYTES", "session_upload_max_bytes"
        ),
    )

    jwt_secret: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("JWT_SECRET", "JWT_PUBLIC_KEY", "jwt_secret"),
    )
    jwt_algorithm: str = Field(
        default="HS256",
        validation_alias=AliasChoices("JWT_ALGORITHM", "jwt_algorithm"),
    )
    jwt_issuer: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("JWT_ISSUER", "jwt_issuer"),
    )
    trust_user_id_header: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "TRUST_USER_ID_HEADER", "trust_user_id_header"
        ),
    )

    cors_allow_origins: list[str] = Field(
        default_factory=lambda: ["*"],
        validation_alias=AliasChoices("CORS_ALLOW_ORIGINS", "cors_allow_origins"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["GatewayInstanceConfig", "Settings", "get_settings"]
