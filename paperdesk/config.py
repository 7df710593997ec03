"""Paperdesk configuration — all tuneable settings in one place."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_csv(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    vals = [v.strip() for v in raw.split(",") if v.strip()]
    return vals if vals else default


def _default_data_dir() -> Path:
    """Resolve the data directory: $PAPERDESK_DATA or ./data."""
    env = os.environ.get("PAPERDESK_DATA")
    if env:
        return Path(env)
    return Path(__file__).resolve().parent.parent / "data"


class WorkflowConfig(BaseModel):
    """Knobs for the editorial workflow."""

    review_deadline_days: int = Field(
        default_factory=lambda: _env_int("PAPERDESK_REVIEW_DEADLINE_DAYS", 14),
        ge=1,
        description="Default reviewer deadline when the editor gives no date",
    )
    revision_deadline_days: int = Field(
        default_factory=lambda: _env_int("PAPERDESK_REVISION_DEADLINE_DAYS", 14),
        ge=1,
        description="Default author deadline for a requested revision",
    )
    min_reviews_for_revision: int = Field(
        default_factory=lambda: _env_int("PAPERDESK_MIN_REVIEWS_FOR_REVISION", 3),
        ge=1,
        description="Submitted reviews required before an editor may request a revision",
    )
    high_rating_threshold: float = Field(
        default=4.0, ge=0.0, le=5.0, description="Default cut-off for the high-rated papers listing"
    )
    conference_name: str = Field(
        default_factory=lambda: os.environ.get("PAPERDESK_CONFERENCE_NAME", "ICMBNT"),
    )
    conference_year: int = Field(
        default_factory=lambda: _env_int("PAPERDESK_CONFERENCE_YEAR", 2026),
    )


class SecurityConfig(BaseModel):
    """Token signing settings."""

    jwt_secret: str = Field(
        default_factory=lambda: os.environ.get("PAPERDESK_JWT_SECRET", "change-me-in-production"),
        min_length=8,
    )
    jwt_algorithm: str = Field(default="HS256")
    token_ttl_hours: int = Field(
        default_factory=lambda: _env_int("PAPERDESK_TOKEN_TTL_HOURS", 24),
        ge=1,
    )


class StorageConfig(BaseModel):
    """Uploaded file storage."""

    uploads_dir_name: str = Field(default="uploads")
    max_upload_bytes: int = Field(
        default_factory=lambda: _env_int("PAPERDESK_MAX_UPLOAD_BYTES", 10 * 1024 * 1024),
        ge=1_024,
    )
    public_base_url: str = Field(
        default_factory=lambda: os.environ.get("PAPERDESK_FILES_BASE_URL", "/api/files"),
        description="Prefix used when building URLs for stored files",
    )


class ServerConfig(BaseModel):
    """Network and transport settings."""

    host: str = Field(default_factory=lambda: os.environ.get("PAPERDESK_HOST", "127.0.0.1"))
    rest_port: int = Field(default_factory=lambda: _env_int("PAPERDESK_PORT", 8000))
    cors_origins: list[str] = Field(
        default_factory=lambda: _env_csv("PAPERDESK_CORS_ORIGINS", []),
    )
    max_request_bytes: int = Field(
        default_factory=lambda: _env_int("PAPERDESK_MAX_REQUEST_BYTES", 12 * 1024 * 1024),
        ge=1_024,
    )
    workers: int = Field(default_factory=lambda: _env_int("PAPERDESK_WORKERS", 1), ge=1)
    log_level: str = Field(default_factory=lambda: os.environ.get("PAPERDESK_LOG_LEVEL", "info"))
    log_requests: bool = Field(default_factory=lambda: _env_bool("PAPERDESK_LOG_REQUESTS", True))


class Config(BaseModel):
    """Top-level paperdesk configuration."""

    environment: str = Field(default_factory=lambda: os.environ.get("PAPERDESK_ENV", "development"))
    data_dir: Path = Field(default_factory=_default_data_dir)
    db_filename: str = Field(default="paperdesk.db")
    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_filename

    @property
    def uploads_path(self) -> Path:
        return self.data_dir / self.storage.uploads_dir_name

    @property
    def is_development(self) -> bool:
        return self.environment.strip().lower() == "development"

    def ensure_dirs(self) -> None:
        """Create data directories if they don't exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.uploads_path.mkdir(parents=True, exist_ok=True)


# Default instance for the CLI and `paperdesk.api:app`; tests build their own Config.
settings = Config()
