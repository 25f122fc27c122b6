"""Runtime configuration for the API and the worker.

``Settings`` is a pydantic-settings model; every field can be supplied
through the environment.  Before it is instantiated, ``.env`` files are
loaded with python-dotenv: first the one at the repository root, then
whichever file ``find_dotenv`` locates from the working directory.
Variables that are already exported always win.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

REPO_ROOT = Path(__file__).resolve().parents[3]


def discover_env_files() -> list[str]:
    """Return the ``.env`` files to load, repository root first."""
    found: list[str] = []
    root_env = REPO_ROOT / ".env"
    if root_env.is_file():
        found.append(str(root_env))
    cwd_env = find_dotenv(usecwd=True)
    if cwd_env and cwd_env not in found:
        found.append(cwd_env)
    return found


ENV_FILES = discover_env_files()
for _path in ENV_FILES:
    load_dotenv(dotenv_path=_path, override=False)


class Settings(BaseSettings):
    """Receipt service settings, grouped by the component that reads them."""

    model_config = SettingsConfigDict(
        env_file=tuple(ENV_FILES) or (".env",),
        case_sensitive=True,
        extra="allow",
    )

    PROJECT_NAME: str = "Receiptflow"
    ENVIRONMENT: str = Field(default="development")
    # Base URL the extraction capability uses to fetch signed files
    PUBLIC_API_URL: str = Field(default="http://localhost:8000")

    # Record store (async SQLAlchemy)
    DATABASE_URL: Optional[str] = Field(default=None)
    DB_DEV_FALLBACK_SQLITE: bool = Field(default=False)

    # Worker substrate: Dramatiq over Redis, step memoization in Redis
    REDIS_URL: str = Field(default="redis://localhost:6379/0")
    DRAMATIQ_BROKER_URL: Optional[str] = Field(default=None)
    PIPELINE_MAX_RETRIES: int = Field(default=3, ge=0)
    PIPELINE_TIME_LIMIT_MS: int = Field(default=5 * 60 * 1000)
    STEP_STATE_TTL_SECONDS: int = Field(default=24 * 60 * 60)

    # Extraction capability (OpenAI Responses API)
    OPENAI_API_KEY: Optional[str] = Field(default=None)
    EXTRACTION_MODEL: str = Field(default="gpt-4o-mini")
    EXTRACTION_MAX_OUTPUT_TOKENS: int = Field(default=3094)
    EXTRACTION_TIMEOUT_SECONDS: float = Field(default=120.0)
    EXTRACTION_DEBUG: bool = Field(default=False)

    # File store: "minio" or "filesystem"
    STORAGE_BACKEND: str = Field(default="minio")
    MINIO_ENDPOINT: str = Field(default="localhost:9000")
    MINIO_ACCESS_KEY: str = Field(default="minioadmin")
    MINIO_SECRET_KEY: str = Field(default="minioadmin")
    MINIO_BUCKET_NAME: str = Field(default="receipts")
    MINIO_USE_SSL: bool = Field(default=False)
    STORAGE_DIRECTORY: str = Field(default="./storage")
    DOWNLOAD_URL_TTL_SECONDS: int = Field(default=3600)
    MAX_UPLOAD_SIZE: int = Field(default=10 * 1024 * 1024)

    # Identity (Clerk).  The bypass is for local development only.
    DEV_AUTH_BYPASS: bool = Field(default=False)
    DEV_USER_ID: str = Field(default="user_dev123")
    CLERK_JWKS_URL: Optional[str] = Field(default=None)
    CLERK_JWT_AUDIENCE: Optional[str] = Field(default=None)
    CLERK_JWT_ISSUER: Optional[str] = Field(default=None)
    # Signs filesystem download links
    SECRET_KEY: str = Field(default="changeme")

    BACKEND_CORS_ORIGINS: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)


settings = Settings()


def get_broker_url() -> str:
    """Return the Dramatiq broker URL, falling back to ``REDIS_URL``."""
    return settings.DRAMATIQ_BROKER_URL or os.getenv("DRAMATIQ_BROKER_URL") or settings.REDIS_URL
