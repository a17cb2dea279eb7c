"""Simple configuration management.

This module defines a ``Settings`` class that reads configuration
values from environment variables and provides sensible defaults.
``.env`` support is implemented by loading files from the repository
root in a defined order.  You can override any value via environment
variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from dotenv import load_dotenv, find_dotenv

# -----------------------------------------------------------------------------
# .env loading
#
# Prefer a .env in the repository root but allow fallback to whatever
# python-dotenv discovers from the current working directory.  As a last
# resort, a .env alongside the backend package may be used.  Files are loaded
# in order without overriding already-set variables.

_THIS_FILE = Path(__file__).resolve()
_REPO_ROOT = _THIS_FILE.parents[3]
_ROOT_ENV = _REPO_ROOT / ".env"

_candidate_envs: list[str] = []
if _ROOT_ENV.exists():
    _candidate_envs.append(str(_ROOT_ENV))

_FOUND_ENV = find_dotenv(usecwd=True)
if _FOUND_ENV and _FOUND_ENV not in _candidate_envs:
    _candidate_envs.append(_FOUND_ENV)

_LOCAL_ENV = (_THIS_FILE.parent.parent.parent / ".env").as_posix()
if os.path.exists(_LOCAL_ENV) and _LOCAL_ENV not in _candidate_envs:
    _candidate_envs.append(_LOCAL_ENV)

for _env_path in _candidate_envs:
    load_dotenv(dotenv_path=_env_path, override=False)


class Settings(BaseSettings):
    """Application settings.

    Values are loaded from the environment with sensible defaults.  Any
    attribute defined here can be overridden by setting the corresponding
    environment variable.
    """

    model_config = SettingsConfigDict(
        env_file=tuple(_candidate_envs) if _candidate_envs else (".env",),
        case_sensitive=True,
        extra="allow",
    )

    # API Settings
    PROJECT_NAME: str = "BuildLedger Receipts"
    ENVIRONMENT: str = Field(default="development")
    LOG_LEVEL: str = Field(default="INFO")

    # Database.  When unset in development a local SQLite file is used.
    DATABASE_URL: Optional[str] = Field(default=None)

    # Auth.  Tokens are issued by the account service and carry
    # userId / companyId / role claims.
    JWT_SECRET: str = Field(default="changeme")
    JWT_ALGORITHM: str = Field(default="HS256")

    # Storage
    STORAGE_BACKEND: str = Field(default="minio")
    MINIO_ENDPOINT: str = Field(default="localhost:9000")
    MINIO_ACCESS_KEY: str = Field(default="minioadmin")
    MINIO_SECRET_KEY: str = Field(default="minioadmin")
    MINIO_BUCKET_NAME: str = Field(default="construction-receipts")
    MINIO_USE_SSL: bool = Field(default=False)
    MINIO_REGION: Optional[str] = Field(default="us-east-1")
    STORAGE_DIRECTORY: str = Field(default="./storage")
    # Base URL used by the filesystem backend when building signed links
    PUBLIC_BASE_URL: str = Field(default="http://localhost:8000")
    SIGNING_SECRET: str = Field(default="changeme")
    SIGNED_URL_TTL: int = Field(default=3600)

    # File Upload
    MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024  # 10MB
    MAX_BATCH_FILES: int = 10
    ALLOWED_MIME_TYPES: dict[str, list[str]] = {
        ".jpg": ["image/jpeg", "image/jpg"],
        ".jpeg": ["image/jpeg", "image/jpg"],
        ".png": ["image/png"],
        ".pdf": ["application/pdf"],
        ".heic": ["image/heic", "image/heif"],
        ".heif": ["image/heif", "image/heic"],
    }
    MIN_IMAGE_WIDTH: int = 100
    MIN_IMAGE_HEIGHT: int = 100

    # Image processing
    THUMBNAIL_MAX_WIDTH: int = 400
    THUMBNAIL_QUALITY: int = 80
    CONVERSION_QUALITY: int = 90
    THUMBNAIL_CACHE_CONTROL: str = "max-age=31536000"
    # When true, an upload whose thumbnail could not be written is still
    # saved (status FAILED, no thumbnail) instead of being rolled back.
    KEEP_ORIGINAL_ON_THUMBNAIL_FAILURE: bool = Field(default=False)

    # CORS
    BACKEND_CORS_ORIGINS: list[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
    )

    # Sentry
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_PROFILES_SAMPLE_RATE: float = Field(default=0.0)
    SENTRY_RELEASE: Optional[str] = Field(default=None)


# Instantiate global settings
settings = Settings()
