from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from kbsync.logging import get_logger

logger = get_logger(__name__)

MIB = 1024 * 1024


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the configuration sync service."""

    database_url: str = env_field("postgresql://localhost:5432/kbsync", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    archive_endpoint: str | None = env_field(
        None,
        "ARCHIVE_ENDPOINT",
        description="S3-compatible endpoint (host:port) of the object archive; unset selects ARCHIVE_ROOT (test/dev only)",
    )
    archive_access_key: str | None = env_field(None, "ARCHIVE_ACCESS_KEY")
    archive_secret_key: str | None = env_field(None, "ARCHIVE_SECRET_KEY")
    archive_bucket: str = env_field("kbsync-archive", "ARCHIVE_BUCKET")
    archive_secure: bool = env_field(True, "ARCHIVE_SECURE")
    archive_region: str | None = env_field(None, "ARCHIVE_REGION")
    archive_root: str = env_field(
        "/srv/kbsync/archive",
        "ARCHIVE_ROOT",
        description="Local archive directory used when no ARCHIVE_ENDPOINT is set",
    )
    state_root: str = env_field("/srv/kbsync", "STATE_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    # test_mode is declared before jwt_secret so its validator can read it
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and in-process fallbacks",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")

    vector_index_host: str | None = env_field(
        None,
        "VECTOR_INDEX_HOST",
        description="Vector index host; unset selects the in-memory index (test/dev only)",
    )
    vector_index_api_key: str | None = env_field(None, "VECTOR_INDEX_API_KEY")
    vector_index_api_version: str = env_field("2025-04", "VECTOR_INDEX_API_VERSION")
    vector_index_timeout_seconds: float = env_field(30.0, "VECTOR_INDEX_TIMEOUT_SECONDS")

    storage_quota_bytes: int = env_field(10 * MIB, "STORAGE_QUOTA_BYTES")
    max_file_size_bytes: int = env_field(10 * MIB, "MAX_FILE_SIZE_BYTES")
    max_rules_per_request: int = env_field(100, "MAX_RULES_PER_REQUEST")
    max_files_per_request: int = env_field(50, "MAX_FILES_PER_REQUEST")
    max_rule_chars: int = env_field(10000, "MAX_RULE_CHARS")

    config_cache_ttl_seconds: int = env_field(300, "CONFIG_CACHE_TTL_SECONDS")
    update_rate_limit: int = env_field(100, "UPDATE_RATE_LIMIT")
    update_rate_limit_window_seconds: int = env_field(60, "UPDATE_RATE_LIMIT_WINDOW_SECONDS")
    update_guard_stale_seconds: int = env_field(
        300,
        "UPDATE_GUARD_STALE_SECONDS",
        description="Age after which an abandoned in-progress flag may be reclaimed",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("kbsync", "JWT_ISSUER")
    jwt_audience: str = env_field("kbsync-clients", "JWT_AUDIENCE")

    default_page_size: int = env_field(20, "DEFAULT_PAGE_SIZE")
    max_page_size: int = env_field(100, "MAX_PAGE_SIZE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "storage_quota_bytes",
        "max_file_size_bytes",
        "max_rules_per_request",
        "max_files_per_request",
        "max_rule_chars",
        "config_cache_ttl_seconds",
        "update_rate_limit",
        "update_rate_limit_window_seconds",
        "update_guard_stale_seconds",
        "default_page_size",
        "max_page_size",
    )
    @classmethod
    def _require_positive(cls, value: int, info: ValidationInfo) -> int:
        if value <= 0:
            raise ValueError(f"{info.field_name} must be positive")
        return value

    @field_validator("vector_index_timeout_seconds")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("vector_index_timeout_seconds must be positive")
        return value

    @field_validator("archive_bucket")
    @classmethod
    def _require_bucket(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("archive_bucket must not be empty")
        return value

    @field_validator("vector_index_host", "archive_endpoint")
    @classmethod
    def _normalize_host(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        for prefix in ("https://", "http://"):
            if value.startswith(prefix):
                value = value[len(prefix) :]
        return value.rstrip("/") or None

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        if info.data.get("test_mode"):
            logger.warning("jwt_secret_generated", reason="test_mode")
            return secrets.token_urlsafe(64)
        raise ValueError("JWT_SECRET must be set outside TEST_MODE")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
