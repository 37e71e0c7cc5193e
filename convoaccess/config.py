from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from convoaccess.logging import get_logger

logger = get_logger(__name__)

# 16 bytes = 128 bits, the floor for an unguessable bearer token.
MIN_JOIN_TOKEN_BYTES = 16


class StoreBackend(str, Enum):
    """Persistence backends the runtime knows how to build."""

    MEMORY = "memory"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the conversation access subsystem."""

    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    app_base_url: str = env_field(
        "http://localhost:8000",
        "APP_BASE_URL",
        description="Base URL used to build shareable join links",
    )
    # Join links
    join_link_default_expiry_days: int = env_field(
        7,
        "JOIN_LINK_DEFAULT_EXPIRY_DAYS",
        description="Expiry applied when the caller does not supply one",
    )
    join_link_max_expiry_days: int = env_field(365, "JOIN_LINK_MAX_EXPIRY_DAYS")
    join_token_bytes: int = env_field(
        24,
        "JOIN_TOKEN_BYTES",
        description="Random bytes per join token before URL-safe encoding",
    )
    token_retry_attempts: int = env_field(
        5,
        "TOKEN_RETRY_ATTEMPTS",
        description="Attempts at drawing a unique token before giving up",
    )
    count_rejoins_against_limit: bool = env_field(
        True,
        "COUNT_REJOINS_AGAINST_LIMIT",
        description="Whether a join by an already-active participant consumes a link use",
    )
    # Concurrency
    mutation_retry_attempts: int = env_field(
        3,
        "MUTATION_RETRY_ATTEMPTS",
        description="Reload-and-retry attempts after an optimistic version conflict",
    )
    lock_timeout_seconds: float = env_field(5.0, "LOCK_TIMEOUT_SECONDS")
    default_list_limit: int = env_field(50, "DEFAULT_LIST_LIMIT")
    test_mode: bool = env_field(False, "TEST_MODE")

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

    @field_validator("store_backend")
    @classmethod
    def _validate_store_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("join_token_bytes")
    @classmethod
    def _validate_token_bytes(cls, value: int) -> int:
        if value < MIN_JOIN_TOKEN_BYTES:
            raise ValueError(
                f"JOIN_TOKEN_BYTES must be at least {MIN_JOIN_TOKEN_BYTES}"
            )
        return value

    @field_validator(
        "join_link_default_expiry_days",
        "join_link_max_expiry_days",
        "token_retry_attempts",
        "mutation_retry_attempts",
        "default_list_limit",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("value must be a positive integer")
        return value

    @field_validator("lock_timeout_seconds")
    @classmethod
    def _validate_lock_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("LOCK_TIMEOUT_SECONDS must be greater than zero")
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            store_backend=_settings_cache.store_backend.value,
            test_mode=_settings_cache.test_mode,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
