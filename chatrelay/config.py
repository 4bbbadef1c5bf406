from __future__ import annotations

import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatrelay.logging import get_logger

logger = get_logger(__name__)


class TurnPolicy(str, Enum):
    """What happens when a message arrives for a conversation mid-turn.

    - QUEUE: wait until the in-flight turn completes or fails
    - REJECT: fail the new turn immediately with a conflict error
    """

    QUEUE = "queue"
    REJECT = "reject"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process settings for the relay, read from the environment and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/chatrelay", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/chatrelay", "SHARED_FS_ROOT")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Enables cross-process conversation locks when set",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows runtime resets and deterministic engine behaviour in tests.",
    )

    # Credentials
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("chatrelay", "JWT_ISSUER")
    jwt_audience: str = env_field("chatrelay-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        24 * 60, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime"
    )

    # Generation engine
    openai_api_key: str | None = env_field(None, "OPENAI_API_KEY")
    openai_base_url: str | None = env_field(None, "OPENAI_BASE_URL")
    model: str = env_field("gpt-4o-mini", "MODEL")
    assistant_name: str = env_field("Chatbot", "ASSISTANT_NAME")
    assistant_instructions: str = env_field(
        "You are a helpful assistant that remembers conversation context.",
        "ASSISTANT_INSTRUCTIONS",
    )
    engine_timeout_seconds: float = env_field(
        60.0, "ENGINE_TIMEOUT_SECONDS", description="Timeout for each engine call"
    )

    # Conversations
    title_max_length: int = env_field(
        30, "TITLE_MAX_LENGTH", description="Prefix length used for auto titles"
    )
    turn_policy: TurnPolicy = env_field(TurnPolicy.QUEUE, "TURN_POLICY")
    conversation_list_limit: int = env_field(100, "CONVERSATION_LIST_LIMIT")
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )

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

    @field_validator("turn_policy")
    @classmethod
    def _validate_turn_policy(cls, value: TurnPolicy) -> TurnPolicy:
        return TurnPolicy(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("title_max_length")
    @classmethod
    def _validate_title_length(cls, value: int) -> int:
        if value < 1:
            raise ValueError("title_max_length must be positive")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/chatrelay"))
        secret_path = fs_root / ".jwt_secret"
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
        except Exception as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except Exception as exc:
                logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

        generated = secrets.token_urlsafe(64)
        try:
            secret_path.write_text(generated)
            os.chmod(secret_path, 0o600)
        except Exception as exc:
            logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
