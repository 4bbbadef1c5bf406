from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation ID for the current HTTP request or realtime connection
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Event keys whose values are masked before rendering
SECRET_KEY_FRAGMENTS = frozenset(
    {"password", "secret", "token", "api_key", "authorization", "credential"}
)

MAX_CLIENT_ERROR_LENGTH = 500


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's id, or mint one, for every log line in this context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_connection_context(connection_id: str, user_id: Optional[str]) -> None:
    """Attach the realtime connection and its owner to subsequent log lines.

    Turn tasks started from the connection's reader copy this context, so
    their events carry the same fields.
    """
    structlog.contextvars.bind_contextvars(connection_id=connection_id, user_id=user_id)


def clear_connection_context() -> None:
    structlog.contextvars.unbind_contextvars("connection_id", "user_id")


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        if any(fragment in key.lower() for fragment in SECRET_KEY_FRAGMENTS):
            event_dict[key] = _mask(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, console: bool = False
) -> None:
    """Install the structlog pipeline.

    JSON lines by default; ``console`` (or ``json_output=False``) switches to
    the colored development renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if console or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True),
    console=_env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Internal detail that must not reach a chat client: store and driver errors,
# state file paths, upstream credentials and tracebacks
_CLIENT_UNSAFE_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"(?i)\b(sql|query|select|insert|update|delete|where|from|join)\b\s+.{0,50}",
        r"(?i)(database|psycopg|postgres|redis)\s+error",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv|root)/\S+",
        r"(?i)[a-z]:\\\S+",
        r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*\S+",
        r"(?i)\bsk-[a-z0-9_-]{8,}",
        r"(?i)bearer\s+[a-z0-9._-]+",
        r"(?i)traceback\s*\(most recent call last\)",
        r'(?i)file\s+"[^"]+",\s+line\s+\d+',
    )
)


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip internal detail from ``error`` before it is shown to a client.

    Returns a generic message for empty input and truncates long text.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _CLIENT_UNSAFE_PATTERNS:
        result = pattern.sub(replacement, result)

    if len(result) > MAX_CLIENT_ERROR_LENGTH:
        result = result[: MAX_CLIENT_ERROR_LENGTH - 3] + "..."
    return result
