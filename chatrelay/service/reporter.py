from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict

import httpx
import openai

from chatrelay.logging import get_logger, sanitize_error_message
from chatrelay.service.errors import ServiceError
from chatrelay.storage.errors import StorageError

logger = get_logger(__name__)

UPSTREAM_MESSAGE = "generation engine unavailable"
PERSISTENCE_MESSAGE = "storage operation failed"
INTERNAL_MESSAGE = "An internal error occurred"


@dataclass(frozen=True)
class ErrorReport:
    kind: str
    safe_message: str
    status_code: int

    def to_event(self) -> Dict[str, Any]:
        """Payload for a realtime ``error`` event."""
        return {"message": self.safe_message, "code": self.kind}


class ErrorReporter:
    """Map internal failures to a stable kind plus a client-safe message."""

    def classify(self, error: BaseException) -> ErrorReport:
        if isinstance(error, ServiceError):
            return ErrorReport(
                kind=error.error_code,
                safe_message=sanitize_error_message(error.message),
                status_code=error.status_code,
            )
        if isinstance(error, StorageError):
            return ErrorReport("persistence_error", PERSISTENCE_MESSAGE, 500)
        if isinstance(error, (openai.APIError, httpx.HTTPError, asyncio.TimeoutError)):
            return ErrorReport("upstream_error", UPSTREAM_MESSAGE, 500)
        return ErrorReport("server_error", INTERNAL_MESSAGE, 500)

    def report(self, error: BaseException, **context: Any) -> ErrorReport:
        """Classify ``error`` and log it once with the caller's context."""
        result = self.classify(error)
        log_fn = logger.error if result.status_code >= 500 else logger.warning
        log_fn(
            "error_reported",
            kind=result.kind,
            error_type=type(error).__name__,
            error=str(error),
            **context,
        )
        return result
