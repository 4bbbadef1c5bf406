from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatrelay.api.schemas import Envelope, ErrorBody
from chatrelay.logging import get_correlation_id, get_logger
from chatrelay.service.errors import ServiceError
from chatrelay.service.reporter import ErrorReporter
from chatrelay.storage.errors import StorageError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code),
        message=message,
        details=details or None,
    )
    envelope = Envelope(status="error", error=error_body)
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def register_exception_handlers(app: FastAPI, reporter: ErrorReporter | None = None) -> None:
    """Install handlers that render every failure as an error envelope."""
    reporter = reporter or ErrorReporter()

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        report = reporter.report(exc, path=request.url.path, method=request.method)
        # 4xx details are client-facing field hints; 5xx details stay in the log
        details = exc.detail if report.status_code < 500 else None
        return _error_response(report.status_code, report.safe_message, details, code=report.kind)

    @app.exception_handler(StorageError)
    async def handle_storage_error(request: Request, exc: StorageError):
        report = reporter.report(exc, path=request.url.path, method=request.method)
        return _error_response(report.status_code, report.safe_message, code=report.kind)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", [])), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return _error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        report = reporter.report(
            exc, path=request.url.path, method=request.method, unhandled=True
        )
        return _error_response(report.status_code, report.safe_message, code=report.kind)
