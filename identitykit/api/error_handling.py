from __future__ import annotations

from typing import Any, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from identitykit.api.schemas import Envelope, ErrorBody, Violation
from identitykit.logging import get_correlation_id, get_logger, sanitize_error_message
from identitykit.service.errors import ServerError, ServiceError, ValidationError

logger = get_logger(__name__)


def _error_response(
    status_code: int,
    code: str,
    title: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    error_body = ErrorBody(
        code=code, title=title, message=message, status=status_code, details=details
    )
    request_id = get_correlation_id()
    if request_id:
        envelope = Envelope(status="error", error=error_body, request_id=request_id)
    else:
        envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def _violations(errors: List[dict]) -> List[dict]:
    """Flatten pydantic error entries into ``{field, message}`` pairs."""
    violations = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query")]
        message = str(err.get("msg", "invalid value"))
        # pydantic prefixes messages raised from validators
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        violations.append(
            Violation(field=".".join(loc) or "request", message=message).model_dump()
        )
    return violations


def register_exception_handlers(app: FastAPI) -> None:
    """Install the envelope-producing handlers for service and validation errors."""

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _error_response(
            exc.status_code, exc.error_code, exc.title, exc.message, exc.detail or None
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        violations = _violations(list(exc.errors()))
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[v["field"] for v in violations],
        )
        return _error_response(
            ValidationError.status_code,
            ValidationError.error_code,
            ValidationError.title,
            "request validation failed",
            violations,
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
            return _error_response(
                exc.status_code, ServerError.error_code, ServerError.title, sanitize_error_message(message)
            )
        return _error_response(
            exc.status_code, "HTTP_ERROR", "Request failed", message
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(
            500, ServerError.error_code, ServerError.title, "internal server error"
        )
