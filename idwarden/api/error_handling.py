from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from idwarden.api.schemas import Envelope, ErrorBody
from idwarden.logging import get_logger, sanitize_error_message
from idwarden.service.errors import AuthorizationError, ServiceError
from idwarden.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(mode="json"), headers=headers
    )


def _request_context(request: Request) -> dict:
    return {"path": request.url.path, "method": request.method}


def _retry_after_header(exc: ServiceError) -> dict | None:
    retry_after = exc.detail.get("retry_after") if isinstance(exc.detail, dict) else None
    if exc.status_code == 429 and retry_after:
        return {"Retry-After": str(retry_after)}
    return None


def register_exception_handlers(app: FastAPI) -> None:
    """Install envelope-shaped handlers for domain, storage and framework errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            message=exc.message,
            detail=exc.detail,
            **_request_context(request),
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(AuthorizationError)
    async def handle_authorization_error(request: Request, exc: AuthorizationError):
        logger.info(
            "access_denied",
            reason=exc.detail.get("reason"),
            resource=exc.detail.get("resource"),
            **_request_context(request),
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=exc.error_code)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        message = exc.message
        if exc.status_code >= 500:
            message = sanitize_error_message(message)
            logger.error(
                "service_error",
                status_code=exc.status_code,
                error_code=exc.error_code,
                message=message,
                **_request_context(request),
            )
        else:
            logger.warning(
                "service_error",
                status_code=exc.status_code,
                error_code=exc.error_code,
                message=message,
                **_request_context(request),
            )
        return _error_response(
            exc.status_code,
            message,
            exc.detail,
            code=exc.error_code,
            headers=_retry_after_header(exc),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        logger.warning(
            "request_validation_failed", error_count=len(errors), **_request_context(request)
        )
        return _error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, dict) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                status_code=exc.status_code,
                message=sanitize_error_message(message),
                **_request_context(request),
            )
        return _error_response(exc.status_code, message, details, headers=exc.headers)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
            **_request_context(request),
        )
        return _error_response(500, "internal server error", code="server_error")
