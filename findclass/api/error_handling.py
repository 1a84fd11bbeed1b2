from __future__ import annotations

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from findclass.api.schemas import Envelope, ErrorBody
from findclass.logging import get_logger, sanitize_error_message
from findclass.service.errors import ServiceError
from findclass.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
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
    details: Any = None,
    code: Optional[str] = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    envelope = Envelope(
        status="error",
        error=ErrorBody(
            code=code or _error_code_for_status(status_code), message=message, details=details
        ),
    )
    return JSONResponse(
        status_code=status_code, content=jsonable_encoder(envelope.model_dump()), headers=headers
    )


def _log_failure(request: Request, status_code: int, event: str, **fields: Any) -> None:
    # 4xx are the caller's problem and stay at warning level
    log = logger.error if status_code >= 500 else logger.warning
    log(event, path=request.url.path, method=request.method, status_code=status_code, **fields)


def _validation_details(exc: RequestValidationError) -> list:
    """One ``{"field", "message"}`` entry per pydantic error, locations dotted."""
    details = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        details.append({"field": ".".join(loc) or None, "message": error.get("msg")})
    return details


def _retry_after_header(status_code: int, detail: Any) -> Optional[dict]:
    if status_code == 429 and isinstance(detail, dict) and detail.get("retry_after"):
        return {"Retry-After": str(detail["retry_after"])}
    return None


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as the ``{"status": "error", ...}`` envelope."""

    @app.exception_handler(ServiceError)
    async def service_error(request: Request, exc: ServiceError):
        _log_failure(
            request, exc.status_code, "service_error", error_code=exc.error_code, message=exc.message
        )
        return _error_response(
            exc.status_code,
            exc.message,
            exc.detail or None,
            code=exc.error_code,
            headers=_retry_after_header(exc.status_code, exc.detail),
        )

    @app.exception_handler(ConstraintViolation)
    async def constraint_violation(request: Request, exc: ConstraintViolation):
        _log_failure(request, 409, "constraint_violation", message=exc.message)
        return _error_response(409, exc.message, exc.detail or None, code="conflict")

    @app.exception_handler(RequestValidationError)
    async def request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        _log_failure(request, 400, "request_validation_error", fields=[d["field"] for d in details])
        return _error_response(400, "request validation failed", details, code="validation_error")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception(request: Request, exc: StarletteHTTPException):
        headers = getattr(exc, "headers", None)
        body = exc.detail.get("error") if isinstance(exc.detail, dict) else None
        if isinstance(body, dict):
            # Raised through dependencies._http_error with a ready-made error body
            code, message, details = body.get("code"), body.get("message", "http error"), body.get("details")
        else:
            # Routing failures such as an unknown path or method
            code = None
            message = exc.detail if isinstance(exc.detail, str) else "http error"
            details = None
        if exc.status_code >= 400 and exc.status_code != 404:
            _log_failure(request, exc.status_code, "http_error", error_code=code, message=message)
        return _error_response(exc.status_code, message, details, code=code, headers=headers)

    @app.exception_handler(Exception)
    async def uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "internal server error", code="server_error")
