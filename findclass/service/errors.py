from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """A failure the API reports to the caller inside the error envelope.

    Subclasses fix ``status_code`` and ``error_code``. ``field`` is shorthand
    for ``detail={"field": field}`` and names the offending request field.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})
        if field:
            self.detail.setdefault("field", field)
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.error_code}: {self.message})"


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """The caller is signed in but does not own the resource or lacks the role."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate review, second teacher profile, pending inquiry and the like."""

    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.detail["retry_after"] = int(retry_after)


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


# Account flows report these codes so clients can branch without parsing text


class EmailExistsError(ConflictError):
    error_code = "email_exists"


class VerificationCodeExpiredError(ValidationError):
    error_code = "code_expired"


class InvalidVerificationCodeError(ValidationError):
    error_code = "invalid_code"


class InvalidRefreshTokenError(AuthenticationError):
    error_code = "invalid_refresh_token"


__all__ = [
    "AuthenticationError",
    "ConflictError",
    "EmailExistsError",
    "ForbiddenError",
    "InvalidRefreshTokenError",
    "InvalidVerificationCodeError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "ServiceError",
    "ValidationError",
    "VerificationCodeExpiredError",
]
