from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from fastapi import Header, HTTPException, Request, Response

from findclass.logging import get_logger
from findclass.service.auth import AuthContext
from findclass.service.runtime import check_rate_limit, get_runtime
from findclass.storage.models import UserRole

logger = get_logger(__name__)


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Any = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    """An HTTPException whose detail is already the error envelope body."""
    error: Dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return HTTPException(
        status_code=status_code, detail={"status": "error", "error": error}, headers=headers
    )


@dataclass(frozen=True)
class RateLimitInfo:
    limit: int
    remaining: int
    reset_seconds: int

    def headers(self) -> dict:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Spend one request from ``key``; 429 with ``Retry-After`` once the bucket is empty.

    The ``X-RateLimit-*`` headers go on ``response`` when one is given and on
    the 429 otherwise.
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        response.headers.update(info.headers())
    if allowed:
        return info
    # Only the key's scope is logged; the rest holds emails and addresses
    logger.warning("rate_limit_exceeded", scope=key.split(":", 1)[0], limit=limit)
    raise _http_error(
        "rate_limited",
        "rate limit exceeded",
        status_code=429,
        headers={**info.headers(), "Retry-After": str(info.reset_seconds)},
    )


def client_meta(request: Request) -> dict:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return ctx


async def get_optional_user(
    authorization: Optional[str] = Header(None),
) -> Optional[AuthContext]:
    if not authorization:
        return None
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


def require_roles(*roles: str) -> Callable:
    """Build a dependency admitting only ``roles``; ADMIN always passes."""
    allowed = {str(role) for role in roles} | {UserRole.ADMIN.value}

    async def _dependency(authorization: Optional[str] = Header(None)) -> AuthContext:
        ctx = await get_user(authorization)
        if ctx.role not in allowed:
            logger.info("role_check_failed", user_id=ctx.user_id, role=ctx.role)
            raise _http_error(
                "forbidden",
                "insufficient permissions",
                status_code=403,
                details={"required_roles": sorted(allowed)},
            )
        return ctx

    return _dependency


get_admin_user = require_roles(UserRole.ADMIN.value)


__all__ = [
    "RateLimitInfo",
    "_enforce_rate_limit",
    "_http_error",
    "client_meta",
    "get_admin_user",
    "get_optional_user",
    "get_user",
    "require_roles",
]
