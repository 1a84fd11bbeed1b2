from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# X-Request-ID of the request being served; also the envelope's request_id
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

_MAX_REQUEST_ID_LENGTH = 128
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]+$")


def get_correlation_id() -> Optional[str]:
    return request_id_var.get()


def set_correlation_id(candidate: Optional[str] = None) -> str:
    """Adopt the caller's X-Request-ID when it is well formed, else mint one."""
    if (
        candidate
        and len(candidate) <= _MAX_REQUEST_ID_LENGTH
        and _REQUEST_ID_RE.match(candidate)
    ):
        request_id = candidate
    else:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def mask_email(email: Optional[str]) -> str:
    """Keep the first two characters and the domain: ``ja***@example.com``."""
    if not email or "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


def mask_phone(phone: Optional[str]) -> str:
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) < 4:
        return "***"
    return "***" + digits[-3:]


# Event keys that never reach the log sink unmasked
_SECRET_KEYS = ("password", "secret", "token", "authorization", "jwt")
_CODE_KEYS = ("code", "verification_code", "reset_code")


def _mask_value(key: str, value: Any) -> Any:
    if not isinstance(value, str):
        return value
    if key in _CODE_KEYS or any(part in key for part in _SECRET_KEYS):
        return "***"
    if "email" in key:
        return mask_email(value)
    if "phone" in key:
        return mask_phone(value)
    return value


def _add_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    request_id = request_id_var.get()
    if request_id:
        event_dict.setdefault("request_id", request_id)
    return event_dict


def _redact(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        event_dict[key] = _mask_value(key.lower(), value)
    return event_dict


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure structlog for the API process.

    ``fmt`` is ``json`` for log shipping or ``console`` for local runs.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_id,
        _redact,
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "console":
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


configure_logging(os.getenv("LOG_LEVEL", "INFO"), os.getenv("LOG_FORMAT", "json").lower())


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_LEAKY_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?i)(postgres(?:ql)?|redis)://\S+",
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)(password|secret|token|jwt_secret)\s*[:=]\s*\S+",
        r"(?i)bearer\s+[\w.-]+",
        r"(?i)/(?:srv|home|var|etc|tmp)/\S+",
    )
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip DSNs, SQL fragments, credentials and paths from ``error``; cap at 300 chars."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _LEAKY_PATTERNS:
        error = pattern.sub(replacement, error)
    return error if len(error) <= 300 else error[:297] + "..."
