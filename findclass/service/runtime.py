from __future__ import annotations

import asyncio
import re
import threading
import time
from typing import Dict, Optional, Tuple, Union

from findclass.config import Settings, get_settings, reset_settings_cache
from findclass.logging import get_logger
from findclass.service.auth import AuthService
from findclass.service.courses import CourseService
from findclass.service.email import EmailService
from findclass.service.inquiries import InquiryService
from findclass.service.reviews import ReviewService
from findclass.service.roles import RoleService
from findclass.service.search import SearchService
from findclass.service.teachers import TeacherService
from findclass.service.users import UserService
from findclass.storage.memory import MemoryStore
from findclass.storage.postgres import PostgresStore
from findclass.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

_URL_PASSWORD = re.compile(r"(?P<head>[a-z][a-z0-9+.-]*://[^:/@]*:)[^@]*(?P<tail>@)", re.I)

FALLBACK_WINDOW_SECONDS = 60


def redact_url(url: Optional[str]) -> Optional[str]:
    """``redis://:hunter2@cache:6379`` -> ``redis://:***@cache:6379``."""
    if not url:
        return url
    return _URL_PASSWORD.sub(r"\g<head>***\g<tail>", url)


def _open_store(settings: Settings):
    kind = "memory" if settings.use_memory_store else "postgres"
    try:
        store = MemoryStore() if kind == "memory" else PostgresStore(settings.database_url)
    except Exception as exc:
        logger.error("store_open_failed", store=kind, error_type=type(exc).__name__, error=str(exc))
        raise
    logger.info("store_opened", store=kind)
    return store


def _open_cache(settings: Settings) -> Optional[RedisCache]:
    """Connect to Redis, or return ``None`` where running without it is allowed."""
    failure: Optional[Exception] = None
    if settings.redis_url:
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc
    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is unreachable; token revocation, verification codes and rate limits "
            "need it outside TEST_MODE unless ALLOW_REDIS_FALLBACK_DEV=true"
        ) from failure
    logger.warning(
        "cache_in_process_fallback",
        redis_url=redact_url(settings.redis_url),
        reason=str(failure) if failure else "REDIS_URL not set",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


class Runtime:
    """Process-wide wiring of the store, the cache and the domain services."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.store = _open_store(self.settings)
        self.cache = _open_cache(self.settings)
        self.email = EmailService.from_settings(self.settings)

        self.auth = AuthService(self.store, self.cache, self.settings, email_service=self.email)

        self.roles = RoleService(self.store)
        self.teachers = TeacherService(self.store)
        self.courses = CourseService(self.store)
        self.reviews = ReviewService(self.store)
        self.users = UserService(self.store, self.auth, self.reviews)
        self.inquiries = InquiryService(self.store)
        self.search = SearchService(self.store)

        # key -> (tokens left, monotonic time of last refill, window); used without Redis
        self._local_rate_limits: Dict[str, Tuple[float, float, int]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_ready",
            cache="redis" if self.cache else "in-process",
            email="smtp" if self.email.is_configured else "outbox",
        )

    async def prune_rate_limits(self) -> int:
        """Forget in-process buckets idle for a full window; they are full again."""
        now = time.monotonic()
        async with self._local_rate_limit_lock:
            idle = [
                key
                for key, (_, last, window) in self._local_rate_limits.items()
                if now - last >= window
            ]
            for key in idle:
                del self._local_rate_limits[key]
        return len(idle)

    async def run_maintenance(self) -> None:
        expired = await asyncio.to_thread(self.auth.cleanup_expired_tokens)
        buckets = await self.prune_rate_limits()
        logger.info("maintenance_complete", expired_tokens=expired, idle_buckets=buckets)

    def close(self) -> None:
        if self.cache is not None:
            try:
                if isinstance(self.cache, SyncRedisCache):
                    self.cache.client.close()
                else:
                    try:
                        asyncio.get_running_loop().create_task(self.cache.close())
                    except RuntimeError:
                        asyncio.run(self.cache.close())
            except Exception as exc:
                logger.debug("cache_close_failed", error=str(exc))
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Drop the current runtime and build a fresh one from re-read settings."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("reset_runtime_for_tests requires TEST_MODE=true")
        runtime = Runtime(settings)
        return runtime


async def _local_bucket(
    runtime: Runtime, key: str, limit: int, window_seconds: int, cost: int
) -> Tuple[bool, int, int]:
    per_second = limit / window_seconds
    now = time.monotonic()
    async with runtime._local_rate_limit_lock:
        tokens, last, _ = runtime._local_rate_limits.get(key, (float(limit), now, window_seconds))
        tokens = min(float(limit), tokens + (now - last) * per_second)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now, window_seconds)
    wait = 0 if allowed else int((cost - tokens) / per_second) + 1
    return allowed, int(tokens), wait


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Spend ``cost`` from the ``key`` bucket of ``limit`` tokens per window.

    Goes to Redis when the runtime has a cache and to an in-process bucket
    otherwise. A ``limit`` of zero or less disables the check. Returns
    ``allowed`` or, with ``return_remaining``, ``(allowed, remaining,
    retry_after_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_window_invalid", key=key, window_seconds=window_seconds)
        window_seconds = FALLBACK_WINDOW_SECONDS
    if runtime.cache is not None:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    result = await _local_bucket(runtime, key, limit, window_seconds, cost)
    return result if return_remaining else result[0]


__all__ = [
    "Runtime",
    "check_rate_limit",
    "get_runtime",
    "redact_url",
    "reset_runtime_for_tests",
]
