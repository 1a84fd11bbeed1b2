from __future__ import annotations

import hashlib
import inspect
import time
from typing import Any, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# KEYS[1] bucket hash; ARGV now, tokens per second, capacity, cost.
# Returns {allowed, tokens left, seconds until the cost fits again}.
_BUCKET_LUA = """
local bucket = KEYS[1]
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call('HMGET', bucket, 'level', 'stamp')
local level = tonumber(state[1]) or capacity
local stamp = tonumber(state[2]) or now
level = math.min(capacity, level + math.max(0, now - stamp) * rate)

local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / rate)
end
redis.call('HSET', bucket, 'level', level, 'stamp', now)
redis.call('EXPIRE', bucket, math.max(1, math.ceil(capacity / rate)))
return {allowed, math.floor(level), wait}
"""


async def _resolve(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class RedisCache:
    """Redis-backed token denylist, verification codes and rate-limit buckets.

    Every method is awaitable. The commands go through ``self.client``, which
    is a ``redis.asyncio`` client here and a blocking client in
    ``SyncRedisCache``; results are awaited only when the client returns a
    coroutine.
    """

    OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = self._connect(redis_url, socket_timeout)
        self._bucket = self.client.register_script(_BUCKET_LUA)

    def _connect(self, redis_url: str, socket_timeout: float):
        return aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _bucket_key(name: str) -> str:
        # Rate keys embed emails and addresses; hash them into a fixed shape
        return f"rate:{hashlib.sha256(name.encode()).hexdigest()}"

    @staticmethod
    def _code_key(email: str, code_type: str) -> str:
        return f"verify:{email}:{code_type}"

    @staticmethod
    def _sends_key(email: str, code_type: str) -> str:
        return f"verify:sent:{email}:{code_type}"

    @staticmethod
    def _revoked_key(token_type: str, jti: str) -> str:
        if token_type == "refresh":
            return f"auth:refresh:revoked:{jti}"
        return f"auth:access:denylist:{jti}"

    def verify_connection(self) -> None:
        """Blocking PING used at start-up and by the readiness probe."""
        probe = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            probe.ping()
        finally:
            probe.close()

    async def ping(self) -> bool:
        return bool(await _resolve(self.client.ping()))

    # -- rate limiting -------------------------------------------------------

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Spend ``cost`` tokens from a bucket holding ``limit`` per ``window_seconds``."""
        allowed, left, wait = await _resolve(
            self._bucket(
                keys=[self._bucket_key(key)],
                args=[time.time(), limit / window_seconds, limit, max(1, cost)],
            )
        )
        ok = bool(int(allowed))
        if return_remaining:
            return ok, max(0, int(left)), int(wait or 0)
        return ok

    # -- verification codes --------------------------------------------------

    async def hit_send_window(self, email: str, code_type: str, window_seconds: int) -> int:
        """Record one code send and return the number of sends in the window."""
        key = self._sends_key(email, code_type)
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds, nx=True)
        count, _ = await _resolve(pipe.execute())
        return int(count)

    async def store_verification_code(
        self, email: str, code_type: str, code: str, ttl_seconds: int
    ) -> None:
        await _resolve(self.client.set(self._code_key(email, code_type), code, ex=ttl_seconds))

    async def get_verification_code(self, email: str, code_type: str) -> Optional[str]:
        return await _resolve(self.client.get(self._code_key(email, code_type)))

    async def delete_verification_code(self, email: str, code_type: str) -> None:
        await _resolve(self.client.delete(self._code_key(email, code_type)))

    # -- token revocation ----------------------------------------------------

    async def _mark(self, token_type: str, jti: str, ttl_seconds: int) -> None:
        # Expired tokens fail verification anyway
        if ttl_seconds > 0:
            await _resolve(self.client.set(self._revoked_key(token_type, jti), "1", ex=ttl_seconds))

    async def _marked(self, token_type: str, jti: str) -> bool:
        return bool(await _resolve(self.client.exists(self._revoked_key(token_type, jti))))

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        await self._mark("access", jti, ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return await self._marked("access", jti)

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        await self._mark("refresh", jti, ttl_seconds)

    async def is_refresh_revoked(self, jti: str) -> bool:
        return await self._marked("refresh", jti)

    async def close(self) -> None:
        # redis.asyncio clients close through aclose(); blocking ones through close()
        closer = getattr(self.client, "aclose", None) or self.client.close
        await _resolve(closer())


class SyncRedisCache(RedisCache):
    """``RedisCache`` over a blocking client.

    Test runs start a fresh event loop per test; a blocking connection pool is
    never bound to any of them.
    """

    def _connect(self, redis_url: str, socket_timeout: float):
        return Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        self.client.ping()


__all__ = ["RedisCache", "SyncRedisCache"]
