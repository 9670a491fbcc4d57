from __future__ import annotations

import hashlib
import time
from contextlib import contextmanager
from typing import Iterator, Mapping, Optional, Sequence, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from latchkey.storage.errors import StoreUnavailableError


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise StoreUnavailableError(
            f"redis {operation} failed", {"error": type(exc).__name__}
        ) from exc


class RedisCache:
    """Thin Redis wrapper exposing the key-value primitives the services rely on.

    Every Redis failure surfaces as StoreUnavailableError so callers can
    decide between failing closed (authorization) and degrading (listings).
    """

    # Lua token bucket: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # A short-lived sync client keeps the async pool off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate-limit subjects so caller-supplied parts cannot collide."""
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    async def get(self, key: str) -> Optional[str]:
        with _translate_errors("get"):
            return await self.client.get(key)

    async def get_many(self, keys: Sequence[str]) -> list[Optional[str]]:
        if not keys:
            return []
        with _translate_errors("mget"):
            return list(await self.client.mget(list(keys)))

    async def set(
        self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False
    ) -> bool:
        """Write ``value``; with ``nx`` only when the key is absent. True if written."""
        with _translate_errors("set"):
            result = await self.client.set(key, value, ex=ex, nx=nx)
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        with _translate_errors("delete"):
            return int(await self.client.delete(*keys))

    async def exists(self, key: str) -> bool:
        with _translate_errors("exists"):
            return bool(await self.client.exists(key))

    async def expire(self, key: str, seconds: int) -> bool:
        with _translate_errors("expire"):
            return bool(await self.client.expire(key, max(1, int(seconds))))

    async def incr(self, key: str) -> int:
        with _translate_errors("incr"):
            return int(await self.client.incr(key))

    async def incr_with_expiry(self, key: str, seconds: int) -> int:
        """Increment a counter and (re)arm its expiry in one round trip."""
        with _translate_errors("incr_with_expiry"):
            pipe = self.client.pipeline()
            pipe.incr(key)
            pipe.expire(key, max(1, int(seconds)))
            count, _ = await pipe.execute()
        return int(count)

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        with _translate_errors("sadd"):
            return int(await self.client.sadd(key, *members))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        with _translate_errors("srem"):
            return int(await self.client.srem(key, *members))

    async def smembers(self, key: str) -> set[str]:
        with _translate_errors("smembers"):
            return set(await self.client.smembers(key))

    async def scard(self, key: str) -> int:
        with _translate_errors("scard"):
            return int(await self.client.scard(key))

    async def set_and_track(
        self,
        key: str,
        value: str,
        *,
        ex: Optional[int] = None,
        sets: Mapping[str, str],
        set_ttl: Optional[int] = None,
    ) -> None:
        """Write a record and add it to its index sets in one pipeline."""
        with _translate_errors("set_and_track"):
            pipe = self.client.pipeline()
            pipe.set(key, value, ex=ex)
            for set_key, member in sets.items():
                pipe.sadd(set_key, member)
                if set_ttl:
                    pipe.expire(set_key, set_ttl)
            await pipe.execute()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using the Redis-backed token bucket."""
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        with _translate_errors("check_rate_limit"):
            allowed, tokens, reset_after = await self._token_bucket(
                keys=[safe_key],
                args=[time.time(), refill_rate, limit, max(1, cost)],
            )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCache"]
