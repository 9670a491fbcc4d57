from __future__ import annotations

import asyncio
import threading
import time
from typing import Callable, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from latchkey.config import Settings, get_settings, reset_settings_cache
from latchkey.logging import get_logger
from latchkey.service.auth import AuthService
from latchkey.service.shares import ShareLinkService
from latchkey.service.vote_codes import VoteCodeService
from latchkey.storage.common import KeyValueStore
from latchkey.storage.memory import MemoryCache
from latchkey.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL before it is logged.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store and singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        cache: Optional[KeyValueStore] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or time.time
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.cache: KeyValueStore = cache or self._connect_cache()
        self.auth = AuthService(self.cache, self.settings, clock=self.clock)
        self.shares = ShareLinkService(self.cache, self.settings, clock=self.clock)
        self.vote_codes = VoteCodeService(self.cache, self.settings, clock=self.clock)

        logger.info(
            "runtime_initialized",
            cache_type=type(self.cache).__name__,
            security_warnings=len(self.settings.security_warnings()),
        )

    def _connect_cache(self) -> KeyValueStore:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except RedisError as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for sessions, revocation and share links; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions, revocations and "
                "share links live in process memory only."
            ),
            mode=fallback_mode,
        )
        return MemoryCache(clock=self.clock)

    async def close(self) -> None:
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.close())
            else:
                loop.create_task(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit backed by the runtime's store.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return tuple of (allowed, remaining, reset_seconds)

    Returns:
        bool if return_remaining is False, else (bool, int, int) tuple
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    return await runtime.cache.check_rate_limit(
        key, limit, window_seconds, return_remaining=return_remaining, cost=cost
    )


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests", "check_rate_limit"]
