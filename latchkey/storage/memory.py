from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Mapping, Optional, Sequence, Set, Tuple, Union


Clock = Callable[[], float]


class MemoryCache:
    """In-process stand-in for RedisCache used by tests and local development.

    Mirrors the RedisCache surface, including TTLs, set-if-absent and the
    token bucket. Each call runs under one lock, matching the single-key
    atomicity of a Redis server. Expiry is evaluated lazily against the
    injected clock so tests can move time forward.
    """

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self.clock: Clock = clock or time.time
        self._values: Dict[str, str] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._expiry: Dict[str, float] = {}
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def _purge(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and self.clock() >= deadline:
            self._values.pop(key, None)
            self._sets.pop(key, None)
            self._expiry.pop(key, None)

    def _alive(self, key: str) -> bool:
        self._purge(key)
        return key in self._values or key in self._sets

    def _arm(self, key: str, seconds: Optional[int]) -> None:
        if seconds is None:
            self._expiry.pop(key, None)
        else:
            self._expiry[key] = self.clock() + max(1, int(seconds))

    def ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires, None if it has no expiry or is absent."""
        with self._lock:
            if not self._alive(key) or key not in self._expiry:
                return None
            return self._expiry[key] - self.clock()

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._purge(key)
            return self._values.get(key)

    async def get_many(self, keys: Sequence[str]) -> list[Optional[str]]:
        with self._lock:
            result = []
            for key in keys:
                self._purge(key)
                result.append(self._values.get(key))
            return result

    async def set(
        self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False
    ) -> bool:
        with self._lock:
            if nx and self._alive(key):
                return False
            self._sets.pop(key, None)
            self._values[key] = str(value)
            self._arm(key, ex)
            return True

    async def delete(self, *keys: str) -> int:
        with self._lock:
            removed = 0
            for key in keys:
                if self._alive(key):
                    removed += 1
                self._values.pop(key, None)
                self._sets.pop(key, None)
                self._expiry.pop(key, None)
            return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._alive(key)

    async def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            if not self._alive(key):
                return False
            self._arm(key, seconds)
            return True

    async def incr(self, key: str) -> int:
        with self._lock:
            return self._incr(key)

    def _incr(self, key: str) -> int:
        self._purge(key)
        current = self._values.get(key)
        try:
            value = int(current) + 1 if current is not None else 1
        except ValueError:
            raise ValueError(f"value at {key} is not an integer") from None
        self._values[key] = str(value)
        return value

    async def incr_with_expiry(self, key: str, seconds: int) -> int:
        with self._lock:
            count = self._incr(key)
            self._arm(key, seconds)
            return count

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            self._purge(key)
            bucket = self._sets.setdefault(key, set())
            before = len(bucket)
            bucket.update(members)
            return len(bucket) - before

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            self._purge(key)
            bucket = self._sets.get(key)
            if not bucket:
                return 0
            before = len(bucket)
            bucket.difference_update(members)
            if not bucket:
                self._sets.pop(key, None)
                self._expiry.pop(key, None)
            return before - len(bucket)

    async def smembers(self, key: str) -> set[str]:
        with self._lock:
            self._purge(key)
            return set(self._sets.get(key, set()))

    async def scard(self, key: str) -> int:
        with self._lock:
            self._purge(key)
            return len(self._sets.get(key, set()))

    async def set_and_track(
        self,
        key: str,
        value: str,
        *,
        ex: Optional[int] = None,
        sets: Mapping[str, str],
        set_ttl: Optional[int] = None,
    ) -> None:
        with self._lock:
            self._sets.pop(key, None)
            self._values[key] = str(value)
            self._arm(key, ex)
            for set_key, member in sets.items():
                self._purge(set_key)
                self._sets.setdefault(set_key, set()).add(member)
                if set_ttl:
                    self._arm(set_key, set_ttl)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        now = self.clock()
        refill_rate = float(limit) / float(window_seconds)
        with self._lock:
            tokens, last_ts = self._buckets.get(key, (float(limit), now))
            elapsed = max(0.0, now - last_ts)
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now)
            reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
            remaining = int(tokens)
        if return_remaining:
            return (allowed, remaining, reset_seconds)
        return allowed

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()
            self._expiry.clear()
            self._buckets.clear()


__all__ = ["MemoryCache", "Clock"]
