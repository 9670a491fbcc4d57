"""Contract shared by the Redis and in-memory key-value backends."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Mapping, Optional, Protocol, Sequence, Tuple, Union


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def get_many(self, keys: Sequence[str]) -> list[Optional[str]]: ...

    async def set(
        self, key: str, value: str, *, ex: Optional[int] = None, nx: bool = False
    ) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def expire(self, key: str, seconds: int) -> bool: ...

    async def incr(self, key: str) -> int: ...

    async def incr_with_expiry(self, key: str, seconds: int) -> int: ...

    async def sadd(self, key: str, *members: str) -> int: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> set[str]: ...

    async def scard(self, key: str) -> int: ...

    async def set_and_track(
        self,
        key: str,
        value: str,
        *,
        ex: Optional[int] = None,
        sets: Mapping[str, str],
        set_ttl: Optional[int] = None,
    ) -> None: ...

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


def utc_datetime(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


__all__ = ["KeyValueStore", "utc_datetime"]
