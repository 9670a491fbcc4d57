from __future__ import annotations

import secrets
import time
from typing import Callable, Optional

from latchkey.config import Settings
from latchkey.logging import get_logger
from latchkey.service.errors import ConflictError, ValidationError
from latchkey.storage.common import KeyValueStore, utc_datetime
from latchkey.storage.models import VoteCode

logger = get_logger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
CODE_PREFIX = "BD-"
CODE_INDEX_KEY = "votes:code-index"
# The index outlives the longest-lived code so revoke-all can still find it
INDEX_GRACE_SECONDS = 60 * 60


def _code_key(code: str) -> str:
    return f"votes:code:{code}"


def generate_code(alphabet: str = CODE_ALPHABET, length: int = CODE_LENGTH) -> str:
    return CODE_PREFIX + "".join(secrets.choice(alphabet) for _ in range(length))


class VoteCodeService:
    """Single-use voting codes handed out by staff.

    Codes are claimed with set-if-absent so concurrent minting can never
    hand out the same code twice, and redeemed by deleting the key so a
    code counts exactly once.
    """

    def __init__(
        self,
        cache: KeyValueStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
        code_factory: Optional[Callable[[], str]] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self.clock = clock or time.time
        self._code_factory = code_factory or generate_code
        self._max_attempts = max_attempts or settings.mint_max_attempts

    def _ttl_seconds(self, ttl_minutes: Optional[int]) -> int:
        minutes = self.settings.vote_code_default_ttl_minutes if ttl_minutes is None else int(ttl_minutes)
        minutes = max(
            self.settings.vote_code_min_ttl_minutes,
            min(minutes, self.settings.vote_code_max_ttl_minutes),
        )
        return minutes * 60

    async def _claim(self, ttl: int, issued_at: float) -> Optional[VoteCode]:
        for _ in range(self._max_attempts):
            code = self._code_factory()
            if await self.cache.set(_code_key(code), str(int(issued_at)), ex=ttl, nx=True):
                return VoteCode(code=code, ttl_seconds=ttl, expires_at=utc_datetime(issued_at + ttl))
        return None

    async def _track(self, codes: list[VoteCode]) -> None:
        if not codes:
            return
        await self.cache.sadd(CODE_INDEX_KEY, *(code.code for code in codes))
        # A fixed horizon keeps a short mint from shortening the life of the index
        index_ttl = self.settings.vote_code_max_ttl_minutes * 60 + INDEX_GRACE_SECONDS
        await self.cache.expire(CODE_INDEX_KEY, index_ttl)

    async def mint(self, ttl_minutes: Optional[int] = None) -> VoteCode:
        ttl = self._ttl_seconds(ttl_minutes)
        minted = await self._claim(ttl, self.clock())
        if minted is None:
            logger.error("vote_code_mint_exhausted", attempts=self._max_attempts)
            raise ConflictError("could not mint a unique vote code")
        await self._track([minted])
        logger.info("vote_code_minted", ttl_seconds=ttl)
        return minted

    async def mint_batch(self, count: int, ttl_minutes: Optional[int] = None) -> list[VoteCode]:
        if count < 1 or count > self.settings.vote_code_max_batch:
            raise ValidationError(
                f"count must be between 1 and {self.settings.vote_code_max_batch}"
            )
        ttl = self._ttl_seconds(ttl_minutes)
        issued_at = self.clock()
        minted: list[VoteCode] = []
        for _ in range(count):
            code = await self._claim(ttl, issued_at)
            if code is None:
                break
            minted.append(code)
        await self._track(minted)
        if len(minted) < count:
            logger.error("vote_code_batch_short", requested=count, minted=len(minted))
            raise ConflictError(
                "could not mint enough unique vote codes",
                detail={"requested": count, "minted": len(minted)},
            )
        logger.info("vote_code_batch_minted", count=count, ttl_seconds=ttl)
        return minted

    async def redeem(self, code: str) -> bool:
        """Consume a code; True exactly once per minted code."""
        raw = (code or "").strip()
        if not raw:
            return False
        variants = {raw, raw.upper(), raw.lower()}
        if not raw.upper().startswith(CODE_PREFIX):
            variants.add(CODE_PREFIX + raw.upper())
        consumed = await self.cache.delete(*(_code_key(variant) for variant in sorted(variants)))
        if consumed < 1:
            logger.info("vote_code_rejected")
            return False
        await self.cache.srem(CODE_INDEX_KEY, *variants)
        logger.info("vote_code_redeemed")
        return True

    async def revoke_all(self) -> int:
        codes = sorted(await self.cache.smembers(CODE_INDEX_KEY))
        revoked = await self.cache.delete(*(_code_key(code) for code in codes))
        await self.cache.delete(CODE_INDEX_KEY)
        logger.info("vote_codes_revoked", revoked=revoked, indexed=len(codes))
        return revoked


__all__ = ["VoteCodeService", "generate_code", "CODE_ALPHABET", "CODE_PREFIX", "CODE_INDEX_KEY"]
