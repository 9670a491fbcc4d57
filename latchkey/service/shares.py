from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from latchkey.config import Settings
from latchkey.logging import client_fingerprint, get_logger
from latchkey.service.crypto import random_token, safe_compare, sha256_hex
from latchkey.service.errors import ConflictError, InvalidTransitionError, ValidationError
from latchkey.service.tokens import ShareAccessClaims, TokenCodec
from latchkey.storage.common import KeyValueStore, utc_datetime
from latchkey.storage.errors import StoreUnavailableError
from latchkey.storage.models import CleanupResult, LinkState, ShareLink, SweepResult

logger = get_logger(__name__)

TRACKED_SLUGS_KEY = "share:slugs"
INVALID_LINK_MESSAGE = "Invalid or expired share link."
MIN_RECORD_TTL_SECONDS = 60 * 60

# Every field whose change must invalidate outstanding access tokens
FINGERPRINT_FIELDS = ("token_hash", "pin_required", "pin_hash", "expires_at")

_UNSET: Any = object()


def _record_key(link_id: str) -> str:
    return f"share:link:{link_id}"


def _index_key(slug: str) -> str:
    return f"share:index:{slug}"


def _token_claim_key(token_hash: str) -> str:
    return f"share:token:{token_hash}"


def _pin_failure_key(link_id: str, ip: Optional[str]) -> str:
    return f"share:pin-rl:{link_id}:{ip or 'unknown'}"


def _fingerprint_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def fingerprint(link: ShareLink) -> str:
    """Digest of the link's security-relevant state.

    Pure and order-stable: the same field values always produce the same
    digest, and changing any of FINGERPRINT_FIELDS produces a different one.
    """
    material = json.dumps(
        [[name, _fingerprint_value(getattr(link, name))] for name in FINGERPRINT_FIELDS],
        separators=(",", ":"),
    )
    return sha256_hex(material)


@dataclass(frozen=True)
class AccessResult:
    ok: bool
    link: Optional[ShareLink] = None
    status: int = 200
    pin_required: bool = False
    error: Optional[str] = None


class ShareLinkService:
    """Per-slug share links: lifecycle, access checks and bound access tokens.

    Links move from active to revoked (explicitly, terminal) or to expired
    (derived from the clock). Records of dead links linger until the
    cleanup sweep deletes them or their retention TTL runs out.
    """

    def __init__(
        self,
        cache: KeyValueStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
        token_factory: Optional[Callable[[], str]] = None,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self.clock = clock or time.time
        self._token_factory = token_factory or random_token
        self._pin_hasher = password_hasher or PasswordHasher(type=Type.ID)

    def _now(self) -> datetime:
        return utc_datetime(self.clock())

    def _clamp_days(self, days: Optional[int]) -> int:
        if days is None:
            return self.settings.share_default_expiry_days
        return max(1, min(int(days), self.settings.share_max_expiry_days))

    def _record_ttl(self, link: ShareLink, now: datetime) -> int:
        retention = self.settings.share_record_retention_days * 24 * 60 * 60
        remaining = int((link.expires_at - now).total_seconds())
        return max(MIN_RECORD_TTL_SECONDS, max(0, remaining) + retention)

    def _hash_pin(self, pin: str) -> str:
        return self._pin_hasher.hash(pin.strip())

    def _verify_pin(self, pin_hash: Optional[str], pin: str) -> bool:
        if not pin_hash:
            return False
        try:
            return self._pin_hasher.verify(pin_hash, pin.strip())
        except (InvalidHash, VerifyMismatchError):
            return False

    async def _load(self, link_id: str) -> Optional[ShareLink]:
        raw = await self.cache.get(_record_key(link_id))
        return ShareLink.from_json(raw) if raw else None

    async def _claim_token(self, link_id: str, ttl: int) -> tuple[str, str]:
        """Mint a token whose hash no other link holds, via set-if-absent."""
        for _ in range(self.settings.mint_max_attempts):
            token = self._token_factory()
            token_hash = sha256_hex(token)
            if await self.cache.set(_token_claim_key(token_hash), link_id, ex=ttl, nx=True):
                return token, token_hash
            logger.warning("share_token_collision", share_id=link_id)
        raise ConflictError("could not mint a unique share token")

    async def _save(self, link: ShareLink, now: datetime) -> None:
        ttl = self._record_ttl(link, now)
        await self.cache.set_and_track(
            _record_key(link.id),
            link.to_json(),
            ex=ttl,
            sets={_index_key(link.slug): link.id, TRACKED_SLUGS_KEY: link.slug},
        )
        await self.cache.expire(_token_claim_key(link.token_hash), ttl)

    async def _purge(self, link: ShareLink) -> None:
        await self.cache.delete(_record_key(link.id), _token_claim_key(link.token_hash))
        await self.cache.srem(_index_key(link.slug), link.id)

    async def create(
        self,
        slug: str,
        *,
        expires_in_days: Optional[int] = None,
        pin_required: bool = False,
        pin: Optional[str] = None,
        created_by_role: str = "admin",
    ) -> tuple[ShareLink, str]:
        """Create a link and return it with its bearer token, shown exactly once."""
        if not slug:
            raise ValidationError("slug is required")
        pin_hash: Optional[str] = None
        if pin_required:
            if not pin or not pin.strip():
                raise ValidationError("a PIN is required when PIN protection is enabled")
            pin_hash = self._hash_pin(pin)
        now = self._now()
        link_id = str(uuid.uuid4())
        expires_at = now + timedelta(days=self._clamp_days(expires_in_days))
        placeholder = ShareLink(
            id=link_id,
            slug=slug,
            token_hash="",
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
        )
        token, token_hash = await self._claim_token(link_id, self._record_ttl(placeholder, now))
        link = replace(
            placeholder,
            token_hash=token_hash,
            pin_required=bool(pin_required),
            pin_hash=pin_hash,
            created_by_role=created_by_role,
        )
        await self._save(link, now)
        logger.info(
            "share_link_created",
            slug=slug,
            share_id=link_id,
            pin_required=link.pin_required,
            expires_at=expires_at.isoformat(),
        )
        return link, token

    async def get(self, slug: str, link_id: str) -> Optional[ShareLink]:
        link = await self._load(link_id)
        if link is None or link.slug != slug:
            return None
        return link

    async def list(self, slug: str) -> list[ShareLink]:
        """Every stored link of ``slug``, newest first, whatever its state."""
        ids = sorted(await self.cache.smembers(_index_key(slug)))
        raws = await self.cache.get_many([_record_key(link_id) for link_id in ids])
        links = []
        for link_id, raw in zip(ids, raws):
            link = ShareLink.from_json(raw) if raw else None
            if link is not None and link.slug == slug and link.id == link_id:
                links.append(link)
        links.sort(key=lambda link: link.created_at, reverse=True)
        return links

    async def list_tracked_slugs(self) -> list[str]:
        return sorted(await self.cache.smembers(TRACKED_SLUGS_KEY))

    async def update(
        self,
        slug: str,
        link_id: str,
        *,
        pin_required: Optional[bool] = None,
        pin: Optional[str] = _UNSET,
        expires_in_days: Optional[int] = None,
        rotate_token: bool = False,
    ) -> Optional[tuple[ShareLink, Optional[str]]]:
        """Mutate an active link; None when the link does not exist.

        ``pin=None`` clears the PIN, a string replaces it. An expired link
        accepts only a renewal (new token together with a new expiry); a
        revoked link accepts nothing. All validation happens before the
        first write, so a rejected update leaves the record untouched.
        """
        link = await self.get(slug, link_id)
        if link is None:
            return None
        now = self._now()
        state = link.state(now)
        renewal = rotate_token and expires_in_days is not None
        if state is LinkState.REVOKED:
            raise InvalidTransitionError(state.value)
        if state is LinkState.EXPIRED and not renewal:
            raise InvalidTransitionError(state.value)

        if pin is _UNSET and pin_required is None and expires_in_days is None and not rotate_token:
            raise ValidationError("no changes requested")
        if isinstance(pin, str) and not pin.strip():
            raise ValidationError("PIN cannot be empty")
        if isinstance(pin, str) and pin_required is False:
            raise ValidationError("cannot set a PIN while disabling PIN protection")

        next_required = link.pin_required
        next_hash = link.pin_hash
        if pin is None:
            next_required, next_hash = False, None
        elif isinstance(pin, str):
            next_required, next_hash = True, self._hash_pin(pin)
        if pin_required is False:
            next_required, next_hash = False, None
        elif pin_required is True:
            if next_hash is None:
                raise ValidationError("a PIN is required when PIN protection is enabled")
            next_required = True

        expires_at = link.expires_at
        if expires_in_days is not None:
            expires_at = now + timedelta(days=self._clamp_days(expires_in_days))

        updated = replace(
            link,
            pin_required=next_required,
            pin_hash=next_hash,
            expires_at=expires_at,
            updated_at=now,
        )
        new_token: Optional[str] = None
        if rotate_token:
            new_token, token_hash = await self._claim_token(link.id, self._record_ttl(updated, now))
            updated = replace(updated, token_hash=token_hash)

        await self._save(updated, now)
        if rotate_token:
            await self.cache.delete(_token_claim_key(link.token_hash))
        logger.info(
            "share_link_updated",
            slug=slug,
            share_id=link.id,
            rotated=rotate_token,
            renewed=state is LinkState.EXPIRED,
            pin_required=updated.pin_required,
            expires_at=updated.expires_at.isoformat(),
        )
        return updated, new_token

    async def revoke(self, slug: str, link_id: str) -> bool:
        """Revoke a link; False when it is unknown or already revoked."""
        link = await self.get(slug, link_id)
        if link is None or link.revoked:
            return False
        now = self._now()
        await self._save(replace(link, revoked_at=now, updated_at=now), now)
        logger.info("share_link_revoked", slug=slug, share_id=link_id)
        return True

    async def delete_all_for_slug(self, slug: str) -> int:
        """Remove every link of a content item that is itself being deleted."""
        index_key = _index_key(slug)
        ids = sorted(await self.cache.smembers(index_key))
        raws = await self.cache.get_many([_record_key(link_id) for link_id in ids])
        keys = [_record_key(link_id) for link_id in ids]
        deleted = 0
        for raw in raws:
            link = ShareLink.from_json(raw) if raw else None
            if link is not None:
                keys.append(_token_claim_key(link.token_hash))
                deleted += 1
        await self.cache.delete(*keys, index_key)
        await self.cache.srem(TRACKED_SLUGS_KEY, slug)
        logger.info("share_links_deleted_for_slug", slug=slug, deleted=deleted)
        return deleted

    async def cleanup(self, slug: str) -> CleanupResult:
        """Delete dead records and stale index entries of one slug.

        Each removal stands alone, so an interrupted run leaves a consistent
        store and running again only finishes the remaining work.
        """
        index_key = _index_key(slug)
        ids = sorted(await self.cache.smembers(index_key))
        raws = await self.cache.get_many([_record_key(link_id) for link_id in ids])
        now = self._now()
        removed_expired = removed_revoked = stale = 0
        for link_id, raw in zip(ids, raws):
            link = ShareLink.from_json(raw) if raw else None
            if link is None or link.slug != slug or link.id != link_id:
                await self.cache.srem(index_key, link_id)
                stale += 1
                continue
            state = link.state(now)
            if state is LinkState.ACTIVE:
                continue
            await self._purge(link)
            if state is LinkState.REVOKED:
                removed_revoked += 1
            else:
                removed_expired += 1
        remaining = await self.cache.scard(index_key)
        if remaining == 0:
            await self.cache.srem(TRACKED_SLUGS_KEY, slug)
        result = CleanupResult(
            slug=slug,
            scanned=len(ids),
            removed_expired=removed_expired,
            removed_revoked=removed_revoked,
            stale_index_removed=stale,
            remaining=remaining,
        )
        if removed_expired or removed_revoked or stale:
            logger.info("share_cleanup", **result.to_dict())
        return result

    async def sweep(self) -> SweepResult:
        """Run cleanup over every tracked slug, continuing past per-slug failures."""
        totals = SweepResult()
        for slug in await self.list_tracked_slugs():
            try:
                totals.add(await self.cleanup(slug))
            except StoreUnavailableError as exc:
                logger.error("share_cleanup_failed", slug=slug, error=exc.message)
                totals.failed_slugs.append(slug)
        logger.info("share_sweep_completed", **totals.to_dict())
        return totals

    async def verify_access(
        self,
        slug: str,
        token: Optional[str],
        pin: Optional[str] = None,
        *,
        ip: Optional[str] = None,
    ) -> AccessResult:
        """Check a presented share token (and PIN) against the slug's links.

        The token digest is compared with every candidate without stopping
        at a match. Unknown, expired and revoked tokens are indistinguishable
        except for ``pin_required``, which drives the client's PIN prompt.
        """
        presented = (token or "").strip()
        if not presented:
            return AccessResult(ok=False, status=400, error="Share token is required.")
        token_hash = sha256_hex(presented)
        matched: Optional[ShareLink] = None
        for candidate in await self.list(slug):
            if safe_compare(token_hash, candidate.token_hash) and matched is None:
                matched = candidate
        if matched is None:
            logger.info("share_access_denied", slug=slug, reason="unknown")
            return AccessResult(ok=False, status=401, error=INVALID_LINK_MESSAGE)
        state = matched.state(self._now())
        if state is not LinkState.ACTIVE:
            logger.info("share_access_denied", slug=slug, share_id=matched.id, reason=state.value)
            return AccessResult(
                ok=False, status=401, pin_required=matched.pin_required, error=INVALID_LINK_MESSAGE
            )

        if matched.pin_required:
            failure_key = _pin_failure_key(matched.id, ip)
            raw_failures = await self.cache.get(failure_key)
            failures = int(raw_failures) if raw_failures and raw_failures.isdigit() else 0
            if failures >= self.settings.share_pin_max_attempts:
                logger.warning(
                    "share_pin_locked_out", share_id=matched.id, client=client_fingerprint(ip)
                )
                return AccessResult(
                    ok=False,
                    status=429,
                    pin_required=True,
                    error="Too many PIN attempts. Try again later.",
                )
            if not pin or not pin.strip():
                return AccessResult(ok=False, status=401, pin_required=True, error="PIN is required.")
            if not self._verify_pin(matched.pin_hash, pin):
                await self.cache.incr_with_expiry(
                    failure_key, self.settings.share_pin_lockout_seconds
                )
                logger.warning("share_pin_failed", share_id=matched.id, client=client_fingerprint(ip))
                return AccessResult(ok=False, status=401, pin_required=True, error="Incorrect PIN.")
            await self.cache.delete(failure_key)

        logger.info("share_access_granted", slug=slug, share_id=matched.id)
        return AccessResult(ok=True, link=matched, pin_required=matched.pin_required)

    def sign_access_token(self, link: ShareLink) -> str:
        """Sign a cookie value bound to the link's current fingerprint."""
        now = self._now()
        state = link.state(now)
        if state is not LinkState.ACTIVE:
            raise InvalidTransitionError(state.value)
        expires_at = min(
            int(link.expires_at.timestamp()),
            int(now.timestamp()) + self.settings.share_access_token_max_ttl_seconds,
        )
        claims = ShareAccessClaims(
            slug=link.slug,
            share_id=link.id,
            fingerprint=fingerprint(link),
            expires_at=expires_at,
        )
        return TokenCodec(self.settings.signing_secret()).encode(claims.to_payload())

    async def verify_access_token(self, slug: str, token: Optional[str]) -> bool:
        """True only if the token is authentic and its link is unchanged and active."""
        if not token:
            return False
        payload = TokenCodec(self.settings.signing_secret()).decode(token)
        claims = ShareAccessClaims.from_payload(payload) if payload else None
        if claims is None or not safe_compare(claims.slug, slug):
            return False
        if self.clock() >= claims.expires_at:
            return False
        try:
            link = await self._load(claims.share_id)
        except StoreUnavailableError as exc:
            logger.error("share_access_token_store_unavailable", error=exc.message)
            return False
        if link is None or link.slug != slug or link.state(self._now()) is not LinkState.ACTIVE:
            return False
        return safe_compare(fingerprint(link), claims.fingerprint)


__all__ = [
    "ShareLinkService",
    "AccessResult",
    "fingerprint",
    "FINGERPRINT_FIELDS",
    "INVALID_LINK_MESSAGE",
    "TRACKED_SLUGS_KEY",
]
