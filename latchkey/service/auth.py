from __future__ import annotations

import re
import secrets
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from latchkey.config import Settings
from latchkey.logging import client_fingerprint, get_logger
from latchkey.service.crypto import safe_compare
from latchkey.service.errors import (
    AuthenticationError,
    NotFoundError,
    RateLimitedError,
    ServiceUnavailableError,
    StepUpRequiredError,
    ValidationError,
)
from latchkey.service.roles import TOKEN_ROLES, Role
from latchkey.service.tokens import SessionClaims, StepUpClaims, TokenCodec
from latchkey.storage.common import KeyValueStore
from latchkey.storage.errors import StoreUnavailableError
from latchkey.storage.models import (
    RevocationCause,
    SessionListing,
    SessionRecord,
    SessionStatus,
    SessionSummary,
)

logger = get_logger(__name__)

SESSION_INDEX_KEY = "auth:sessions:index"
SESSION_INDEX_TTL_SECONDS = 60 * 24 * 60 * 60
# Markers and index records outlive the token slightly so clock skew cannot reopen it
REVOCATION_MARGIN_SECONDS = 60
SAFE_JTI = re.compile(r"^[0-9a-fA-F-]{32,40}$")
GENERIC_DENIAL = "Authentication required."
_MAX_UA_LENGTH = 200
_LISTING_BATCH = 100


def _version_key(role: Role) -> str:
    return f"auth:token-version:{role.value}"


def _revoked_key(jti: str) -> str:
    return f"auth:revoked-jti:{jti}"


def _session_key(jti: str) -> str:
    return f"auth:session:{jti}"


def _failure_key(role: Role, ip: Optional[str]) -> str:
    return f"auth:ratelimit:{role.value}:{ip or 'unknown'}"


def sanitize_credential(role: Role, raw: Optional[str]) -> str:
    """Normalise a submitted secret the way it is typed on each role's keypad."""
    value = (raw or "").strip()
    if role is Role.STAFF:
        return re.sub(r"\D", "", value)
    return value


class DenialReason(str, Enum):
    """Internal cause of a rejected session; logged, never returned to clients."""

    MISSING = "missing"
    MALFORMED = "malformed"
    EXPIRED = "expired"
    REVOKED = "revoked"
    ROLE_MISMATCH = "role-mismatch"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class SessionCheck:
    ok: bool
    claims: Optional[SessionClaims] = None
    reason: Optional[DenialReason] = None
    cause: Optional[RevocationCause] = None


@dataclass(frozen=True)
class IssuedSession:
    token: str
    claims: SessionClaims


@dataclass(frozen=True)
class IssuedStepUp:
    token: str
    claims: StepUpClaims

    @property
    def expires_in(self) -> int:
        return self.claims.expires_at - self.claims.issued_at


class AuthService:
    """Shared-secret sessions with stateless tokens and stateful revocation.

    A session token is valid only while its signature checks out, it has not
    expired, its token version equals the role's current version, and its jti
    carries no revocation marker. Bumping a role's version invalidates every
    session of that role at once; a jti marker invalidates exactly one.
    """

    def __init__(
        self,
        cache: KeyValueStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self.clock = clock or time.time

    def _codec(self) -> TokenCodec:
        return TokenCodec(self.settings.signing_secret())

    async def current_version(self, role: Role) -> int:
        """Return the role's token version, materialising the default of 1."""
        key = _version_key(role)
        raw = await self.cache.get(key)
        if raw is None:
            await self.cache.set(key, "1", nx=True)
            raw = await self.cache.get(key) or "1"
        try:
            return int(raw)
        except ValueError:
            raise StoreUnavailableError(f"corrupt token version for {role.value}") from None

    async def issue_session(
        self,
        role: Role,
        *,
        ip: Optional[str] = None,
        ua: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
    ) -> IssuedSession:
        if not role.issues_tokens:
            raise ValidationError(f"role '{role.value}' does not hold sessions")
        codec = self._codec()
        ttl = ttl_seconds or self.settings.session_ttl_seconds(role)
        try:
            version = await self.current_version(role)
        except StoreUnavailableError as exc:
            logger.error("session_issue_store_unavailable", role=role.value, error=exc.message)
            raise ServiceUnavailableError("session store unavailable") from exc
        now = int(self.clock())
        claims = SessionClaims(
            role=role,
            issued_at=now,
            expires_at=now + ttl,
            token_version=version,
            jti=str(uuid.uuid4()),
            ip=ip or None,
            ua=(ua or "")[:_MAX_UA_LENGTH] or None,
        )
        token = codec.encode(claims.to_payload())
        record = SessionRecord(
            jti=claims.jti,
            role=role.value,
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
            token_version=version,
            ip=claims.ip,
            ua=claims.ua,
        )
        try:
            await self.cache.set_and_track(
                _session_key(claims.jti),
                record.to_json(),
                ex=ttl + REVOCATION_MARGIN_SECONDS,
                sets={SESSION_INDEX_KEY: claims.jti},
                set_ttl=SESSION_INDEX_TTL_SECONDS,
            )
        except StoreUnavailableError as exc:
            # The token is still valid; it just cannot be listed or revoked by jti.
            logger.warning("session_index_write_failed", jti=claims.jti, error=exc.message)
        logger.info(
            "session_issued",
            role=role.value,
            jti=claims.jti,
            expires_at=claims.expires_at,
            client=client_fingerprint(ip, ua),
        )
        return IssuedSession(token=token, claims=claims)

    def _deny(
        self,
        reason: DenialReason,
        required_role: Role,
        *,
        claims: Optional[SessionClaims] = None,
        cause: Optional[RevocationCause] = None,
    ) -> SessionCheck:
        logger.info(
            "session_denied",
            reason=reason.value,
            required_role=required_role.value,
            role=claims.role.value if claims else None,
            jti=claims.jti if claims else None,
            cause=cause.value if cause else None,
        )
        return SessionCheck(ok=False, claims=claims, reason=reason, cause=cause)

    async def verify_session(self, token: Optional[str], required_role: Role) -> SessionCheck:
        """Check a session token against ``required_role``.

        Checks run in a fixed order and the first failure decides the reason:
        syntax, signature, role, expiry, token version, jti revocation. A store
        error in the last two steps denies as ``unavailable``.
        """
        if not token:
            return self._deny(DenialReason.MISSING, required_role)
        payload = self._codec().decode(token)
        if payload is None:
            return self._deny(DenialReason.MALFORMED, required_role)
        claims = SessionClaims.from_payload(payload)
        if claims is None:
            return self._deny(DenialReason.MALFORMED, required_role)
        if not claims.role.satisfies(required_role):
            return self._deny(DenialReason.ROLE_MISMATCH, required_role, claims=claims)
        if self.clock() >= claims.expires_at:
            return self._deny(DenialReason.EXPIRED, required_role, claims=claims)
        try:
            if claims.token_version != await self.current_version(claims.role):
                return self._deny(
                    DenialReason.REVOKED,
                    required_role,
                    claims=claims,
                    cause=RevocationCause.VERSION_BUMPED,
                )
            if await self.cache.exists(_revoked_key(claims.jti)):
                return self._deny(
                    DenialReason.REVOKED,
                    required_role,
                    claims=claims,
                    cause=RevocationCause.JTI_REVOKED,
                )
        except StoreUnavailableError as exc:
            logger.error("session_check_store_unavailable", error=exc.message)
            return self._deny(DenialReason.UNAVAILABLE, required_role, claims=claims)
        return SessionCheck(ok=True, claims=claims)

    async def guard(self, token: Optional[str], required_role: Role) -> SessionClaims:
        check = await self.verify_session(token, required_role)
        if not check.ok or check.claims is None:
            raise AuthenticationError(GENERIC_DENIAL)
        return check.claims

    async def guard_cron(self, bearer: Optional[str]) -> None:
        expected = self.settings.role_secret(Role.CRON)
        if not safe_compare(bearer, expected):
            logger.warning("cron_denied", reason=DenialReason.MISSING.value if not bearer else "mismatch")
            raise AuthenticationError(GENERIC_DENIAL)

    async def _check_credential(self, role: Role, raw_secret: Optional[str], ip: Optional[str]) -> None:
        """Lockout check, constant-time compare and failure accounting for one attempt."""
        expected = sanitize_credential(role, self.settings.role_secret(role))
        key = _failure_key(role, ip)
        max_attempts = self.settings.verify_max_attempts
        lockout = self.settings.verify_lockout_seconds
        try:
            raw_count = await self.cache.get(key)
        except StoreUnavailableError as exc:
            logger.error("verify_rate_limit_unavailable", role=role.value, error=exc.message)
            raise ServiceUnavailableError("rate limiter unavailable") from exc
        failures = int(raw_count) if raw_count and raw_count.isdigit() else 0
        if failures >= max_attempts:
            logger.warning("verify_locked_out", role=role.value, client=client_fingerprint(ip))
            raise RateLimitedError(
                "Too many attempts. Try again later.",
                detail={"retry_after_seconds": lockout},
            )

        if safe_compare(sanitize_credential(role, raw_secret), expected) and expected:
            try:
                await self.cache.delete(key)
            except StoreUnavailableError as exc:
                logger.warning("verify_failure_reset_failed", role=role.value, error=exc.message)
            return

        try:
            failures = await self.cache.incr_with_expiry(key, lockout)
        except StoreUnavailableError as exc:
            logger.error("verify_rate_limit_unavailable", role=role.value, error=exc.message)
            raise ServiceUnavailableError("rate limiter unavailable") from exc
        remaining = max(0, max_attempts - failures)
        logger.warning(
            "verify_failed",
            role=role.value,
            attempts_remaining=remaining,
            client=client_fingerprint(ip),
        )
        if remaining == 0:
            raise RateLimitedError(
                "Too many attempts. Try again later.",
                detail={"retry_after_seconds": lockout},
            )
        raise AuthenticationError(
            "Invalid credentials.", detail={"attempts_remaining": remaining}
        )

    async def verify_credential(
        self,
        role: Role,
        secret: Optional[str],
        *,
        ip: Optional[str] = None,
        ua: Optional[str] = None,
    ) -> IssuedSession:
        if not role.issues_tokens:
            raise ValidationError(f"role '{role.value}' does not verify credentials")
        # Both secrets must exist before any attempt is counted.
        self.settings.role_secret(role)
        self.settings.signing_secret()
        await self._check_credential(role, secret, ip)
        return await self.issue_session(role, ip=ip, ua=ua)

    async def revoke_role(self, role: Role) -> int:
        """Invalidate every outstanding session of ``role``; returns the new version."""
        if not role.issues_tokens:
            raise ValidationError(f"role '{role.value}' does not hold sessions")
        key = _version_key(role)
        # Materialise the default first so the increment always moves past it.
        await self.cache.set(key, "1", nx=True)
        version = await self.cache.incr(key)
        logger.info("role_sessions_revoked", role=role.value, token_version=version)
        return version

    async def revoke_all(self) -> dict[str, int]:
        return {role.value: await self.revoke_role(role) for role in TOKEN_ROLES}

    async def revoke_session(self, jti: str, remaining_ttl: Optional[int] = None) -> None:
        if not SAFE_JTI.match(jti or ""):
            raise ValidationError("invalid session id")
        if remaining_ttl is None:
            raw = await self.cache.get(_session_key(jti))
            record = SessionRecord.from_json(jti, raw) if raw else None
            if record is None:
                raise NotFoundError("session not found")
            remaining_ttl = max(0, record.expires_at - int(self.clock()))
        await self.cache.set(
            _revoked_key(jti), "1", ex=max(0, remaining_ttl) + REVOCATION_MARGIN_SECONDS
        )
        logger.info("session_revoked", jti=jti, remaining_ttl=remaining_ttl)

    async def end_session(self, token: Optional[str]) -> Optional[SessionClaims]:
        """Revoke the presented session if it is still valid (logout)."""
        payload = self._codec().decode(token) if token else None
        claims = SessionClaims.from_payload(payload) if payload else None
        if claims is None:
            return None
        check = await self.verify_session(token, claims.role)
        if not check.ok:
            return None
        await self.revoke_session(claims.jti, claims.remaining_seconds(self.clock()))
        return claims

    async def list_sessions(self, limit: Optional[int] = None) -> SessionListing:
        """Best-effort view of indexed sessions, newest first.

        Derived purely from the index; it is never consulted for authorization,
        so store errors degrade it instead of failing the request.
        """
        limit = limit or self.settings.session_listing_limit
        listing = SessionListing(now=int(self.clock()))
        for role in TOKEN_ROLES:
            try:
                listing.current_versions[role.value] = await self.current_version(role)
            except StoreUnavailableError:
                listing.degraded = True
        try:
            jtis = sorted(await self.cache.smembers(SESSION_INDEX_KEY))
        except StoreUnavailableError as exc:
            logger.warning("session_listing_degraded", error=exc.message)
            listing.degraded = True
            return listing

        summaries: list[SessionSummary] = []
        stale: list[str] = []
        for start in range(0, len(jtis), _LISTING_BATCH):
            batch = jtis[start : start + _LISTING_BATCH]
            try:
                raw_records = await self.cache.get_many([_session_key(jti) for jti in batch])
                markers = await self.cache.get_many([_revoked_key(jti) for jti in batch])
            except StoreUnavailableError as exc:
                logger.warning("session_listing_degraded", error=exc.message)
                listing.degraded = True
                continue
            for jti, raw, marker in zip(batch, raw_records, markers):
                record = SessionRecord.from_json(jti, raw) if raw else None
                if record is None:
                    if raw is None:
                        stale.append(jti)
                    continue
                summaries.append(self._summarize(record, marker is not None, listing))

        await self._prune_index(stale, listing)

        summaries.sort(key=lambda summary: summary.record.issued_at, reverse=True)
        listing.sessions = summaries[:limit]
        return listing

    async def _prune_index(self, stale: list[str], listing: SessionListing) -> None:
        # Session records expire on their own; their index entries do not
        if not stale:
            return
        try:
            await self.cache.srem(SESSION_INDEX_KEY, *stale)
        except StoreUnavailableError as exc:
            logger.warning("session_index_prune_failed", error=exc.message)
            listing.degraded = True
            return
        logger.info("session_index_pruned", removed=len(stale))

    @staticmethod
    def _summarize(record: SessionRecord, revoked: bool, listing: SessionListing) -> SessionSummary:
        if record.expires_at <= listing.now:
            return SessionSummary(record=record, status=SessionStatus.EXPIRED)
        cause: Optional[RevocationCause] = None
        if revoked:
            cause = RevocationCause.JTI_REVOKED
        else:
            current = listing.current_versions.get(record.role)
            if current is not None and current != record.token_version:
                cause = RevocationCause.VERSION_BUMPED
        if cause is None:
            return SessionSummary(record=record, status=SessionStatus.ACTIVE)
        return SessionSummary(record=record, status=cause.session_status, cause=cause)

    async def create_step_up(
        self, claims: SessionClaims, secret: Optional[str], *, ip: Optional[str] = None
    ) -> IssuedStepUp:
        """Mint a short-lived proof bound to the admin session that re-entered the password."""
        if claims.role is not Role.ADMIN:
            raise AuthenticationError(GENERIC_DENIAL)
        codec = self._codec()
        await self._check_credential(Role.ADMIN, secret, ip)
        now = int(self.clock())
        step_up = StepUpClaims(
            parent_jti=claims.jti,
            issued_at=now,
            expires_at=now + self.settings.step_up_ttl_seconds,
            nonce=secrets.token_hex(8),
        )
        logger.info("step_up_issued", jti=claims.jti, expires_at=step_up.expires_at)
        return IssuedStepUp(token=codec.encode(step_up.to_payload()), claims=step_up)

    async def require_step_up(self, claims: SessionClaims, token: Optional[str]) -> StepUpClaims:
        if not token:
            raise StepUpRequiredError("Step-up authentication required.")
        payload = self._codec().decode(token)
        step_up = StepUpClaims.from_payload(payload) if payload else None
        if (
            step_up is None
            or not safe_compare(step_up.parent_jti, claims.jti)
            or self.clock() >= step_up.expires_at
        ):
            logger.warning("step_up_rejected", jti=claims.jti)
            raise AuthenticationError("Invalid or expired step-up token.")
        return step_up


__all__ = [
    "AuthService",
    "DenialReason",
    "SessionCheck",
    "IssuedSession",
    "IssuedStepUp",
    "sanitize_credential",
    "SAFE_JTI",
    "SESSION_INDEX_KEY",
]
