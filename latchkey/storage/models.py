from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class LinkState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


@dataclass(frozen=True)
class ShareLink:
    """Access grant for one content slug.

    Only the SHA-256 of the bearer token is persisted. ``pin_hash`` is an
    argon2 hash and is present exactly when ``pin_required`` is set.
    """

    id: str
    slug: str
    token_hash: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    pin_required: bool = False
    pin_hash: Optional[str] = None
    revoked_at: Optional[datetime] = None
    created_by_role: str = "admin"

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None

    def state(self, now: datetime) -> LinkState:
        # Revocation is terminal and wins over expiry.
        if self.revoked_at is not None:
            return LinkState.REVOKED
        if now >= self.expires_at:
            return LinkState.EXPIRED
        return LinkState.ACTIVE

    def to_json(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "slug": self.slug,
                "token_hash": self.token_hash,
                "pin_required": self.pin_required,
                "pin_hash": self.pin_hash,
                "created_at": _iso(self.created_at),
                "updated_at": _iso(self.updated_at),
                "expires_at": _iso(self.expires_at),
                "revoked_at": _iso(self.revoked_at),
                "created_by_role": self.created_by_role,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> Optional["ShareLink"]:
        try:
            data = json.loads(raw)
            created_at = _parse_dt(data["created_at"])
            updated_at = _parse_dt(data.get("updated_at")) or created_at
            expires_at = _parse_dt(data["expires_at"])
            link = cls(
                id=str(data["id"]),
                slug=str(data["slug"]),
                token_hash=str(data["token_hash"]),
                pin_required=bool(data.get("pin_required")),
                pin_hash=data.get("pin_hash") or None,
                created_at=created_at,
                updated_at=updated_at,
                expires_at=expires_at,
                revoked_at=_parse_dt(data.get("revoked_at")),
                created_by_role=str(data.get("created_by_role") or "admin"),
            )
        except (ValueError, KeyError, TypeError):
            return None
        if created_at is None or expires_at is None:
            return None
        return link

    def public_view(self, now: datetime) -> Dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "pin_required": self.pin_required,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "expires_at": _iso(self.expires_at),
            "revoked_at": _iso(self.revoked_at),
            "state": self.state(now).value,
        }


@dataclass(frozen=True)
class SessionRecord:
    """Index entry written next to every issued session, used for listing and revoke-by-jti."""

    jti: str
    role: str
    issued_at: int
    expires_at: int
    token_version: int
    ip: Optional[str] = None
    ua: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "role": self.role,
                "iat": self.issued_at,
                "exp": self.expires_at,
                "tv": self.token_version,
                "ip": self.ip,
                "ua": self.ua,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, jti: str, raw: str) -> Optional["SessionRecord"]:
        try:
            data = json.loads(raw)
            return cls(
                jti=jti,
                role=str(data["role"]),
                issued_at=int(data["iat"]),
                expires_at=int(data["exp"]),
                token_version=int(data["tv"]),
                ip=data.get("ip"),
                ua=data.get("ua"),
            )
        except (ValueError, KeyError, TypeError):
            return None


class SessionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    INVALIDATED = "invalidated"


class RevocationCause(str, Enum):
    """Why a still-unexpired session stopped being valid."""

    JTI_REVOKED = "jti-revoked"
    VERSION_BUMPED = "version-bumped"

    @property
    def session_status(self) -> SessionStatus:
        if self is RevocationCause.JTI_REVOKED:
            return SessionStatus.REVOKED
        return SessionStatus.INVALIDATED


@dataclass(frozen=True)
class SessionSummary:
    record: SessionRecord
    status: SessionStatus
    cause: Optional[RevocationCause] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jti": self.record.jti,
            "role": self.record.role,
            "issued_at": self.record.issued_at,
            "expires_at": self.record.expires_at,
            "token_version": self.record.token_version,
            "ip": self.record.ip,
            "ua": self.record.ua,
            "status": self.status.value,
            "cause": self.cause.value if self.cause else None,
        }


@dataclass
class SessionListing:
    now: int
    sessions: List[SessionSummary] = field(default_factory=list)
    current_versions: Dict[str, int] = field(default_factory=dict)
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "now": self.now,
            "sessions": [summary.to_dict() for summary in self.sessions],
            "current_versions": dict(self.current_versions),
            "degraded": self.degraded,
        }


@dataclass(frozen=True)
class CleanupResult:
    slug: str
    scanned: int = 0
    removed_expired: int = 0
    removed_revoked: int = 0
    stale_index_removed: int = 0
    remaining: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SweepResult:
    slugs: int = 0
    scanned: int = 0
    removed_expired: int = 0
    removed_revoked: int = 0
    stale_index_removed: int = 0
    remaining: int = 0
    failed_slugs: List[str] = field(default_factory=list)

    def add(self, result: CleanupResult) -> None:
        self.slugs += 1
        self.scanned += result.scanned
        self.removed_expired += result.removed_expired
        self.removed_revoked += result.removed_revoked
        self.stale_index_removed += result.stale_index_removed
        self.remaining += result.remaining

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class VoteCode:
    code: str
    ttl_seconds: int
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "ttl_seconds": self.ttl_seconds,
            "expires_at": _iso(self.expires_at),
        }
