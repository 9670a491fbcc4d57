from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Optional

from latchkey.logging import get_logger
from latchkey.service.crypto import b64url_decode, b64url_encode
from latchkey.service.roles import Role

logger = get_logger(__name__)

SESSION_KIND = "session"
STEP_UP_KIND = "admin-step-up"
SHARE_ACCESS_KIND = "share-access"

_HEADER = {"alg": "HS256", "typ": "JWT"}
_MAX_TOKEN_LENGTH = 4096


class TokenCodec:
    """Compact HS256 tokens: ``header.payload.signature`` in unpadded base64url.

    The header algorithm is pinned, so a token announcing anything other
    than HS256 is rejected before its signature is even computed.
    """

    def __init__(self, secret: str) -> None:
        self._key = secret.encode("utf-8")

    def _sign(self, signing_input: str) -> str:
        return b64url_encode(
            hmac.new(self._key, signing_input.encode("utf-8"), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header_enc = b64url_encode(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = b64url_encode(
            json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        """Return the payload of a well-formed, correctly signed token, else None."""
        if not token or len(token) > _MAX_TOKEN_LENGTH:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(b64url_decode(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(b64url_decode(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        return payload


def _int_claim(payload: dict[str, Any], key: str) -> Optional[int]:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _str_claim(payload: dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        return None
    return value


@dataclass(frozen=True)
class SessionClaims:
    role: Role
    issued_at: int
    expires_at: int
    token_version: int
    jti: str
    ip: Optional[str] = None
    ua: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": SESSION_KIND,
            "role": self.role.value,
            "iat": self.issued_at,
            "exp": self.expires_at,
            "tv": self.token_version,
            "jti": self.jti,
        }
        if self.ip:
            payload["ip"] = self.ip
        if self.ua:
            payload["ua"] = self.ua
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Optional["SessionClaims"]:
        if payload.get("kind") != SESSION_KIND:
            return None
        iat, exp, tv = (_int_claim(payload, key) for key in ("iat", "exp", "tv"))
        jti = _str_claim(payload, "jti")
        if iat is None or exp is None or tv is None or jti is None:
            return None
        try:
            role = Role.parse(payload.get("role") or "")
        except ValueError:
            return None
        if not role.issues_tokens:
            return None
        ip = payload.get("ip") if isinstance(payload.get("ip"), str) else None
        ua = payload.get("ua") if isinstance(payload.get("ua"), str) else None
        return cls(role=role, issued_at=iat, expires_at=exp, token_version=tv, jti=jti, ip=ip, ua=ua)

    def remaining_seconds(self, now: float) -> int:
        return max(0, int(self.expires_at - now))


@dataclass(frozen=True)
class StepUpClaims:
    parent_jti: str
    issued_at: int
    expires_at: int
    nonce: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": STEP_UP_KIND,
            "pjti": self.parent_jti,
            "iat": self.issued_at,
            "exp": self.expires_at,
            "nonce": self.nonce,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Optional["StepUpClaims"]:
        if payload.get("kind") != STEP_UP_KIND:
            return None
        parent_jti = _str_claim(payload, "pjti")
        nonce = _str_claim(payload, "nonce")
        iat = _int_claim(payload, "iat")
        exp = _int_claim(payload, "exp")
        if parent_jti is None or nonce is None or iat is None or exp is None:
            return None
        return cls(parent_jti=parent_jti, issued_at=iat, expires_at=exp, nonce=nonce)


@dataclass(frozen=True)
class ShareAccessClaims:
    slug: str
    share_id: str
    fingerprint: str
    expires_at: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "kind": SHARE_ACCESS_KIND,
            "slug": self.slug,
            "sid": self.share_id,
            "fp": self.fingerprint,
            "exp": self.expires_at,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Optional["ShareAccessClaims"]:
        if payload.get("kind") != SHARE_ACCESS_KIND:
            return None
        slug = _str_claim(payload, "slug")
        share_id = _str_claim(payload, "sid")
        fingerprint = _str_claim(payload, "fp")
        exp = _int_claim(payload, "exp")
        if slug is None or share_id is None or fingerprint is None or exp is None:
            return None
        return cls(slug=slug, share_id=share_id, fingerprint=fingerprint, expires_at=exp)


__all__ = [
    "TokenCodec",
    "SessionClaims",
    "StepUpClaims",
    "ShareAccessClaims",
    "SESSION_KIND",
    "STEP_UP_KIND",
    "SHARE_ACCESS_KIND",
]
