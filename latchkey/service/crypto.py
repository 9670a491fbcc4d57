from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

# Keys the canonical-length digests used by safe_compare; regenerated per process
_COMPARE_KEY = secrets.token_bytes(32)


def safe_compare(candidate: str | None, expected: str | None) -> bool:
    """Compare two secrets without leaking their length or common prefix.

    Both sides are first reduced to fixed-size keyed digests, so the final
    constant-time comparison always runs over 32 bytes whatever the inputs.
    A missing value never matches, including against another missing value.
    """
    left = hmac.new(_COMPARE_KEY, (candidate or "").encode("utf-8"), hashlib.sha256).digest()
    right = hmac.new(_COMPARE_KEY, (expected or "").encode("utf-8"), hashlib.sha256).digest()
    matched = hmac.compare_digest(left, right)
    return matched and candidate is not None and expected is not None


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def b64url_decode(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def random_token(num_bytes: int = 24) -> str:
    """URL-safe random token carrying ``num_bytes`` of entropy."""
    return b64url_encode(secrets.token_bytes(num_bytes))


__all__ = ["safe_compare", "sha256_hex", "b64url_encode", "b64url_decode", "random_token"]
