from __future__ import annotations

from enum import Enum
from typing import FrozenSet


class Role(str, Enum):
    """Shared-secret roles of the platform.

    Admin is the only role that stands in for others: an admin session is
    accepted wherever a staff or upload session is. Cron never holds a
    signed session and is authenticated on every call with its secret.
    """

    ADMIN = "admin"
    STAFF = "staff"
    UPLOAD = "upload"
    CRON = "cron"

    def satisfies(self, required: "Role") -> bool:
        return required in _SATISFIES[self]

    @property
    def issues_tokens(self) -> bool:
        return self in TOKEN_ROLES

    @classmethod
    def parse(cls, value: str) -> "Role":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            raise ValueError(f"unknown role '{value}'") from None


_SATISFIES: dict[Role, FrozenSet[Role]] = {
    Role.ADMIN: frozenset({Role.ADMIN, Role.STAFF, Role.UPLOAD}),
    Role.STAFF: frozenset({Role.STAFF}),
    Role.UPLOAD: frozenset({Role.UPLOAD}),
    Role.CRON: frozenset({Role.CRON}),
}

# Roles that exchange their secret for a signed session, in revoke-all order
TOKEN_ROLES: tuple[Role, ...] = (Role.ADMIN, Role.STAFF, Role.UPLOAD)


__all__ = ["Role", "TOKEN_ROLES"]
