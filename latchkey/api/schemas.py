from __future__ import annotations

import re
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "invalid_transition",
    "step_up_required",
    "rate_limited",
    "server_error",
    "service_unavailable",
}

SLUG_PATTERN = r"^[a-z0-9][a-z0-9-]{0,127}$"
_SLUG_RE = re.compile(SLUG_PATTERN)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CredentialRequest(BaseModel):
    secret: str = Field(..., min_length=1, max_length=512)


class SessionResponse(BaseModel):
    token: str
    role: str
    jti: str
    issued_at: int
    expires_at: int


class StepUpResponse(BaseModel):
    step_up_token: str
    expires_in: int


class RevokeTokensRequest(BaseModel):
    role: Literal["admin", "staff", "upload", "all"]


class ShareCreateRequest(BaseModel):
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=365)
    pin_required: bool = False
    pin: Optional[str] = Field(default=None, max_length=64)


class ShareUpdateRequest(BaseModel):
    """Partial update; an explicit ``"pin": null`` clears the PIN, omission keeps it."""

    model_config = ConfigDict(extra="forbid")

    pin_required: Optional[bool] = None
    pin: Optional[str] = Field(default=None, max_length=64)
    expires_in_days: Optional[int] = Field(default=None, ge=1, le=365)
    rotate_token: bool = False


class ShareLinkResponse(BaseModel):
    id: str
    slug: str
    pin_required: bool
    state: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    token: Optional[str] = Field(
        default=None, description="Bearer token; returned only when created or rotated"
    )


class ShareLinkListResponse(BaseModel):
    items: List[ShareLinkResponse]


class ShareVerifyRequest(BaseModel):
    slug: str = Field(..., max_length=128)
    token: str = Field(..., max_length=512)
    pin: Optional[str] = Field(default=None, max_length=64)

    @field_validator("slug")
    @classmethod
    def _validate_slug(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not _SLUG_RE.match(normalized):
            raise ValueError("invalid slug")
        return normalized


class VoteCodeMintRequest(BaseModel):
    ttl_minutes: Optional[int] = Field(default=None, ge=1, le=24 * 60)


class VoteCodeBatchRequest(BaseModel):
    count: int = Field(default=20, ge=1, le=200)
    ttl_minutes: Optional[int] = Field(default=None, ge=1, le=24 * 60)


class VoteRedeemRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)
