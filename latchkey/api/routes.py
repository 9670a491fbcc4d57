from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from latchkey.api.schemas import (
    SLUG_PATTERN,
    CredentialRequest,
    Envelope,
    RevokeTokensRequest,
    SessionResponse,
    ShareCreateRequest,
    ShareLinkListResponse,
    ShareLinkResponse,
    ShareUpdateRequest,
    ShareVerifyRequest,
    StepUpResponse,
    VoteCodeBatchRequest,
    VoteCodeMintRequest,
    VoteRedeemRequest,
)
from latchkey.logging import get_logger
from latchkey.service.auth import GENERIC_DENIAL, IssuedSession
from latchkey.service.errors import AuthenticationError
from latchkey.service.roles import TOKEN_ROLES, Role
from latchkey.service.runtime import check_rate_limit, get_runtime
from latchkey.service.tokens import SessionClaims
from latchkey.storage.common import utc_datetime
from latchkey.storage.models import ShareLink

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SHARE_VERIFY_RATE_LIMIT_PER_MINUTE = 30
VOTE_REDEEM_RATE_LIMIT_PER_MINUTE = 30


def session_cookie_name(role: Role) -> str:
    return f"lk_{role.value}_session"


def share_cookie_name(slug: str) -> str:
    return f"lk_share_{slug}"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_ip(request: Request) -> Optional[str]:
    # Proxy headers are resolved by the server (uvicorn --proxy-headers), never here
    return request.client.host if request.client else None


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Reject bursts before any secret comparison happens.

    Raises:
        HTTPException with 429 if rate limit exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after_seconds": info.reset_seconds},
        )
    return info


def require_role(role: Role):
    """Build a dependency admitting sessions whose role satisfies ``role``.

    The Bearer header is tried first, then the httpOnly cookie of every role
    that satisfies ``role``. Any failure is the same opaque 401.
    """

    async def dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> SessionClaims:
        runtime = get_runtime()
        candidates = [_extract_bearer(authorization)]
        candidates += [
            request.cookies.get(session_cookie_name(holder))
            for holder in TOKEN_ROLES
            if holder.satisfies(role)
        ]
        tokens = [token for token in candidates if token]
        if not tokens:
            await runtime.auth.verify_session(None, role)
        for token in tokens:
            check = await runtime.auth.verify_session(token, role)
            if check.ok and check.claims is not None:
                return check.claims
        raise AuthenticationError(GENERIC_DENIAL)

    return dependency


get_admin = require_role(Role.ADMIN)
get_staff = require_role(Role.STAFF)


async def get_stepped_up_admin(
    claims: SessionClaims = Depends(get_admin),
    x_admin_step_up: Optional[str] = Header(None, alias="X-Admin-Step-Up"),
) -> SessionClaims:
    await get_runtime().auth.require_step_up(claims, x_admin_step_up)
    return claims


async def require_cron(authorization: Optional[str] = Header(None)) -> None:
    await get_runtime().auth.guard_cron(_extract_bearer(authorization))


def _apply_session_cookie(response: Response, issued: IssuedSession, *, secure: bool) -> None:
    claims = issued.claims
    response.set_cookie(
        session_cookie_name(claims.role),
        issued.token,
        httponly=True,
        secure=secure,
        samesite="lax",
        max_age=claims.expires_at - claims.issued_at,
        path="/",
    )


def _share_response(link: ShareLink, now, token: Optional[str] = None) -> ShareLinkResponse:
    return ShareLinkResponse(**link.public_view(now), token=token)


def _parse_role(value: str) -> Role:
    try:
        return Role.parse(value)
    except ValueError:
        raise _http_error("not_found", "unknown role", status_code=404) from None


@router.post("/auth/{role}/verify", response_model=Envelope, tags=["auth"])
async def verify_credential(
    body: CredentialRequest,
    request: Request,
    response: Response,
    role: str = Path(..., max_length=16),
):
    """Exchange a role's shared secret for a signed session.

    Raises:
        401: If the secret is wrong (with attempts_remaining)
        429: If the caller is bursting or locked out
        503: If the role or signing secret is not configured
    """
    runtime = get_runtime()
    target = _parse_role(role)
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"verify:{target.value}:{ip}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
        response=response,
    )
    issued = await runtime.auth.verify_credential(
        target, body.secret, ip=ip, ua=request.headers.get("user-agent")
    )
    _apply_session_cookie(response, issued, secure=runtime.settings.cookie_secure)
    claims = issued.claims
    return Envelope(
        status="ok",
        data=SessionResponse(
            token=issued.token,
            role=claims.role.value,
            jti=claims.jti,
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
        ),
    )


@router.post("/auth/step-up", response_model=Envelope, tags=["auth"])
async def create_step_up(
    body: CredentialRequest,
    request: Request,
    response: Response,
    claims: SessionClaims = Depends(get_admin),
):
    """Re-enter the admin password to obtain a short-lived step-up token."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"step-up:{claims.jti}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
        response=response,
    )
    issued = await runtime.auth.create_step_up(claims, body.secret, ip=_client_ip(request))
    return Envelope(
        status="ok",
        data=StepUpResponse(step_up_token=issued.token, expires_in=issued.expires_in),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request, response: Response, authorization: Optional[str] = Header(None)
):
    runtime = get_runtime()
    tokens = [_extract_bearer(authorization)]
    tokens += [request.cookies.get(session_cookie_name(role)) for role in TOKEN_ROLES]
    ended = []
    for token in filter(None, tokens):
        claims = await runtime.auth.end_session(token)
        if claims is not None:
            ended.append(claims.jti)
    for role in TOKEN_ROLES:
        response.delete_cookie(session_cookie_name(role), path="/")
    return Envelope(status="ok", data={"ended": len(ended)})


@router.post("/admin/tokens/revoke", response_model=Envelope, tags=["admin"])
async def revoke_tokens(
    body: RevokeTokensRequest, claims: SessionClaims = Depends(get_stepped_up_admin)
):
    """Invalidate every session of one role, or of all roles."""
    runtime = get_runtime()
    if body.role == "all":
        versions = await runtime.auth.revoke_all()
    else:
        role = Role(body.role)
        versions = {role.value: await runtime.auth.revoke_role(role)}
    logger.info("admin_tokens_revoked", target=body.role, by_jti=claims.jti)
    return Envelope(status="ok", data={"versions": versions})


@router.get("/admin/tokens/sessions", response_model=Envelope, tags=["admin"])
async def list_sessions(
    limit: Optional[int] = Query(None, ge=1, le=1000),
    claims: SessionClaims = Depends(get_admin),
):
    runtime = get_runtime()
    listing = await runtime.auth.list_sessions(limit)
    return Envelope(status="ok", data=listing.to_dict())


@router.delete("/admin/tokens/sessions/{jti}", response_model=Envelope, tags=["admin"])
async def revoke_session(
    jti: str = Path(..., max_length=64),
    claims: SessionClaims = Depends(get_stepped_up_admin),
):
    runtime = get_runtime()
    await runtime.auth.revoke_session(jti)
    return Envelope(status="ok", data={"jti": jti, "revoked": True})


@router.get("/content/{slug}/shares", response_model=Envelope, tags=["shares"])
async def list_share_links(
    slug: str = Path(..., pattern=SLUG_PATTERN),
    claims: SessionClaims = Depends(get_admin),
):
    runtime = get_runtime()
    now = utc_datetime(runtime.clock())
    links = await runtime.shares.list(slug)
    return Envelope(
        status="ok",
        data=ShareLinkListResponse(items=[_share_response(link, now) for link in links]),
    )


@router.post("/content/{slug}/shares", response_model=Envelope, status_code=201, tags=["shares"])
async def create_share_link(
    body: ShareCreateRequest,
    slug: str = Path(..., pattern=SLUG_PATTERN),
    claims: SessionClaims = Depends(get_admin),
):
    """Create a share link; the token in the response is never shown again."""
    runtime = get_runtime()
    link, token = await runtime.shares.create(
        slug,
        expires_in_days=body.expires_in_days,
        pin_required=body.pin_required,
        pin=body.pin,
        created_by_role=claims.role.value,
    )
    return Envelope(status="ok", data=_share_response(link, utc_datetime(runtime.clock()), token))


@router.patch("/content/{slug}/shares/{share_id}", response_model=Envelope, tags=["shares"])
async def update_share_link(
    body: ShareUpdateRequest,
    slug: str = Path(..., pattern=SLUG_PATTERN),
    share_id: str = Path(..., max_length=64),
    claims: SessionClaims = Depends(get_admin),
):
    runtime = get_runtime()
    changes: dict = {
        "pin_required": body.pin_required,
        "expires_in_days": body.expires_in_days,
        "rotate_token": body.rotate_token,
    }
    if "pin" in body.model_fields_set:
        changes["pin"] = body.pin
    result = await runtime.shares.update(slug, share_id, **changes)
    if result is None:
        raise _http_error("not_found", "share link not found", status_code=404)
    link, token = result
    return Envelope(status="ok", data=_share_response(link, utc_datetime(runtime.clock()), token))


@router.delete("/content/{slug}/shares/{share_id}", response_model=Envelope, tags=["shares"])
async def revoke_share_link(
    slug: str = Path(..., pattern=SLUG_PATTERN),
    share_id: str = Path(..., max_length=64),
    claims: SessionClaims = Depends(get_admin),
):
    runtime = get_runtime()
    revoked = await runtime.shares.revoke(slug, share_id)
    return Envelope(status="ok", data={"id": share_id, "revoked": revoked})


@router.delete("/content/{slug}/shares", response_model=Envelope, tags=["shares"])
async def delete_share_links_for_slug(
    slug: str = Path(..., pattern=SLUG_PATTERN),
    claims: SessionClaims = Depends(get_stepped_up_admin),
):
    """Drop every link of a content item that is being deleted."""
    runtime = get_runtime()
    deleted = await runtime.shares.delete_all_for_slug(slug)
    return Envelope(status="ok", data={"slug": slug, "deleted": deleted})


@router.post("/shares/verify", response_model=Envelope, tags=["shares"])
async def verify_share_access(body: ShareVerifyRequest, request: Request, response: Response):
    """Check a share token (and PIN) and set the bound access cookie."""
    runtime = get_runtime()
    ip = _client_ip(request)
    await _enforce_rate_limit(
        runtime, f"share-verify:{ip}", SHARE_VERIFY_RATE_LIMIT_PER_MINUTE, 60, response=response
    )
    result = await runtime.shares.verify_access(body.slug, body.token, body.pin, ip=ip)
    if not result.ok or result.link is None:
        code = {400: "validation_error", 429: "rate_limited"}.get(result.status, "unauthorized")
        raise _http_error(
            code,
            result.error or "Invalid or expired share link.",
            status_code=result.status,
            details={"pin_required": result.pin_required},
        )
    access_token = runtime.shares.sign_access_token(result.link)
    max_age = int(result.link.expires_at.timestamp() - runtime.clock())
    response.set_cookie(
        share_cookie_name(body.slug),
        access_token,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        max_age=max(1, min(max_age, runtime.settings.share_access_token_max_ttl_seconds)),
        path="/",
    )
    return Envelope(
        status="ok",
        data={
            "slug": body.slug,
            "share_id": result.link.id,
            "pin_required": result.pin_required,
            "expires_at": result.link.expires_at.isoformat(),
        },
    )


@router.get("/shares/{slug}/access", response_model=Envelope, tags=["shares"])
async def check_share_access(request: Request, slug: str = Path(..., pattern=SLUG_PATTERN)):
    runtime = get_runtime()
    granted = await runtime.shares.verify_access_token(
        slug, request.cookies.get(share_cookie_name(slug))
    )
    if not granted:
        raise _http_error("unauthorized", "Invalid or expired share link.", status_code=401)
    return Envelope(status="ok", data={"slug": slug, "granted": True})


@router.post("/admin/shares/cleanup", response_model=Envelope, tags=["admin"])
async def cleanup_share_links(
    slug: Optional[str] = Query(None, pattern=SLUG_PATTERN),
    claims: SessionClaims = Depends(get_admin),
):
    runtime = get_runtime()
    if slug:
        result = await runtime.shares.cleanup(slug)
    else:
        result = await runtime.shares.sweep()
    return Envelope(status="ok", data=result.to_dict())


@router.get("/cron/cleanup-shares", response_model=Envelope, tags=["cron"])
async def cron_cleanup_share_links(_: None = Depends(require_cron)):
    runtime = get_runtime()
    totals = await runtime.shares.sweep()
    return Envelope(status="ok", data=totals.to_dict())


@router.post("/votes/codes", response_model=Envelope, status_code=201, tags=["votes"])
async def mint_vote_code(body: VoteCodeMintRequest, claims: SessionClaims = Depends(get_staff)):
    runtime = get_runtime()
    code = await runtime.vote_codes.mint(body.ttl_minutes)
    return Envelope(status="ok", data=code.to_dict())


@router.post("/votes/codes/batch", response_model=Envelope, status_code=201, tags=["votes"])
async def mint_vote_code_batch(
    body: VoteCodeBatchRequest, claims: SessionClaims = Depends(get_staff)
):
    runtime = get_runtime()
    codes = await runtime.vote_codes.mint_batch(body.count, body.ttl_minutes)
    return Envelope(status="ok", data={"codes": [code.to_dict() for code in codes]})


@router.post("/votes/codes/revoke-all", response_model=Envelope, tags=["votes"])
async def revoke_vote_codes(claims: SessionClaims = Depends(get_staff)):
    runtime = get_runtime()
    revoked = await runtime.vote_codes.revoke_all()
    return Envelope(status="ok", data={"revoked": revoked})


@router.post("/votes/redeem", response_model=Envelope, tags=["votes"])
async def redeem_vote_code(body: VoteRedeemRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"vote-redeem:{_client_ip(request)}",
        VOTE_REDEEM_RATE_LIMIT_PER_MINUTE,
        60,
        response=response,
    )
    if not await runtime.vote_codes.redeem(body.code):
        raise _http_error("forbidden", "Invalid or already used code.", status_code=403)
    return Envelope(status="ok", data={"redeemed": True})
