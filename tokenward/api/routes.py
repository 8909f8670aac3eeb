from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from tokenward.api.schemas import (
    Envelope,
    ForgotPasswordRequest,
    IntrospectionResponse,
    RefreshTokenRequest,
    ResetPasswordRequest,
    SigninRequest,
    SignupRequest,
    TokenResponse,
    UserListResponse,
    UserProfileResponse,
    UserSummary,
)
from tokenward.logging import get_logger
from tokenward.service.auth import AccountSummary, TokenBundle
from tokenward.service.errors import AuthenticationError, RateLimitedError
from tokenward.service.runtime import get_runtime
from tokenward.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers per IETF draft-polli-ratelimit-headers."""
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


def _client_key(request: Request) -> str:
    host = request.client.host if request.client else None
    return f"auth:{host or 'unknown'}"


async def enforce_auth_rate_limit(request: Request, response: Response) -> RateLimitInfo:
    """Admit the request through the per-client token bucket.

    Raises:
        RateLimitedError: the client's bucket is empty (429)
    """
    runtime = get_runtime()
    if runtime.rate_limiter.capacity <= 0:
        return RateLimitInfo(0, 0, 0)
    decision = runtime.rate_limiter.check(_client_key(request))
    info = RateLimitInfo(decision.limit, decision.remaining, decision.retry_after_seconds)
    info.apply_headers(response)
    if not decision.allowed:
        raise RateLimitedError(
            "too many requests",
            detail={"retry_after_seconds": decision.retry_after_seconds},
        )
    return info


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_account(authorization: Optional[str] = Header(None)) -> Account:
    runtime = get_runtime()
    token = _extract_bearer(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    return runtime.auth.authenticate(token)


def _summary(summary: AccountSummary) -> UserSummary:
    return UserSummary(
        id=summary.id,
        email=summary.email,
        full_name=summary.full_name,
        roles=summary.roles,
    )


def _profile(summary: AccountSummary) -> UserProfileResponse:
    return UserProfileResponse(
        id=summary.id,
        email=summary.email,
        full_name=summary.full_name,
        roles=summary.roles,
        enabled=summary.enabled,
        created_at=summary.created_at,
    )


def _token_response(bundle: TokenBundle) -> TokenResponse:
    return TokenResponse(
        access_token=bundle.access_token,
        refresh_token=bundle.refresh_token,
        expires_in=bundle.expires_in,
        token_type=bundle.token_type,
        user=_summary(bundle.user),
    )


@router.post(
    "/auth/signup",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def signup(body: SignupRequest):
    """Create an unverified account and email a verification link.

    Raises:
        409: If the email is already in use
        429: If the client is rate limited
    """
    runtime = get_runtime()
    # argon2 hashing and SMTP are blocking; keep them off the event loop
    summary = await asyncio.to_thread(
        runtime.auth.signup, body.email, body.password, body.full_name
    )
    return Envelope(status="ok", data=_summary(summary))


@router.get(
    "/auth/verify",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def verify_email(token: str = Query(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.verify_email, token)
    return Envelope(status="ok", data={"status": "verified"})


@router.post(
    "/auth/signin",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def signin(body: SigninRequest):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: If the credentials are invalid
        403: If the account email is not verified
        423: If the account is locked after repeated failures
        429: If the client is rate limited
    """
    runtime = get_runtime()
    bundle = await asyncio.to_thread(runtime.auth.signin, body.email, body.password)
    return Envelope(status="ok", data=_token_response(bundle))


@router.post(
    "/auth/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def refresh(body: RefreshTokenRequest):
    """Issue a new access token; the refresh token is returned unchanged."""
    runtime = get_runtime()
    bundle = runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_token_response(bundle))


@router.post(
    "/auth/signout",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def signout(body: RefreshTokenRequest):
    runtime = get_runtime()
    runtime.auth.signout(body.refresh_token)
    return Envelope(status="ok", data={"status": "signed_out"})


@router.post(
    "/auth/password/forgot",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def forgot_password(body: ForgotPasswordRequest):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.forgot_password, body.email)
    # Same response whether or not the account exists
    return Envelope(status="ok", data={"status": "sent"})


@router.post(
    "/auth/password/reset",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.reset_password, body.token, body.new_password)
    return Envelope(status="ok", data={"status": "reset"})


@router.get(
    "/auth/introspect",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(enforce_auth_rate_limit)],
)
async def introspect(token: str = Query(..., max_length=4096)):
    runtime = get_runtime()
    result = runtime.auth.introspect(token)
    return Envelope(
        status="ok",
        data=IntrospectionResponse(
            active=result.active,
            subject=result.subject,
            email=result.email,
            roles=result.roles,
            claims=result.claims or None,
        ),
    )


@router.get("/user/me", response_model=Envelope, tags=["user"])
async def me(account: Account = Depends(get_current_account)):
    return Envelope(status="ok", data=_profile(AccountSummary.of(account)))


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def list_users(
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=100),
    account: Account = Depends(get_current_account),
):
    runtime = get_runtime()
    summaries, total = runtime.auth.list_accounts(account, page=page, size=size)
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[_profile(s) for s in summaries], total=total, page=page, size=size
        ),
    )
