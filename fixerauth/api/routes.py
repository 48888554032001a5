from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Path, Request, Response

from fixerauth.api.schemas import (
    CloseAllResponse,
    CredentialResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutResponse,
    PasswordLoginRequest,
    PasswordResetConfirm,
    PasswordResetConfirmResponse,
    PasswordResetRequest,
    PasswordResetRequestResponse,
    RefreshResponse,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    SessionStatusResponse,
    SessionTouchResponse,
    TokenListResponse,
    TokenSummary,
    ValidateResponse,
)
from fixerauth.service.auth import LoginResult
from fixerauth.service.runtime import check_rate_limit, get_runtime

router = APIRouter(prefix="/v1")


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
    """Enforce rate limit and optionally apply headers to response.

    Raises:
        HTTPException with 429 if rate limit exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        raise _http_error("rate_limited", "rate limit exceeded", status_code=429)

    return info


def _peer_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, else the socket peer.

    Client-supplied, so only recorded on tokens and sessions; rate limit
    keys use the socket peer or the account instead.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return _peer_ip(request)


def _login_response(result: LoginResult) -> LoginResponse:
    return LoginResponse(
        access_token=result.token.secret,
        session_token=result.session.session_token,
        expires_at=result.token.expires_at,
        user_id=result.token.user_id,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an email/password credential for a directory user.

    Raises:
        404: If the user directory does not know the user id
        409: If the email is already registered
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_peer_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    credential = await asyncio.to_thread(
        runtime.auth.register, body.email, body.password, body.user_id
    )
    return Envelope(
        status="ok",
        data=CredentialResponse(
            id=credential.id,
            email=credential.email,
            user_id=credential.user_id,
            is_active=credential.is_active,
            created_at=credential.created_at,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
):
    """Issue a login token and open a session for a directory user.

    Any session the user already had open is closed.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_peer_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await asyncio.to_thread(
        runtime.auth.login, body.user_id, _client_ip(request), user_agent
    )
    return Envelope(status="ok", data=_login_response(result))


@router.post("/auth/login/password", response_model=Envelope, tags=["auth"])
async def login_with_password(
    body: PasswordLoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
):
    """Authenticate with email and password, then log the owning user in.

    Raises:
        401: If the email is unknown or the password does not match
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await asyncio.to_thread(
        runtime.auth.login_with_password,
        body.email,
        body.password,
        _client_ip(request),
        user_agent,
    )
    return Envelope(status="ok", data=_login_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    authorization: Optional[str] = Header(None),
    session_token: Optional[str] = Header(None, alias="Session-Token"),
):
    runtime = get_runtime()
    runtime.auth.logout(authorization, session_token)
    return Envelope(status="ok", data=LogoutResponse(success=True))


@router.post("/auth/validate", response_model=Envelope, tags=["auth"])
async def validate(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    result = runtime.auth.validate(authorization)
    return Envelope(
        status="ok", data=ValidateResponse(valid=result.valid, user_id=result.user_id)
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request,
    authorization: Optional[str] = Header(None),
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
):
    """Exchange a live access token for a new one; the old token stops working.

    Raises:
        401: If the presented token is unknown, revoked or expired
    """
    runtime = get_runtime()
    token = runtime.auth.refresh(authorization, _client_ip(request), user_agent)
    return Envelope(
        status="ok",
        data=RefreshResponse(access_token=token.secret, expires_at=token.expires_at),
    )


@router.post("/auth/session/validate", response_model=Envelope, tags=["auth"])
async def validate_session(session_token: Optional[str] = Header(None, alias="Session-Token")):
    runtime = get_runtime()
    valid = runtime.auth.validate_session(session_token)
    return Envelope(status="ok", data=SessionStatusResponse(valid=valid))


@router.post("/auth/session/touch", response_model=Envelope, tags=["auth"])
async def touch_session(session_token: Optional[str] = Header(None, alias="Session-Token")):
    runtime = get_runtime()
    touched = runtime.auth.touch_session(session_token)
    return Envelope(status="ok", data=SessionTouchResponse(touched=touched))


@router.get("/auth/sessions/{user_id}", response_model=Envelope, tags=["auth"])
async def list_sessions(user_id: int = Path(..., ge=1)):
    """All sessions of a user in every state, newest first."""
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            sessions=[SessionResponse.from_model(s) for s in sessions],
            total=len(sessions),
        ),
    )


@router.delete("/auth/sessions/{user_id}", response_model=Envelope, tags=["auth"])
async def close_all_sessions(user_id: int = Path(..., ge=1)):
    """Sign the user out everywhere: ACTIVE sessions become REVOKED, tokens inactive."""
    runtime = get_runtime()
    result = runtime.auth.close_all_sessions(user_id)
    return Envelope(
        status="ok",
        data=CloseAllResponse(
            sessions_revoked=result.sessions_revoked,
            tokens_revoked=result.tokens_revoked,
        ),
    )


@router.get("/auth/tokens/{user_id}", response_model=Envelope, tags=["auth"])
async def list_tokens(user_id: int = Path(..., ge=1)):
    runtime = get_runtime()
    tokens = runtime.auth.list_tokens(user_id)
    return Envelope(
        status="ok",
        data=TokenListResponse(
            tokens=[TokenSummary.from_model(t) for t in tokens], total=len(tokens)
        ),
    )


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email.lower()}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    token = runtime.auth.request_password_reset(body.email)
    # Same response whether or not the email exists
    data = PasswordResetRequestResponse()
    if token and runtime.settings.test_mode:
        data.reset_token = token.secret
    return Envelope(status="ok", data=data)


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_reset(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{_peer_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    ok = runtime.auth.confirm_password_reset(body.token, body.new_password)
    if not ok:
        raise _http_error("validation_error", "invalid token", status_code=400)
    return Envelope(status="ok", data=PasswordResetConfirmResponse())
