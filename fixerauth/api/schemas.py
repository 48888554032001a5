from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from fixerauth.logging import mask_secret
from fixerauth.storage.models import Session, Token

_VALID_ERROR_CODES = {
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
}

MAX_PASSWORD_LENGTH = 128


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    """Check email shape without changing case; lookups are case-sensitive."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_length(value: str) -> str:
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    user_id: int = Field(..., ge=1)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_register_password(cls, value: str) -> str:
        return _validate_password_length(value)


class CredentialResponse(BaseModel):
    id: int
    email: str
    user_id: int
    is_active: bool
    created_at: datetime


class LoginRequest(BaseModel):
    user_id: int = Field(..., ge=1)


class PasswordLoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginResponse(BaseModel):
    access_token: str
    session_token: str
    expires_at: datetime
    user_id: int
    token_type: str = "bearer"


class LogoutResponse(BaseModel):
    success: bool


class ValidateResponse(BaseModel):
    valid: bool
    user_id: Optional[int] = None


class RefreshResponse(BaseModel):
    access_token: str
    expires_at: datetime
    token_type: str = "bearer"


class SessionStatusResponse(BaseModel):
    valid: bool


class SessionTouchResponse(BaseModel):
    touched: bool


class SessionResponse(BaseModel):
    id: int
    user_id: int
    state: str
    started_at: datetime
    last_accessed_at: datetime
    ended_at: Optional[datetime] = None
    client_ip: Optional[str] = None
    device: Optional[str] = None
    browser: Optional[str] = None

    @classmethod
    def from_model(cls, session: Session) -> "SessionResponse":
        # session_token is never echoed in listings
        return cls(
            id=session.id,
            user_id=session.user_id,
            state=session.state.value,
            started_at=session.started_at,
            last_accessed_at=session.last_accessed_at,
            ended_at=session.ended_at,
            client_ip=session.client_ip,
            device=session.device,
            browser=session.browser,
        )


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    total: int


class CloseAllResponse(BaseModel):
    sessions_revoked: int
    tokens_revoked: int


class TokenSummary(BaseModel):
    id: int
    kind: str
    active: bool
    issued_at: datetime
    expires_at: datetime
    origin_ip: Optional[str] = None
    user_agent: Optional[str] = None
    secret_hint: Optional[str] = None

    @classmethod
    def from_model(cls, token: Token) -> "TokenSummary":
        return cls(
            id=token.id,
            kind=token.kind.value,
            active=token.active,
            issued_at=token.issued_at,
            expires_at=token.expires_at,
            origin_ip=token.origin_ip,
            user_agent=token.user_agent,
            secret_hint=mask_secret(token.secret),
        )


class TokenListResponse(BaseModel):
    tokens: List[TokenSummary]
    total: int


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetRequestResponse(BaseModel):
    status: str = "sent"
    # populated only when the service runs in TEST_MODE
    reset_token: Optional[str] = None


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_length(value)


class PasswordResetConfirmResponse(BaseModel):
    status: str = "reset"
