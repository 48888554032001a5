from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class TokenKind(str, Enum):
    LOGIN = "LOGIN"
    REFRESH = "REFRESH"
    RESET_PASSWORD = "RESET_PASSWORD"


class SessionState(str, Enum):
    """Session lifecycle. Everything except ACTIVE is terminal."""

    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CLOSED = "CLOSED"
    REVOKED = "REVOKED"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionState.ACTIVE


@dataclass
class Credential:
    id: int
    email: str
    password: str
    user_id: int
    created_at: datetime
    password_algo: str = "plain"
    is_active: bool = True
    last_login_at: Optional[datetime] = None


@dataclass
class Token:
    id: int
    user_id: int
    secret: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    active: bool = True
    origin_ip: Optional[str] = None
    user_agent: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class Session:
    id: int
    user_id: int
    session_token: str
    started_at: datetime
    last_accessed_at: datetime
    state: SessionState = SessionState.ACTIVE
    ended_at: Optional[datetime] = None
    client_ip: Optional[str] = None
    device: Optional[str] = None
    browser: Optional[str] = None


@dataclass
class NewToken:
    """Token fields supplied by the caller; the store assigns the id."""

    user_id: int
    secret: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    origin_ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class NewSession:
    user_id: int
    session_token: str
    started_at: datetime
    client_ip: Optional[str] = None
    device: Optional[str] = None
    browser: Optional[str] = None
