"""Common storage utilities shared between memory and postgres implementations.

Both backends satisfy :class:`AuthStore`; the services only depend on this
contract so either one can be wired in by the runtime.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol

from fixerauth.storage.models import (
    Credential,
    NewSession,
    NewToken,
    Session,
    SessionState,
    Token,
)


class AuthStore(Protocol):
    """Persistence contract for credentials, tokens and sessions."""

    # credentials
    def create_credential(
        self,
        email: str,
        password: str,
        user_id: int,
        *,
        password_algo: str,
        created_at: datetime,
    ) -> Credential: ...

    def get_credential_by_email(self, email: str) -> Optional[Credential]: ...

    def list_user_credentials(self, user_id: int) -> List[Credential]: ...

    def update_credential_password(
        self, credential_id: int, password: str, password_algo: str
    ) -> Optional[Credential]: ...

    def record_credential_login(self, credential_id: int, at: datetime) -> None: ...

    # tokens
    def insert_token(self, token: NewToken, *, supersede: bool = False) -> Token: ...

    def get_token(self, secret: str) -> Optional[Token]: ...

    def deactivate_token(self, secret: str) -> bool: ...

    def deactivate_user_tokens(self, user_id: int) -> int: ...

    def deactivate_expired_tokens(self, now: datetime) -> int: ...

    def list_user_tokens(self, user_id: int) -> List[Token]: ...

    def purge_inactive_tokens(self, issued_before: datetime) -> int: ...

    # sessions
    def insert_session(self, session: NewSession) -> tuple[Session, int]: ...

    def get_session(self, session_token: str) -> Optional[Session]: ...

    def touch_session(self, session_token: str, at: datetime) -> bool: ...

    def end_session(
        self, session_token: str, state: SessionState, at: datetime
    ) -> Optional[Session]: ...

    def end_user_sessions(
        self, user_id: int, state: SessionState, at: datetime
    ) -> int: ...

    def expire_idle_sessions(self, idle_before: datetime, at: datetime) -> int: ...

    def list_user_sessions(self, user_id: int) -> List[Session]: ...

    def verify_connection(self) -> None: ...


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object.

    Works with both dict-like objects and objects with attribute access.
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default
