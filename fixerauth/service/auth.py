from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from fixerauth.logging import get_logger
from fixerauth.service.credentials import CredentialStore
from fixerauth.service.directory import AllowAllDirectory, UserDirectory
from fixerauth.service.errors import (
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
)
from fixerauth.service.sessions import SessionManager
from fixerauth.service.tokens import TokenManager
from fixerauth.storage.models import Credential, Session, Token, TokenKind

logger = get_logger(__name__)

BEARER_PREFIX = "Bearer "

# kinds accepted as access credentials
_ACCESS_KINDS = frozenset({TokenKind.LOGIN, TokenKind.REFRESH})


def strip_bearer(value: Optional[str]) -> Optional[str]:
    """Drop a leading ``Bearer `` (case-sensitive) from a header value."""
    if value is None:
        return None
    if value.startswith(BEARER_PREFIX):
        return value[len(BEARER_PREFIX):]
    return value


@dataclass
class LoginResult:
    token: Token
    session: Session


@dataclass
class ValidationResult:
    valid: bool
    user_id: Optional[int] = None


@dataclass
class LogoutResult:
    token_revoked: bool
    session_closed: bool


@dataclass
class CloseAllResult:
    sessions_revoked: int
    tokens_revoked: int


@dataclass
class SweepReport:
    tokens_expired: int
    sessions_expired: int
    tokens_purged: int


class AuthFacade:
    """Entry point for login, logout, validation and refresh.

    Login issues the token and opens the session as one unit: if opening the
    session fails, the freshly issued token is revoked before the error
    propagates.
    """

    def __init__(
        self,
        tokens: TokenManager,
        sessions: SessionManager,
        credentials: CredentialStore,
        *,
        directory: Optional[UserDirectory] = None,
        token_retention: timedelta = timedelta(days=30),
    ) -> None:
        self.tokens = tokens
        self.sessions = sessions
        self.credentials = credentials
        self.directory = directory or AllowAllDirectory()
        self.token_retention = token_retention

    def login(
        self, user_id: int, ip: Optional[str], user_agent: Optional[str]
    ) -> LoginResult:
        if not self.directory.user_exists(user_id):
            logger.warning("login_unknown_user", user_id=user_id)
            raise NotFoundError("user not found")
        token = self.tokens.issue_login(user_id, ip, user_agent)
        try:
            session = self.sessions.open(user_id, ip, user_agent)
        except Exception as exc:
            logger.error(
                "login_session_open_failed",
                user_id=user_id,
                token_id=token.id,
                error=str(exc),
            )
            self.tokens.revoke(token.secret)
            raise
        logger.info("login_succeeded", user_id=user_id, session_id=session.id)
        return LoginResult(token=token, session=session)

    def login_with_password(
        self,
        email: str,
        password: str,
        ip: Optional[str],
        user_agent: Optional[str],
    ) -> LoginResult:
        credential = self.credentials.verify(email, password)
        if not credential:
            raise InvalidCredentialsError()
        result = self.login(credential.user_id, ip, user_agent)
        self.credentials.record_login(credential.id)
        return result

    def register(self, email: str, password: str, user_id: int) -> Credential:
        if not self.directory.user_exists(user_id):
            raise NotFoundError("user not found")
        return self.credentials.create(email, password, user_id)

    def logout(
        self, bearer: Optional[str], session_token: Optional[str]
    ) -> LogoutResult:
        token_revoked = self.tokens.revoke(strip_bearer(bearer))
        session_closed = self.sessions.close(session_token)
        logger.info(
            "logout", token_revoked=token_revoked, session_closed=session_closed
        )
        return LogoutResult(token_revoked=token_revoked, session_closed=session_closed)

    def _access_token(self, bearer: Optional[str]) -> Optional[Token]:
        token = self.tokens.lookup(strip_bearer(bearer))
        if not token or token.kind not in _ACCESS_KINDS:
            return None
        return token

    def validate(self, bearer: Optional[str]) -> ValidationResult:
        token = self._access_token(bearer)
        if not token:
            return ValidationResult(valid=False)
        return ValidationResult(valid=True, user_id=token.user_id)

    def refresh(
        self,
        bearer: Optional[str],
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Token:
        """Swap a live access token for a new LOGIN token.

        Raises ``InvalidTokenError`` without issuing anything when the
        presented token does not resolve to a user.
        """
        old = self._access_token(bearer)
        if not old:
            raise InvalidTokenError()
        new_token = self.tokens.issue_login(old.user_id, ip, user_agent)
        self.tokens.revoke(old.secret)
        logger.info("token_refreshed", user_id=old.user_id, token_id=new_token.id)
        return new_token

    def close_all_sessions(self, user_id: int) -> CloseAllResult:
        sessions_revoked = self.sessions.close_all_for_user(user_id)
        tokens_revoked = self.tokens.revoke_all_for_user(user_id)
        return CloseAllResult(
            sessions_revoked=sessions_revoked, tokens_revoked=tokens_revoked
        )

    def list_sessions(self, user_id: int) -> List[Session]:
        return self.sessions.list_for_user(user_id)

    def list_tokens(self, user_id: int) -> List[Token]:
        return self.tokens.list_for_user(user_id)

    def validate_session(self, session_token: Optional[str]) -> bool:
        return self.sessions.validate(session_token)

    def touch_session(self, session_token: Optional[str]) -> bool:
        return self.sessions.touch(session_token)

    def request_password_reset(self, email: str) -> Optional[Token]:
        """Issue a RESET_PASSWORD token; ``None`` when no active credential matches."""
        credential = self.credentials.find_by_email(email)
        if not credential or not credential.is_active:
            logger.info("password_reset_unknown_email")
            return None
        token = self.tokens.issue_reset(credential.user_id)
        logger.info("password_reset_requested", user_id=credential.user_id)
        return token

    def confirm_password_reset(self, secret: str, new_password: str) -> bool:
        """Consume the reset token, set the password and sign the user out everywhere."""
        CredentialStore.check_password(new_password)
        token = self.tokens.consume(secret, TokenKind.RESET_PASSWORD)
        if not token:
            logger.warning("password_reset_invalid_token")
            return False
        updated = 0
        for credential in self.credentials.list_for_user(token.user_id):
            if self.credentials.update_password(credential.id, new_password):
                updated += 1
        if not updated:
            logger.warning("password_reset_no_credentials", user_id=token.user_id)
            return False
        self.close_all_sessions(token.user_id)
        logger.info("password_reset_completed", user_id=token.user_id)
        return True

    def sweep(self) -> SweepReport:
        report = SweepReport(
            tokens_expired=self.tokens.sweep_expired(),
            sessions_expired=self.sessions.sweep_idle(),
            tokens_purged=self.tokens.purge_inactive(self.token_retention),
        )
        logger.info(
            "sweep_completed",
            tokens_expired=report.tokens_expired,
            sessions_expired=report.sessions_expired,
            tokens_purged=report.tokens_purged,
        )
        return report


__all__ = [
    "AuthFacade",
    "LoginResult",
    "ValidationResult",
    "LogoutResult",
    "CloseAllResult",
    "SweepReport",
    "strip_bearer",
]
