from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from fixerauth.logging import get_logger
from fixerauth.service.clock import Clock, IdGenerator, SystemClock, UuidIdGenerator
from fixerauth.storage.common import AuthStore
from fixerauth.storage.models import NewToken, Token, TokenKind

logger = get_logger(__name__)


class TokenManager:
    """Issues, validates and revokes bearer tokens.

    A token moves ACTIVE -> INACTIVE exactly once. Lookups that find nothing
    return ``False``/``None``; absence is never an error here.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        clock: Optional[Clock] = None,
        ids: Optional[IdGenerator] = None,
        login_ttl: timedelta = timedelta(hours=24),
        refresh_ttl: timedelta = timedelta(days=7),
        reset_ttl: timedelta = timedelta(minutes=30),
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.ids = ids or UuidIdGenerator()
        self.login_ttl = login_ttl
        self.refresh_ttl = refresh_ttl
        self.reset_ttl = reset_ttl

    def _issue(
        self,
        user_id: int,
        kind: TokenKind,
        ttl: timedelta,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        supersede: bool = False,
    ) -> Token:
        now = self.clock.now()
        token = self.store.insert_token(
            NewToken(
                user_id=user_id,
                secret=self.ids.token_secret(),
                kind=kind,
                issued_at=now,
                expires_at=now + ttl,
                origin_ip=ip,
                user_agent=user_agent,
            ),
            supersede=supersede,
        )
        logger.info(
            "token_issued",
            user_id=user_id,
            kind=kind.value,
            token_id=token.id,
            expires_at=token.expires_at.isoformat(),
        )
        return token

    def issue_login(
        self, user_id: int, ip: Optional[str], user_agent: Optional[str]
    ) -> Token:
        """Issue a LOGIN token, deactivating the user's previous LOGIN tokens."""
        return self._issue(
            user_id,
            TokenKind.LOGIN,
            self.login_ttl,
            ip=ip,
            user_agent=user_agent,
            supersede=True,
        )

    def issue_refresh(self, user_id: int) -> Token:
        # refresh tokens coexist; no supersede
        return self._issue(user_id, TokenKind.REFRESH, self.refresh_ttl)

    def issue_reset(self, user_id: int) -> Token:
        return self._issue(
            user_id, TokenKind.RESET_PASSWORD, self.reset_ttl, supersede=True
        )

    def lookup(self, secret: Optional[str]) -> Optional[Token]:
        """Return the active, unexpired token for ``secret``; lazily expire it otherwise."""
        return self._live_token(secret)

    def _live_token(self, secret: Optional[str]) -> Optional[Token]:
        if not secret:
            return None
        token = self.store.get_token(secret)
        if not token or not token.active:
            return None
        if token.is_expired(self.clock.now()):
            self.store.deactivate_token(secret)
            logger.info("token_expired", token_id=token.id, user_id=token.user_id)
            return None
        return token

    def validate(self, secret: Optional[str]) -> bool:
        return self._live_token(secret) is not None

    def resolve_owner(self, secret: Optional[str]) -> Optional[int]:
        token = self._live_token(secret)
        return token.user_id if token else None

    def consume(self, secret: Optional[str], kind: TokenKind) -> Optional[Token]:
        """Validate a single-use token of ``kind`` and deactivate it."""
        token = self._live_token(secret)
        if not token or token.kind is not kind:
            return None
        if not self.store.deactivate_token(token.secret):
            # lost a race with another consumer
            return None
        token.active = False
        return token

    def revoke(self, secret: Optional[str]) -> bool:
        """Deactivate the token; returns whether an active token was changed."""
        if not secret:
            return False
        changed = self.store.deactivate_token(secret)
        if changed:
            logger.info("token_revoked")
        return changed

    def revoke_all_for_user(self, user_id: int) -> int:
        count = self.store.deactivate_user_tokens(user_id)
        logger.info("tokens_revoked_for_user", user_id=user_id, count=count)
        return count

    def list_for_user(self, user_id: int) -> List[Token]:
        return self.store.list_user_tokens(user_id)

    def sweep_expired(self) -> int:
        count = self.store.deactivate_expired_tokens(self.clock.now())
        if count:
            logger.info("tokens_swept", count=count)
        return count

    def purge_inactive(self, older_than: timedelta) -> int:
        cutoff: datetime = self.clock.now() - older_than
        count = self.store.purge_inactive_tokens(cutoff)
        if count:
            logger.info("tokens_purged", count=count, cutoff=cutoff.isoformat())
        return count


__all__ = ["TokenManager"]
