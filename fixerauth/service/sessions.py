from __future__ import annotations

from datetime import timedelta
from typing import List, Optional

from fixerauth.logging import get_logger
from fixerauth.service.clock import Clock, IdGenerator, SystemClock, UuidIdGenerator
from fixerauth.storage.common import AuthStore
from fixerauth.storage.models import NewSession, Session, SessionState

logger = get_logger(__name__)

UNKNOWN = "Unknown"

# checked in order; first substring hit wins
_DEVICE_RULES = (("mobile", "Mobile"), ("tablet", "Tablet"))
_BROWSER_RULES = (("chrome", "Chrome"), ("firefox", "Firefox"), ("edge", "Edge"))


def classify_device(user_agent: Optional[str]) -> str:
    if user_agent is None:
        return UNKNOWN
    lowered = user_agent.lower()
    for needle, label in _DEVICE_RULES:
        if needle in lowered:
            return label
    return "Desktop"


def classify_browser(user_agent: Optional[str]) -> str:
    if user_agent is None:
        return UNKNOWN
    lowered = user_agent.lower()
    for needle, label in _BROWSER_RULES:
        if needle in lowered:
            return label
    return "Other"


class SessionManager:
    """Opens, validates and ends user sessions.

    At most one session per user is ACTIVE: ``open`` closes the others in the
    same store operation. EXPIRED, CLOSED and REVOKED are terminal.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        clock: Optional[Clock] = None,
        ids: Optional[IdGenerator] = None,
        idle_timeout: timedelta = timedelta(hours=2),
        sweep_idle: timedelta = timedelta(hours=24),
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.ids = ids or UuidIdGenerator()
        self.idle_timeout = idle_timeout
        self.sweep_idle_after = sweep_idle

    def open(
        self, user_id: int, ip: Optional[str], user_agent: Optional[str]
    ) -> Session:
        session, closed = self.store.insert_session(
            NewSession(
                user_id=user_id,
                session_token=self.ids.session_token(),
                started_at=self.clock.now(),
                client_ip=ip,
                device=classify_device(user_agent),
                browser=classify_browser(user_agent),
            )
        )
        logger.info(
            "session_opened",
            user_id=user_id,
            session_id=session.id,
            device=session.device,
            browser=session.browser,
            closed_previous=closed,
        )
        return session

    def touch(self, session_token: Optional[str]) -> bool:
        if not session_token:
            return False
        return self.store.touch_session(session_token, self.clock.now())

    def validate(self, session_token: Optional[str]) -> bool:
        """True for an ACTIVE session used within the idle timeout.

        Does not extend the session; callers that want sliding expiry call
        ``touch`` as well.
        """
        if not session_token:
            return False
        session = self.store.get_session(session_token)
        if not session or session.state is not SessionState.ACTIVE:
            return False
        now = self.clock.now()
        if session.last_accessed_at < now - self.idle_timeout:
            self.store.end_session(session_token, SessionState.EXPIRED, now)
            logger.info(
                "session_expired_idle", session_id=session.id, user_id=session.user_id
            )
            return False
        return True

    def get(self, session_token: Optional[str]) -> Optional[Session]:
        if not session_token:
            return None
        return self.store.get_session(session_token)

    def close(self, session_token: Optional[str]) -> bool:
        """Close the session; returns whether a session with this token exists.

        Sessions already in a terminal state keep that state.
        """
        if not session_token:
            return False
        # terminal states stay put; end_session only moves an ACTIVE session
        session = self.store.end_session(
            session_token, SessionState.CLOSED, self.clock.now()
        )
        if session:
            logger.info(
                "session_closed",
                session_id=session.id,
                user_id=session.user_id,
                state=session.state.value,
            )
        return session is not None

    def close_all_for_user(self, user_id: int) -> int:
        count = self.store.end_user_sessions(
            user_id, SessionState.REVOKED, self.clock.now()
        )
        logger.info("sessions_revoked_for_user", user_id=user_id, count=count)
        return count

    def list_for_user(self, user_id: int) -> List[Session]:
        return self.store.list_user_sessions(user_id)

    def sweep_idle(self) -> int:
        now = self.clock.now()
        count = self.store.expire_idle_sessions(now - self.sweep_idle_after, now)
        if count:
            logger.info("sessions_swept", count=count)
        return count


__all__ = ["SessionManager", "classify_device", "classify_browser"]
