from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from fixerauth.logging import get_logger
from fixerauth.storage.common import ensure_utc
from fixerauth.storage.errors import ConstraintViolation, DuplicateEmail
from fixerauth.storage.models import (
    Credential,
    NewSession,
    NewToken,
    Session,
    SessionState,
    Token,
    TokenKind,
)


class MemoryStore:
    """In-process backing store with a JSON snapshot on the shared filesystem.

    Every mutation runs under one re-entrant lock, so compound operations such
    as "close the user's ACTIVE sessions then insert a new one" are atomic with
    respect to concurrent callers.
    """

    def __init__(self, fs_root: str = "/tmp/fixerauth") -> None:
        self.logger = get_logger(__name__)
        self.credentials: Dict[int, Credential] = {}
        self.credentials_by_email: Dict[str, int] = {}
        self.tokens: Dict[str, Token] = {}
        self.sessions: Dict[str, Session] = {}
        self._credential_seq: int = 1
        self._token_seq: int = 1
        self._session_seq: int = 1
        # Thread lock for sequence counters
        self._seq_lock = threading.Lock()
        # RLock for all data operations; nested acquisitions happen in compound writes
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _next_id(self, table: str) -> int:
        with self._seq_lock:
            attr = f"_{table}_seq"
            value = getattr(self, attr)
            setattr(self, attr, value + 1)
            return value

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if raw is None:
            return None
        return ensure_utc(datetime.fromisoformat(raw))

    def verify_connection(self) -> None:
        with self._data_lock:
            self._state_path()

    # credentials
    def create_credential(
        self,
        email: str,
        password: str,
        user_id: int,
        *,
        password_algo: str,
        created_at: datetime,
    ) -> Credential:
        with self._data_lock:
            if email in self.credentials_by_email:
                raise DuplicateEmail(email)
            credential = Credential(
                id=self._next_id("credential"),
                email=email,
                password=password,
                password_algo=password_algo,
                user_id=user_id,
                created_at=created_at,
            )
            self.credentials[credential.id] = credential
            self.credentials_by_email[email] = credential.id
            self._persist_state()
            return replace(credential)

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        with self._data_lock:
            credential_id = self.credentials_by_email.get(email)
            if credential_id is None:
                return None
            return replace(self.credentials[credential_id])

    def list_user_credentials(self, user_id: int) -> List[Credential]:
        with self._data_lock:
            return [
                replace(c)
                for c in sorted(self.credentials.values(), key=lambda c: c.id)
                if c.user_id == user_id
            ]

    def update_credential_password(
        self, credential_id: int, password: str, password_algo: str
    ) -> Optional[Credential]:
        with self._data_lock:
            credential = self.credentials.get(credential_id)
            if not credential:
                return None
            credential.password = password
            credential.password_algo = password_algo
            self._persist_state()
            return replace(credential)

    def record_credential_login(self, credential_id: int, at: datetime) -> None:
        with self._data_lock:
            credential = self.credentials.get(credential_id)
            if not credential:
                return
            credential.last_login_at = at
            self._persist_state()

    # tokens
    def insert_token(self, token: NewToken, *, supersede: bool = False) -> Token:
        with self._data_lock:
            if token.secret in self.tokens:
                raise ConstraintViolation("token secret collision", {"field": "secret"})
            if supersede:
                self._deactivate_matching(
                    lambda t: t.user_id == token.user_id and t.kind == token.kind
                )
            record = Token(
                id=self._next_id("token"),
                user_id=token.user_id,
                secret=token.secret,
                kind=token.kind,
                issued_at=token.issued_at,
                expires_at=token.expires_at,
                active=True,
                origin_ip=token.origin_ip,
                user_agent=token.user_agent,
            )
            self.tokens[record.secret] = record
            self._persist_state()
            return replace(record)

    def get_token(self, secret: str) -> Optional[Token]:
        with self._data_lock:
            token = self.tokens.get(secret)
            return replace(token) if token else None

    def deactivate_token(self, secret: str) -> bool:
        with self._data_lock:
            token = self.tokens.get(secret)
            if not token or not token.active:
                return False
            token.active = False
            self._persist_state()
            return True

    def _deactivate_matching(self, predicate) -> int:
        changed = 0
        for token in self.tokens.values():
            if token.active and predicate(token):
                token.active = False
                changed += 1
        return changed

    def deactivate_user_tokens(self, user_id: int) -> int:
        with self._data_lock:
            changed = self._deactivate_matching(lambda t: t.user_id == user_id)
            if changed:
                self._persist_state()
            return changed

    def deactivate_expired_tokens(self, now: datetime) -> int:
        with self._data_lock:
            changed = self._deactivate_matching(lambda t: t.expires_at <= now)
            if changed:
                self._persist_state()
            return changed

    def list_user_tokens(self, user_id: int) -> List[Token]:
        with self._data_lock:
            tokens = [replace(t) for t in self.tokens.values() if t.user_id == user_id]
        return sorted(tokens, key=lambda t: (t.issued_at, t.id), reverse=True)

    def purge_inactive_tokens(self, issued_before: datetime) -> int:
        with self._data_lock:
            stale = [
                secret
                for secret, token in self.tokens.items()
                if not token.active and token.issued_at < issued_before
            ]
            for secret in stale:
                self.tokens.pop(secret, None)
            if stale:
                self._persist_state()
            return len(stale)

    # sessions
    def insert_session(self, session: NewSession) -> tuple[Session, int]:
        with self._data_lock:
            if session.session_token in self.sessions:
                raise ConstraintViolation(
                    "session token collision", {"field": "session_token"}
                )
            closed = self._end_matching(
                lambda s: s.user_id == session.user_id,
                SessionState.CLOSED,
                session.started_at,
            )
            record = Session(
                id=self._next_id("session"),
                user_id=session.user_id,
                session_token=session.session_token,
                started_at=session.started_at,
                last_accessed_at=session.started_at,
                state=SessionState.ACTIVE,
                client_ip=session.client_ip,
                device=session.device,
                browser=session.browser,
            )
            self.sessions[record.session_token] = record
            self._persist_state()
            return replace(record), closed

    def get_session(self, session_token: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_token)
            return replace(session) if session else None

    def touch_session(self, session_token: str, at: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_token)
            if not session or session.state is not SessionState.ACTIVE:
                return False
            session.last_accessed_at = at
            self._persist_state()
            return True

    def _end_matching(self, predicate, state: SessionState, at: datetime) -> int:
        changed = 0
        for session in self.sessions.values():
            if session.state is SessionState.ACTIVE and predicate(session):
                session.state = state
                session.ended_at = at
                changed += 1
        return changed

    def end_session(
        self, session_token: str, state: SessionState, at: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_token)
            if not session:
                return None
            if self._end_matching(lambda s: s is session, state, at):
                self._persist_state()
            return replace(session)

    def end_user_sessions(self, user_id: int, state: SessionState, at: datetime) -> int:
        with self._data_lock:
            changed = self._end_matching(lambda s: s.user_id == user_id, state, at)
            if changed:
                self._persist_state()
            return changed

    def expire_idle_sessions(self, idle_before: datetime, at: datetime) -> int:
        with self._data_lock:
            changed = self._end_matching(
                lambda s: s.last_accessed_at < idle_before, SessionState.EXPIRED, at
            )
            if changed:
                self._persist_state()
            return changed

    def list_user_sessions(self, user_id: int) -> List[Session]:
        with self._data_lock:
            sessions = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(sessions, key=lambda s: (s.started_at, s.id), reverse=True)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "credentials": [
                self._serialize_credential(c) for c in self.credentials.values()
            ],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "sequences": {
                "credential": self._credential_seq,
                "token": self._token_seq,
                "session": self._session_seq,
            },
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.credentials = {
            c["id"]: self._deserialize_credential(c) for c in data.get("credentials", [])
        }
        self.credentials_by_email = {c.email: c.id for c in self.credentials.values()}
        self.tokens = {
            t["secret"]: self._deserialize_token(t) for t in data.get("tokens", [])
        }
        self.sessions = {
            s["session_token"]: self._deserialize_session(s)
            for s in data.get("sessions", [])
        }
        sequences = data.get("sequences", {})
        self._credential_seq = max(
            sequences.get("credential", 1),
            max(self.credentials, default=0) + 1,
        )
        self._token_seq = max(
            sequences.get("token", 1),
            max((t.id for t in self.tokens.values()), default=0) + 1,
        )
        self._session_seq = max(
            sequences.get("session", 1),
            max((s.id for s in self.sessions.values()), default=0) + 1,
        )
        self.logger.info(
            "memory_store_state_loaded",
            credentials=len(self.credentials),
            tokens=len(self.tokens),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_credential(self, credential: Credential) -> dict:
        return {
            "id": credential.id,
            "email": credential.email,
            "password": credential.password,
            "password_algo": credential.password_algo,
            "user_id": credential.user_id,
            "is_active": credential.is_active,
            "created_at": self._serialize_datetime(credential.created_at),
            "last_login_at": self._serialize_datetime(credential.last_login_at),
        }

    def _deserialize_credential(self, data: dict) -> Credential:
        return Credential(
            id=int(data["id"]),
            email=data["email"],
            password=data["password"],
            password_algo=data.get("password_algo", "plain"),
            user_id=int(data["user_id"]),
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
        )

    def _serialize_token(self, token: Token) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "secret": token.secret,
            "kind": token.kind.value,
            "issued_at": self._serialize_datetime(token.issued_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "active": token.active,
            "origin_ip": token.origin_ip,
            "user_agent": token.user_agent,
        }

    def _deserialize_token(self, data: dict) -> Token:
        return Token(
            id=int(data["id"]),
            user_id=int(data["user_id"]),
            secret=data["secret"],
            kind=TokenKind(data["kind"]),
            issued_at=self._deserialize_datetime(data["issued_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            active=data.get("active", False),
            origin_ip=data.get("origin_ip"),
            user_agent=data.get("user_agent"),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "session_token": session.session_token,
            "state": session.state.value,
            "started_at": self._serialize_datetime(session.started_at),
            "last_accessed_at": self._serialize_datetime(session.last_accessed_at),
            "ended_at": self._serialize_datetime(session.ended_at),
            "client_ip": session.client_ip,
            "device": session.device,
            "browser": session.browser,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=int(data["id"]),
            user_id=int(data["user_id"]),
            session_token=data["session_token"],
            state=SessionState(data["state"]),
            started_at=self._deserialize_datetime(data["started_at"]),
            last_accessed_at=self._deserialize_datetime(data["last_accessed_at"]),
            ended_at=self._deserialize_datetime(data.get("ended_at")),
            client_ip=data.get("client_ip"),
            device=data.get("device"),
            browser=data.get("browser"),
        )
