from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from fixerauth.logging import get_logger
from fixerauth.storage.common import ensure_utc, safe_row_value
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

# advisory lock namespaces for per-user serialization
_TOKEN_LOCK_NAMESPACE = 7101
_SESSION_LOCK_NAMESPACE = 7102


class PostgresStore:
    """Postgres-backed store for credentials, tokens and sessions.

    Compound writes (supersede-then-insert for tokens, close-then-insert for
    sessions) run inside one transaction holding a transaction-scoped advisory
    lock keyed on the user id.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_credential_table()
        self._ensure_token_table()
        self._ensure_session_table()

    def _connect(self):
        return self.pool.connection()

    def _ensure_credential_table(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_credential (
                    id BIGSERIAL PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password TEXT NOT NULL,
                    password_algo TEXT NOT NULL DEFAULT 'plain',
                    user_id BIGINT NOT NULL,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    last_login_at TIMESTAMPTZ
                )
                """
            )

    def _ensure_token_table(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_token (
                    id BIGSERIAL PRIMARY KEY,
                    user_id BIGINT NOT NULL,
                    secret TEXT NOT NULL UNIQUE,
                    kind TEXT NOT NULL CHECK (kind IN ('LOGIN', 'REFRESH', 'RESET_PASSWORD')),
                    issued_at TIMESTAMPTZ NOT NULL,
                    expires_at TIMESTAMPTZ NOT NULL,
                    active BOOLEAN NOT NULL DEFAULT TRUE,
                    origin_ip TEXT,
                    user_agent TEXT,
                    CHECK (expires_at > issued_at)
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS auth_token_user_active_idx
                ON auth_token (user_id, kind) WHERE active
                """
            )

    def _ensure_session_table(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS auth_user_session (
                    id BIGSERIAL PRIMARY KEY,
                    user_id BIGINT NOT NULL,
                    session_token TEXT NOT NULL UNIQUE,
                    state TEXT NOT NULL CHECK (state IN ('ACTIVE', 'EXPIRED', 'CLOSED', 'REVOKED')),
                    started_at TIMESTAMPTZ NOT NULL,
                    last_accessed_at TIMESTAMPTZ NOT NULL,
                    ended_at TIMESTAMPTZ,
                    client_ip TEXT,
                    device TEXT,
                    browser TEXT
                )
                """
            )
            # at most one ACTIVE session per user
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS auth_user_session_one_active_idx
                ON auth_user_session (user_id) WHERE state = 'ACTIVE'
                """
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    # row mapping
    @staticmethod
    def _row_to_credential(row: Any) -> Credential:
        return Credential(
            id=int(row["id"]),
            email=row["email"],
            password=row["password"],
            password_algo=safe_row_value(row, "password_algo", "plain"),
            user_id=int(row["user_id"]),
            is_active=bool(safe_row_value(row, "is_active", True)),
            created_at=ensure_utc(row["created_at"]),
            last_login_at=ensure_utc(safe_row_value(row, "last_login_at")),
        )

    @staticmethod
    def _row_to_token(row: Any) -> Token:
        return Token(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            secret=row["secret"],
            kind=TokenKind(row["kind"]),
            issued_at=ensure_utc(row["issued_at"]),
            expires_at=ensure_utc(row["expires_at"]),
            active=bool(row["active"]),
            origin_ip=safe_row_value(row, "origin_ip"),
            user_agent=safe_row_value(row, "user_agent"),
        )

    @staticmethod
    def _row_to_session(row: Any) -> Session:
        return Session(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            session_token=row["session_token"],
            state=SessionState(row["state"]),
            started_at=ensure_utc(row["started_at"]),
            last_accessed_at=ensure_utc(row["last_accessed_at"]),
            ended_at=ensure_utc(safe_row_value(row, "ended_at")),
            client_ip=safe_row_value(row, "client_ip"),
            device=safe_row_value(row, "device"),
            browser=safe_row_value(row, "browser"),
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_credential (email, password, password_algo, user_id, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (email, password, password_algo, user_id, created_at),
                ).fetchone()
        except errors.UniqueViolation:
            raise DuplicateEmail(email)
        return self._row_to_credential(row)

    def get_credential_by_email(self, email: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_credential WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def list_user_credentials(self, user_id: int) -> List[Credential]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_credential WHERE user_id = %s ORDER BY id",
                (user_id,),
            ).fetchall()
        return [self._row_to_credential(row) for row in rows]

    def update_credential_password(
        self, credential_id: int, password: str, password_algo: str
    ) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_credential SET password = %s, password_algo = %s
                WHERE id = %s
                RETURNING *
                """,
                (password, password_algo, credential_id),
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def record_credential_login(self, credential_id: int, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_credential SET last_login_at = %s WHERE id = %s",
                (at, credential_id),
            )

    # tokens
    def insert_token(self, token: NewToken, *, supersede: bool = False) -> Token:
        try:
            with self._connect() as conn:
                if supersede:
                    conn.execute(
                        "SELECT pg_advisory_xact_lock(%s, hashtext(%s))",
                        (_TOKEN_LOCK_NAMESPACE, f"{token.user_id}:{token.kind.value}"),
                    )
                    conn.execute(
                        """
                        UPDATE auth_token SET active = FALSE
                        WHERE user_id = %s AND kind = %s AND active
                        """,
                        (token.user_id, token.kind.value),
                    )
                row = conn.execute(
                    """
                    INSERT INTO auth_token (user_id, secret, kind, issued_at, expires_at, active, origin_ip, user_agent)
                    VALUES (%s, %s, %s, %s, %s, TRUE, %s, %s)
                    RETURNING *
                    """,
                    (
                        token.user_id,
                        token.secret,
                        token.kind.value,
                        token.issued_at,
                        token.expires_at,
                        token.origin_ip,
                        token.user_agent,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("token secret collision", {"field": "secret"})
        return self._row_to_token(row)

    def get_token(self, secret: str) -> Optional[Token]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_token WHERE secret = %s", (secret,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def deactivate_token(self, secret: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_token SET active = FALSE WHERE secret = %s AND active",
                (secret,),
            )
            return result.rowcount > 0

    def deactivate_user_tokens(self, user_id: int) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_token SET active = FALSE WHERE user_id = %s AND active",
                (user_id,),
            )
            return result.rowcount

    def deactivate_expired_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE auth_token SET active = FALSE WHERE active AND expires_at <= %s",
                (now,),
            )
            return result.rowcount

    def list_user_tokens(self, user_id: int) -> List[Token]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_token WHERE user_id = %s
                ORDER BY issued_at DESC, id DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_token(row) for row in rows]

    def purge_inactive_tokens(self, issued_before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_token WHERE NOT active AND issued_at < %s",
                (issued_before,),
            )
            return result.rowcount

    # sessions
    def insert_session(self, session: NewSession) -> tuple[Session, int]:
        try:
            with self._connect() as conn:
                conn.execute(
                    "SELECT pg_advisory_xact_lock(%s, hashtext(%s))",
                    (_SESSION_LOCK_NAMESPACE, str(session.user_id)),
                )
                closed = conn.execute(
                    """
                    UPDATE auth_user_session SET state = 'CLOSED', ended_at = %s
                    WHERE user_id = %s AND state = 'ACTIVE'
                    """,
                    (session.started_at, session.user_id),
                ).rowcount
                row = conn.execute(
                    """
                    INSERT INTO auth_user_session (
                        user_id, session_token, state, started_at, last_accessed_at,
                        client_ip, device, browser
                    )
                    VALUES (%s, %s, 'ACTIVE', %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        session.user_id,
                        session.session_token,
                        session.started_at,
                        session.started_at,
                        session.client_ip,
                        session.device,
                        session.browser,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session token collision", {"field": "session_token"}
            )
        return self._row_to_session(row), closed

    def get_session(self, session_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user_session WHERE session_token = %s",
                (session_token,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def touch_session(self, session_token: str, at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_user_session SET last_accessed_at = %s
                WHERE session_token = %s AND state = 'ACTIVE'
                """,
                (at, session_token),
            )
            return result.rowcount > 0

    def end_session(
        self, session_token: str, state: SessionState, at: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE auth_user_session SET state = %s, ended_at = %s
                WHERE session_token = %s AND state = 'ACTIVE'
                """,
                (state.value, at, session_token),
            )
            row = conn.execute(
                "SELECT * FROM auth_user_session WHERE session_token = %s",
                (session_token,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def end_user_sessions(self, user_id: int, state: SessionState, at: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_user_session SET state = %s, ended_at = %s
                WHERE user_id = %s AND state = 'ACTIVE'
                """,
                (state.value, at, user_id),
            )
            return result.rowcount

    def expire_idle_sessions(self, idle_before: datetime, at: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_user_session SET state = 'EXPIRED', ended_at = %s
                WHERE state = 'ACTIVE' AND last_accessed_at < %s
                """,
                (at, idle_before),
            )
            return result.rowcount

    def list_user_sessions(self, user_id: int) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_user_session WHERE user_id = %s
                ORDER BY started_at DESC, id DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def close(self) -> None:
        self.pool.close()
