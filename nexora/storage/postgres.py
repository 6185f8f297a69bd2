from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from nexora.logging import get_logger
from nexora.storage.errors import ConstraintViolation, MissingUser
from nexora.storage.models import (
    ActivityLog,
    DeviceInfo,
    OneTimeToken,
    Session,
    User,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY,
        email VARCHAR(255) UNIQUE NOT NULL,
        name VARCHAR(255) NOT NULL,
        password_hash VARCHAR(255),
        oauth_provider VARCHAR(50),
        oauth_id VARCHAR(255),
        role VARCHAR(50) NOT NULL DEFAULT 'user',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        two_factor_secret VARCHAR(255),
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        CONSTRAINT users_credential_present CHECK (
            password_hash IS NOT NULL OR (oauth_provider IS NOT NULL AND oauth_id IS NOT NULL)
        ),
        CONSTRAINT users_two_factor_consistent CHECK (
            (two_factor_enabled AND two_factor_secret IS NOT NULL)
            OR (NOT two_factor_enabled AND two_factor_secret IS NULL)
        )
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_users_oauth ON users(oauth_provider, oauth_id)",
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        refresh_token_digest VARCHAR(64) UNIQUE NOT NULL,
        device_name VARCHAR(255),
        device_type VARCHAR(50),
        ip_address VARCHAR(45),
        user_agent TEXT,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions(expires_at)",
    """
    CREATE TABLE IF NOT EXISTS one_time_tokens (
        kind VARCHAR(32) NOT NULL,
        token_digest VARCHAR(64) NOT NULL,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (kind, token_digest)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_logs (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        action VARCHAR(100) NOT NULL,
        description TEXT,
        ip_address VARCHAR(45),
        user_agent TEXT,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_activity_logs_user_id ON activity_logs(user_id, created_at DESC)",
)


class PostgresStore:
    """Credential store backed by Postgres through a psycopg connection pool."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            password_hash=row.get("password_hash"),
            oauth_provider=row.get("oauth_provider"),
            oauth_id=row.get("oauth_id"),
            role=row.get("role", "user"),
            email_verified=bool(row.get("email_verified", False)),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            two_factor_secret=row.get("two_factor_secret"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _row_to_session(row: dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_digest=row["refresh_token_digest"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            device_name=row.get("device_name"),
            device_type=row.get("device_type"),
        )

    # users
    def create_user(
        self,
        email: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        oauth_provider: Optional[str] = None,
        oauth_id: Optional[str] = None,
        role: str = "user",
        email_verified: bool = False,
    ) -> User:
        if not password_hash and not (oauth_provider and oauth_id):
            raise ConstraintViolation(
                "user needs a password or an oauth identity", field="password_hash"
            )
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO users (id, email, name, password_hash, oauth_provider, oauth_id, role, email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        name,
                        password_hash,
                        oauth_provider,
                        oauth_id,
                        role,
                        email_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            if "oauth" in constraint:
                raise ConstraintViolation("oauth identity already linked", field="oauth_id")
            raise ConstraintViolation("email already exists", field="email")
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_oauth(self, provider: str, oauth_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE oauth_provider = %s AND oauth_id = %s",
                (provider, oauth_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_two_factor(
        self, user_id: str, secret: Optional[str], enabled: bool
    ) -> bool:
        if bool(secret) != enabled:
            raise ValueError("two-factor secret must be set exactly when enabled")
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE users
                SET two_factor_secret = %s, two_factor_enabled = %s, updated_at = now()
                WHERE id = %s
                """,
                (secret, enabled, user_id),
            )
            return result.rowcount > 0

    def update_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE users SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            return result.rowcount > 0

    def mark_email_verified(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE users SET email_verified = TRUE, updated_at = now() WHERE id = %s",
                (user_id,),
            )
            return result.rowcount > 0

    def touch_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET last_login_at = %s WHERE id = %s",
                (when or utcnow(), user_id),
            )

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE users SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (role, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        # sessions, one-time tokens and activity go with it via ON DELETE CASCADE
        with self._connect() as conn:
            result = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # sessions
    def create_session(
        self,
        user_id: str,
        refresh_token_digest: str,
        expires_at: datetime,
        device: Optional[DeviceInfo] = None,
    ) -> Session:
        sess = Session.new(user_id, refresh_token_digest, expires_at, device)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (id, user_id, refresh_token_digest, device_name, device_type, ip_address, user_agent, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.refresh_token_digest,
                        sess.device_name,
                        sess.device_type,
                        sess.ip_address,
                        sess.user_agent,
                        sess.expires_at,
                        sess.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise MissingUser(user_id)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already registered", field="refresh_token")
        return sess

    def get_session_by_token(self, refresh_token_digest: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE refresh_token_digest = %s",
                (refresh_token_digest,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def delete_session(self, refresh_token_digest: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM sessions WHERE refresh_token_digest = %s",
                (refresh_token_digest,),
            )
            return result.rowcount > 0

    def delete_session_by_id(self, user_id: str, session_id: str) -> bool:
        try:
            with self._connect() as conn:
                result = conn.execute(
                    "DELETE FROM sessions WHERE id = %s AND user_id = %s",
                    (session_id, user_id),
                )
                return result.rowcount > 0
        except errors.InvalidTextRepresentation:
            # not a UUID, so it cannot name a session
            return False

    def delete_user_sessions(
        self, user_id: str, except_digest: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_digest:
                result = conn.execute(
                    "DELETE FROM sessions WHERE user_id = %s AND refresh_token_digest <> %s",
                    (user_id, except_digest),
                )
            else:
                result = conn.execute(
                    "DELETE FROM sessions WHERE user_id = %s", (user_id,)
                )
            return result.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM sessions WHERE expires_at <= %s", (now,))
            return result.rowcount

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    # one-time tokens
    def save_one_time_token(self, token: OneTimeToken) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO one_time_tokens (kind, token_digest, user_id, expires_at, used, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.kind,
                        token.token_digest,
                        token.user_id,
                        token.expires_at,
                        token.used,
                        token.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise MissingUser(token.user_id)

    def consume_one_time_token(
        self, kind: str, token_digest: str, now: datetime
    ) -> Optional[str]:
        # Single statement so two concurrent consumers cannot both succeed
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE one_time_tokens SET used = TRUE
                WHERE kind = %s AND token_digest = %s AND used = FALSE AND expires_at > %s
                RETURNING user_id
                """,
                (kind, token_digest, now),
            ).fetchone()
        return str(row["user_id"]) if row else None

    def purge_one_time_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM one_time_tokens WHERE used = TRUE OR expires_at <= %s", (now,)
            )
            return result.rowcount

    # activity
    def log_activity(self, entry: ActivityLog) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO activity_logs (id, user_id, action, description, ip_address, user_agent, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.action,
                    entry.description,
                    entry.ip_address,
                    entry.user_agent,
                    json.dumps(entry.metadata) if entry.metadata else None,
                    entry.created_at,
                ),
            )

    def list_activity(self, user_id: str, limit: int = 50) -> List[ActivityLog]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM activity_logs WHERE user_id = %s ORDER BY created_at DESC LIMIT %s",
                (user_id, limit),
            ).fetchall()
        return [
            ActivityLog(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                action=row["action"],
                description=row.get("description"),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                metadata=row.get("metadata"),
                created_at=row["created_at"],
            )
            for row in rows
        ]
