from __future__ import annotations

import base64
import hashlib
import json
import os
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken

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


class MemoryStore:
    """In-process credential store, optionally persisted to a JSON file."""

    def __init__(
        self,
        fs_root: str = "/tmp/nexora",
        *,
        mfa_encryption_key: str | None = None,
        persist: bool = True,
        activity_retention: int = 500,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.one_time_tokens: Dict[Tuple[str, str], OneTimeToken] = {}
        self.activity: List[ActivityLog] = []
        # RLock so helpers can re-enter while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.persist = persist
        # Newest entries kept per user; older ones are dropped on write
        self.activity_retention = activity_retention
        self.fs_root = Path(fs_root)
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material:
            raise RuntimeError("MFA_SECRET_KEY or JWT_SECRET is required to store 2FA secrets")
        return Fernet(self._derive_cipher_key(material))

    def _encrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

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
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", field="email")
            if oauth_provider and any(
                u.oauth_provider == oauth_provider and u.oauth_id == oauth_id
                for u in self.users.values()
            ):
                raise ConstraintViolation("oauth identity already linked", field="oauth_id")
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                password_hash=password_hash,
                oauth_provider=oauth_provider,
                oauth_id=oauth_id,
                role=role,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user_by_oauth(self, provider: str, oauth_id: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.oauth_provider == provider and u.oauth_id == oauth_id
                ),
                None,
            )

    def _update_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for name, value in changes.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def update_user_two_factor(
        self, user_id: str, secret: Optional[str], enabled: bool
    ) -> bool:
        if bool(secret) != enabled:
            raise ValueError("two-factor secret must be set exactly when enabled")
        updated = self._update_user(
            user_id, two_factor_secret=secret, two_factor_enabled=enabled
        )
        return updated is not None

    def update_password_hash(self, user_id: str, password_hash: str) -> bool:
        return self._update_user(user_id, password_hash=password_hash) is not None

    def mark_email_verified(self, user_id: str) -> bool:
        return self._update_user(user_id, email_verified=True) is not None

    def touch_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        self._update_user(user_id, last_login_at=when or utcnow())

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        return self._update_user(user_id, role=role)

    def delete_user(self, user_id: str) -> bool:
        """Remove a user with everything that references it."""
        with self._data_lock:
            if self.users.pop(user_id, None) is None:
                return False
            self.sessions = {
                sid: sess for sid, sess in self.sessions.items() if sess.user_id != user_id
            }
            self.one_time_tokens = {
                key: record
                for key, record in self.one_time_tokens.items()
                if record.user_id != user_id
            }
            self.activity = [a for a in self.activity if a.user_id != user_id]
            self._persist_state()
            return True

    # sessions
    def create_session(
        self,
        user_id: str,
        refresh_token_digest: str,
        expires_at: datetime,
        device: Optional[DeviceInfo] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise MissingUser(user_id)
            if any(
                s.refresh_token_digest == refresh_token_digest
                for s in self.sessions.values()
            ):
                raise ConstraintViolation("refresh token already registered", field="refresh_token")
            sess = Session.new(user_id, refresh_token_digest, expires_at, device)
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session_by_token(self, refresh_token_digest: str) -> Optional[Session]:
        with self._data_lock:
            return next(
                (
                    s
                    for s in self.sessions.values()
                    if s.refresh_token_digest == refresh_token_digest
                ),
                None,
            )

    def delete_session(self, refresh_token_digest: str) -> bool:
        with self._data_lock:
            sess = self.get_session_by_token(refresh_token_digest)
            if not sess:
                return False
            self.sessions.pop(sess.id, None)
            self._persist_state()
            return True

    def delete_session_by_id(self, user_id: str, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.user_id != user_id:
                return False
            del self.sessions[session_id]
            self._persist_state()
            return True

    def delete_user_sessions(
        self, user_id: str, except_digest: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sess.refresh_token_digest != except_digest
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [sid for sid, sess in self.sessions.items() if sess.expires_at <= now]
            for sid in expired:
                self.sessions.pop(sid, None)
            if expired:
                self._persist_state()
            return len(expired)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            owned = [s for s in self.sessions.values() if s.user_id == user_id]
        return sorted(owned, key=lambda s: s.created_at, reverse=True)

    # one-time tokens (password reset, email verification)
    def _drop_stale_tokens(self, now: datetime) -> int:
        stale = [
            key
            for key, record in self.one_time_tokens.items()
            if record.used or record.expires_at <= now
        ]
        for key in stale:
            del self.one_time_tokens[key]
        return len(stale)

    def save_one_time_token(self, token: OneTimeToken) -> None:
        with self._data_lock:
            if token.user_id not in self.users:
                raise MissingUser(token.user_id)
            self._drop_stale_tokens(token.created_at)
            self.one_time_tokens[(token.kind, token.token_digest)] = token
            self._persist_state()

    def consume_one_time_token(
        self, kind: str, token_digest: str, now: datetime
    ) -> Optional[str]:
        with self._data_lock:
            record = self.one_time_tokens.pop((kind, token_digest), None)
            dropped = self._drop_stale_tokens(now)
            if not record or record.used or record.expires_at <= now:
                if dropped or record:
                    self._persist_state()
                return None
            self._persist_state()
            return record.user_id

    def purge_one_time_tokens(self, now: datetime) -> int:
        with self._data_lock:
            removed = self._drop_stale_tokens(now)
            if removed:
                self._persist_state()
            return removed

    # activity
    def log_activity(self, entry: ActivityLog) -> None:
        with self._data_lock:
            self.activity.append(entry)
            owned = [a for a in self.activity if a.user_id == entry.user_id]
            if len(owned) > self.activity_retention:
                owned.sort(key=lambda a: a.created_at)
                expired = {a.id for a in owned[: len(owned) - self.activity_retention]}
                self.activity = [a for a in self.activity if a.id not in expired]
            self._persist_state()

    def list_activity(self, user_id: str, limit: int = 50) -> List[ActivityLog]:
        with self._data_lock:
            owned = [a for a in self.activity if a.user_id == user_id]
        owned.sort(key=lambda a: a.created_at, reverse=True)
        return owned[:limit]

    # persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "one_time_tokens": [
                self._serialize_token(t) for t in self.one_time_tokens.values()
            ],
            "activity": [self._serialize_activity(a) for a in self.activity],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist credential store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.one_time_tokens = {}
        for raw in data.get("one_time_tokens", []):
            token = self._deserialize_token(raw)
            self.one_time_tokens[(token.kind, token.token_digest)] = token
        self.activity = [self._deserialize_activity(a) for a in data.get("activity", [])]
        return True

    @staticmethod
    def _dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "oauth_provider": user.oauth_provider,
            "oauth_id": user.oauth_id,
            "role": user.role,
            "email_verified": user.email_verified,
            "two_factor_enabled": user.two_factor_enabled,
            "two_factor_secret": self._encrypt_secret(user.two_factor_secret),
            "created_at": self._dt(user.created_at),
            "updated_at": self._dt(user.updated_at),
            "last_login_at": self._dt(user.last_login_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        secret = self._decrypt_secret(data.get("two_factor_secret"))
        return User(
            id=data["id"],
            email=data["email"],
            name=data.get("name", ""),
            password_hash=data.get("password_hash"),
            oauth_provider=data.get("oauth_provider"),
            oauth_id=data.get("oauth_id"),
            role=data.get("role", "user"),
            email_verified=data.get("email_verified", False),
            two_factor_enabled=bool(secret) and data.get("two_factor_enabled", False),
            two_factor_secret=secret if data.get("two_factor_enabled") else None,
            created_at=self._parse_dt(data["created_at"]),
            updated_at=self._parse_dt(data.get("updated_at")) or utcnow(),
            last_login_at=self._parse_dt(data.get("last_login_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "refresh_token_digest": session.refresh_token_digest,
            "created_at": self._dt(session.created_at),
            "expires_at": self._dt(session.expires_at),
            "user_agent": session.user_agent,
            "ip_address": session.ip_address,
            "device_name": session.device_name,
            "device_type": session.device_type,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_token_digest=data["refresh_token_digest"],
            created_at=self._parse_dt(data["created_at"]),
            expires_at=self._parse_dt(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
            device_name=data.get("device_name"),
            device_type=data.get("device_type"),
        )

    def _serialize_token(self, token: OneTimeToken) -> dict:
        return {
            "kind": token.kind,
            "token_digest": token.token_digest,
            "user_id": token.user_id,
            "expires_at": self._dt(token.expires_at),
            "used": token.used,
            "created_at": self._dt(token.created_at),
        }

    def _deserialize_token(self, data: dict) -> OneTimeToken:
        return OneTimeToken(
            kind=data["kind"],
            token_digest=data["token_digest"],
            user_id=data["user_id"],
            expires_at=self._parse_dt(data["expires_at"]),
            used=data.get("used", False),
            created_at=self._parse_dt(data.get("created_at")) or utcnow(),
        )

    def _serialize_activity(self, entry: ActivityLog) -> dict:
        return {
            "id": entry.id,
            "user_id": entry.user_id,
            "action": entry.action,
            "description": entry.description,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "metadata": entry.metadata,
            "created_at": self._dt(entry.created_at),
        }

    def _deserialize_activity(self, data: dict) -> ActivityLog:
        return ActivityLog(
            id=data["id"],
            user_id=data["user_id"],
            action=data["action"],
            description=data.get("description"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            metadata=data.get("metadata"),
            created_at=self._parse_dt(data["created_at"]),
        )
