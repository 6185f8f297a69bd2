from __future__ import annotations

import hashlib
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, List, Optional

from nexora.logging import get_logger
from nexora.storage.models import DeviceInfo, Session, utcnow

if TYPE_CHECKING:
    from nexora.service.credentials import CredentialStore

logger = get_logger(__name__)


def token_digest(token: str) -> str:
    """Digest under which a bearer token is stored; the raw token never is."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionRegistry:
    """Persisted refresh sessions keyed by the digest of their refresh token."""

    def __init__(
        self, store: "CredentialStore", *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock

    def create(
        self,
        user_id: str,
        refresh_token: str,
        ttl: timedelta,
        *,
        device: Optional[DeviceInfo] = None,
    ) -> Session:
        expires_at = self._clock() + ttl
        sess = self.store.create_session(
            user_id, token_digest(refresh_token), expires_at, device
        )
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=sess.id,
            device_type=sess.device_type,
        )
        return sess

    def find_by_token(self, refresh_token: str) -> Optional[Session]:
        """Return the live session for ``refresh_token``.

        Rows past their expiry are treated as absent even before a sweep
        removes them.
        """

        if not refresh_token:
            return None
        sess = self.store.get_session_by_token(token_digest(refresh_token))
        if sess is None or sess.is_expired(self._clock()):
            return None
        return sess

    def delete(self, refresh_token: str) -> None:
        if not refresh_token:
            return
        if self.store.delete_session(token_digest(refresh_token)):
            logger.info("session_deleted")

    def delete_by_id(self, user_id: str, session_id: str) -> bool:
        """Revoke one session, but only if ``user_id`` owns it."""
        if not session_id:
            return False
        removed = self.store.delete_session_by_id(user_id, session_id)
        if removed:
            logger.info("session_deleted", user_id=user_id, session_id=session_id)
        return removed

    def delete_all(self, user_id: str, *, except_token: Optional[str] = None) -> int:
        except_digest = token_digest(except_token) if except_token else None
        removed = self.store.delete_user_sessions(user_id, except_digest=except_digest)
        if removed:
            logger.info("user_sessions_deleted", user_id=user_id, count=removed)
        return removed

    def list_active(self, user_id: str) -> List[Session]:
        now = self._clock()
        return [
            sess for sess in self.store.list_user_sessions(user_id) if not sess.is_expired(now)
        ]

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_sessions(self._clock())
        logger.info("expired_sessions_swept", count=removed)
        return removed
