from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from nexora.logging import get_logger
from nexora.service.errors import (
    Ok,
    Result,
    conflict,
    forbidden,
    not_found,
    unauthorized,
    validation_failed,
)
from nexora.service.sessions import SessionRegistry, token_digest
from nexora.storage.models import (
    ActivityLog,
    DeviceInfo,
    OneTimeToken,
    Session,
    User,
    utcnow,
)
from nexora.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PASSWORD_RESET = "password_reset"
EMAIL_VERIFICATION = "email_verification"

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_pwd_hasher = PasswordHasher(type=Type.ID)


class CredentialStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_oauth(self, provider: str, oauth_id: str) -> Optional[User]: ...

    def update_user_two_factor(
        self, user_id: str, secret: Optional[str], enabled: bool
    ) -> bool: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> bool: ...

    def mark_email_verified(self, user_id: str) -> bool: ...

    def touch_last_login(self, user_id: str, when: Optional[datetime] = None) -> None: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_session(
        self,
        user_id: str,
        refresh_token_digest: str,
        expires_at: datetime,
        device: Optional[DeviceInfo] = None,
    ) -> Session: ...

    def get_session_by_token(self, refresh_token_digest: str) -> Optional[Session]: ...

    def delete_session(self, refresh_token_digest: str) -> bool: ...

    def delete_session_by_id(self, user_id: str, session_id: str) -> bool: ...

    def delete_user_sessions(
        self, user_id: str, except_digest: Optional[str] = None
    ) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    def save_one_time_token(self, token: OneTimeToken) -> None: ...

    def consume_one_time_token(
        self, kind: str, token_digest: str, now: datetime
    ) -> Optional[str]: ...

    def purge_one_time_tokens(self, now: datetime) -> int: ...

    def log_activity(self, entry: ActivityLog) -> None: ...

    def list_activity(self, user_id: str, limit: int = 50) -> List[ActivityLog]: ...


def hash_password(password: str) -> str:
    return _pwd_hasher.hash(password)


def verify_password(password_hash: Optional[str], password: str) -> bool:
    """Check ``password`` against an argon2 hash; never raises."""
    if not password_hash or not password:
        return False
    try:
        return _pwd_hasher.verify(password_hash, password)
    except VerifyMismatchError:
        return False
    except (InvalidHash, VerificationError):
        logger.warning("password_hash_invalid")
        return False


def validate_password_strength(password: str) -> Optional[str]:
    """Return a message describing why ``password`` is too weak, or None."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
    if len(password) > MAX_PASSWORD_LENGTH:
        return "Password is too long"
    if not (
        re.search(r"[A-Z]", password)
        and re.search(r"[a-z]", password)
        and re.search(r"[0-9]", password)
    ):
        return "Password must contain uppercase, lowercase, and numbers"
    return None


class CredentialService:
    """Password changes and the one-time-token flows built on them.

    Reset and verification tokens are handed to the user once and stored
    only as digests, in Redis with a TTL when a cache is configured and in
    the credential store otherwise.
    """

    def __init__(
        self,
        store: CredentialStore,
        sessions: SessionRegistry,
        *,
        cache: Optional[RedisCache] = None,
        reset_ttl: timedelta = timedelta(hours=1),
        verification_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.cache = cache
        self.reset_ttl = reset_ttl
        self.verification_ttl = verification_ttl
        self._clock = clock

    async def _stash(self, kind: str, user_id: str, ttl: timedelta) -> str:
        token = secrets.token_urlsafe(32)
        digest = token_digest(token)
        expires_at = self._clock() + ttl
        if self.cache:
            await self.cache.stash_token(kind, digest, user_id, expires_at)
        else:
            self.store.save_one_time_token(
                OneTimeToken(
                    kind=kind,
                    token_digest=digest,
                    user_id=user_id,
                    expires_at=expires_at,
                    created_at=self._clock(),
                )
            )
        return token

    async def _consume(self, kind: str, token: str) -> Optional[str]:
        if not token:
            return None
        digest = token_digest(token)
        if self.cache:
            return await self.cache.pop_token(kind, digest)
        return self.store.consume_one_time_token(kind, digest, self._clock())

    def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> Result[None]:
        user = self.store.get_user(user_id)
        if not user:
            return not_found("User not found")
        if not user.password_hash:
            return forbidden("Password login is not enabled for this account")
        if current_password == new_password:
            return validation_failed(
                "New password must be different from current password",
                field="new_password",
            )
        weakness = validate_password_strength(new_password)
        if weakness:
            return validation_failed(weakness, field="new_password")
        if not verify_password(user.password_hash, current_password):
            logger.warning("password_change_rejected", user_id=user_id)
            return unauthorized("Current password is incorrect")
        self.store.update_password_hash(user_id, hash_password(new_password))
        logger.info("password_changed", user_id=user_id)
        return Ok(None)

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a reset token for a password account, if one matches.

        Unknown emails and OAuth-only accounts yield ``None``; callers must
        answer identically either way.
        """

        user = self.store.get_user_by_email(email)
        if not user or not user.password_hash:
            logger.info("password_reset_skipped")
            return None
        token = await self._stash(PASSWORD_RESET, user.id, self.reset_ttl)
        logger.info("password_reset_requested", user_id=user.id)
        return token

    async def reset_password(self, token: str, new_password: str) -> Result[str]:
        weakness = validate_password_strength(new_password)
        if weakness:
            return validation_failed(weakness, field="password")
        user_id = await self._consume(PASSWORD_RESET, token)
        if not user_id:
            logger.warning("password_reset_invalid_token")
            return validation_failed("Invalid or expired reset token", field="token")
        if not self.store.update_password_hash(user_id, hash_password(new_password)):
            return not_found("User not found")
        self.sessions.delete_all(user_id)
        logger.info("password_reset_completed", user_id=user_id)
        return Ok(user_id)

    async def request_email_verification(self, user_id: str) -> Result[str]:
        user = self.store.get_user(user_id)
        if not user:
            return not_found("User not found")
        if user.email_verified:
            return conflict("Email already verified")
        token = await self._stash(EMAIL_VERIFICATION, user.id, self.verification_ttl)
        logger.info("email_verification_requested", user_id=user.id)
        return Ok(token)

    async def verify_email(self, token: str) -> Result[User]:
        user_id = await self._consume(EMAIL_VERIFICATION, token)
        if not user_id:
            logger.warning("email_verification_invalid_token")
            return validation_failed("Invalid or expired verification token", field="token")
        user = self.store.get_user(user_id)
        if not user:
            return not_found("User not found")
        if user.email_verified:
            return conflict("Email already verified")
        self.store.mark_email_verified(user_id)
        logger.info("email_verified", user_id=user_id)
        return Ok(self.store.get_user(user_id) or user)

    def purge_spent_tokens(self) -> int:
        """Drop used and expired store-held tokens; Redis expires its own."""
        removed = self.store.purge_one_time_tokens(self._clock())
        if removed:
            logger.info("one_time_tokens_purged", count=removed)
        return removed
