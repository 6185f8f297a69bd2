from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, List, Optional

from nexora.logging import get_logger
from nexora.service.activity import ActivityAction, ActivityLogger
from nexora.service.credentials import (
    CredentialService,
    hash_password,
    validate_password_strength,
    verify_password,
)
from nexora.service.email import EmailService
from nexora.service.errors import (
    Failure,
    Ok,
    Result,
    conflict,
    forbidden,
    not_found,
    unauthorized,
    validation_failed,
)
from nexora.service.sessions import SessionRegistry
from nexora.service.tokens import TokenService
from nexora.service.two_factor import Enrollment, TwoFactorGate
from nexora.storage.errors import ConstraintViolation
from nexora.storage.models import ActivityLog, DeviceInfo, Session, User, utcnow

if TYPE_CHECKING:
    from nexora.service.credentials import CredentialStore

logger = get_logger(__name__)

# Mocked provider exchange: the code itself stands in for the provider identity
OAUTH_PROVIDERS = {
    "github": "GitHub User",
    "google": "Google User",
}

INVALID_LOGIN = "Invalid email or password"
INVALID_REFRESH = "Invalid refresh token"
INVALID_CHALLENGE = "Invalid or expired two-factor challenge"
ACCOUNT_DELETE_CONFIRMATION = "DELETE"


@dataclass(frozen=True)
class AuthTokens:
    access_token: str
    refresh_token: str
    session: Session


@dataclass(frozen=True)
class LoginOutcome:
    """Result of a sign-in step.

    Either ``tokens`` is set (a session was opened) or ``challenge_token``
    is set and the caller must complete the 2FA step.
    """

    user: User
    tokens: Optional[AuthTokens] = None
    challenge_token: Optional[str] = None

    @property
    def requires_two_factor(self) -> bool:
        return self.challenge_token is not None


@dataclass(frozen=True)
class OAuthProfile:
    provider: str
    provider_user_id: str
    email: str
    name: str


class AuthService:
    """Orchestrates the credential, session, token and 2FA components.

    Every public operation returns ``Ok`` or ``Failure``; storage constraint
    errors are translated here and never escape.
    """

    def __init__(
        self,
        store: "CredentialStore",
        tokens: TokenService,
        sessions: SessionRegistry,
        two_factor: TwoFactorGate,
        credentials: CredentialService,
        *,
        activity: Optional[ActivityLogger] = None,
        email: Optional[EmailService] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.sessions = sessions
        self.two_factor = two_factor
        self.credentials = credentials
        self.activity = activity or ActivityLogger(store)
        self.email = email
        self._clock = clock

    def _open_session(self, user: User, device: Optional[DeviceInfo]) -> AuthTokens:
        refresh_token = self.tokens.issue_refresh_token(user.id)
        sess = self.sessions.create(
            user.id, refresh_token, self.tokens.refresh_ttl, device=device
        )
        access_token = self.tokens.issue_access_token(user.id)
        self.store.touch_last_login(user.id, self._clock())
        return AuthTokens(access_token=access_token, refresh_token=refresh_token, session=sess)

    def _sign_in(
        self, user: User, device: Optional[DeviceInfo], action: ActivityAction
    ) -> LoginOutcome:
        if user.two_factor_enabled:
            logger.info("login_two_factor_required", user_id=user.id)
            return LoginOutcome(user=user, challenge_token=self.tokens.issue_challenge_token(user.id))
        tokens = self._open_session(user, device)
        self.activity.record(user.id, action, "User signed in", device=device)
        logger.info("login_succeeded", user_id=user.id, action=action.value)
        return LoginOutcome(user=self.store.get_user(user.id) or user, tokens=tokens)

    async def _send_verification(self, user: User) -> None:
        issued = await self.credentials.request_email_verification(user.id)
        if not issued.ok:
            return
        if self.email:
            self.email.send_email_verification(user.email, issued.value)

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        *,
        device: Optional[DeviceInfo] = None,
    ) -> Result[LoginOutcome]:
        email = (email or "").strip().lower()
        name = (name or "").strip()
        if "@" not in email:
            return validation_failed("A valid email address is required", field="email")
        if not name:
            return validation_failed("Name is required", field="name")
        weakness = validate_password_strength(password or "")
        if weakness:
            return validation_failed(weakness, field="password")
        if self.store.get_user_by_email(email):
            return conflict("Email already registered", field="email")
        try:
            user = self.store.create_user(email, name, password_hash=hash_password(password))
        except ConstraintViolation as exc:
            return conflict("Email already registered", **exc.detail)
        tokens = self._open_session(user, device)
        self.activity.record(user.id, ActivityAction.REGISTER, "Account created", device=device)
        await self._send_verification(user)
        logger.info("user_registered", user_id=user.id)
        return Ok(LoginOutcome(user=user, tokens=tokens))

    async def login(
        self, email: str, password: str, *, device: Optional[DeviceInfo] = None
    ) -> Result[LoginOutcome]:
        user = self.store.get_user_by_email((email or "").strip())
        if not user or not verify_password(user.password_hash, password):
            logger.warning("login_failed")
            return unauthorized(INVALID_LOGIN)
        return Ok(self._sign_in(user, device, ActivityAction.LOGIN))

    async def complete_two_factor_login(
        self, challenge_token: str, code: str, *, device: Optional[DeviceInfo] = None
    ) -> Result[LoginOutcome]:
        claim = self.tokens.verify_challenge_token(challenge_token)
        if claim is None:
            return unauthorized(INVALID_CHALLENGE)
        user = self.store.get_user(claim.user_id)
        if not user:
            return unauthorized(INVALID_CHALLENGE)
        verified = self.two_factor.verify_login_code(user.id, code)
        if isinstance(verified, Failure):
            return verified
        self.activity.record(
            user.id, ActivityAction.TWO_FACTOR_VERIFY, "Two-factor code accepted", device=device
        )
        tokens = self._open_session(user, device)
        self.activity.record(user.id, ActivityAction.LOGIN, "User signed in", device=device)
        return Ok(LoginOutcome(user=user, tokens=tokens))

    async def refresh(self, refresh_token: str) -> Result[str]:
        """Mint a new access token for a refresh token that is both validly
        signed and still backed by a live session. The refresh token itself
        is returned unchanged to the client."""

        claim = self.tokens.verify_refresh_token(refresh_token)
        if claim is None:
            return unauthorized(INVALID_REFRESH)
        sess = self.sessions.find_by_token(refresh_token)
        if sess is None or sess.user_id != claim.user_id:
            logger.warning("refresh_session_missing", user_id=claim.user_id)
            return unauthorized(INVALID_REFRESH)
        user = self.store.get_user(sess.user_id)
        if not user:
            return unauthorized(INVALID_REFRESH)
        return Ok(self.tokens.issue_access_token(user.id))

    async def logout(
        self, refresh_token: Optional[str], *, device: Optional[DeviceInfo] = None
    ) -> Result[None]:
        if not refresh_token:
            return Ok(None)
        sess = self.sessions.find_by_token(refresh_token)
        self.sessions.delete(refresh_token)
        if sess:
            self.activity.record(sess.user_id, ActivityAction.LOGOUT, "User signed out", device=device)
        return Ok(None)

    async def authenticate(self, access_token: Optional[str]) -> Result[User]:
        if not access_token:
            return unauthorized("Authentication required")
        claim = self.tokens.verify_access_token(access_token)
        if claim is None:
            return unauthorized("Invalid or expired token")
        user = self.store.get_user(claim.user_id)
        if not user:
            return unauthorized("Invalid or expired token")
        return Ok(user)

    def _exchange_code(self, provider: str, code: str) -> OAuthProfile:
        provider_user_id = f"{provider}-{code[:20]}"
        return OAuthProfile(
            provider=provider,
            provider_user_id=provider_user_id,
            email=f"user-{provider_user_id}@nexora.ai".lower(),
            name=OAUTH_PROVIDERS[provider],
        )

    async def oauth_callback(
        self, provider: str, code: str, *, device: Optional[DeviceInfo] = None
    ) -> Result[LoginOutcome]:
        provider = (provider or "").lower()
        if provider not in OAUTH_PROVIDERS:
            return not_found("Unknown OAuth provider", provider=provider)
        if not code:
            return validation_failed("No authorization code", field="code")
        profile = self._exchange_code(provider, code)
        user = self.store.get_user_by_oauth(profile.provider, profile.provider_user_id)
        if user is None:
            if self.store.get_user_by_email(profile.email):
                logger.warning("oauth_email_collision", provider=provider)
                return conflict(
                    "An account with this email already exists; sign in with your password",
                    field="email",
                )
            try:
                user = self.store.create_user(
                    profile.email,
                    profile.name,
                    oauth_provider=profile.provider,
                    oauth_id=profile.provider_user_id,
                    email_verified=True,
                )
            except ConstraintViolation as exc:
                return conflict("OAuth account could not be created", **exc.detail)
            logger.info("oauth_user_created", user_id=user.id, provider=provider)
        return Ok(self._sign_in(user, device, ActivityAction.OAUTH_LOGIN))

    async def cleanup_sessions(self, actor: User) -> Result[int]:
        if not actor.is_admin:
            return forbidden("Admin access required")
        removed = self.sessions.sweep_expired()
        self.credentials.purge_spent_tokens()
        logger.info("admin_session_cleanup", actor_id=actor.id, removed=removed)
        return Ok(removed)

    def list_sessions(self, user: User) -> List[Session]:
        return self.sessions.list_active(user.id)

    async def revoke_other_sessions(
        self, user: User, current_refresh_token: Optional[str], *, device: Optional[DeviceInfo] = None
    ) -> Result[int]:
        removed = self.sessions.delete_all(user.id, except_token=current_refresh_token)
        self.activity.record(
            user.id,
            ActivityAction.SESSION_DELETE_ALL,
            "Signed out of other sessions",
            device=device,
            metadata={"count": removed},
        )
        return Ok(removed)

    async def revoke_session(
        self, user: User, session_id: str, *, device: Optional[DeviceInfo] = None
    ) -> Result[None]:
        """Sign out one device. Sessions of other users look like missing ones."""
        if not self.sessions.delete_by_id(user.id, session_id):
            return not_found("Session not found")
        self.activity.record(
            user.id,
            ActivityAction.SESSION_DELETE,
            "Signed out of a session",
            device=device,
            metadata={"session_id": session_id},
        )
        return Ok(None)

    async def delete_account(
        self,
        user: User,
        confirmation: str,
        password: Optional[str] = None,
        *,
        device: Optional[DeviceInfo] = None,
    ) -> Result[None]:
        """Permanently remove ``user`` and every session it holds.

        The caller must type ``DELETE``. Password accounts also re-enter the
        password; OAuth-only accounts have none to give.
        """
        if confirmation != ACCOUNT_DELETE_CONFIRMATION:
            return validation_failed(
                f"Please type {ACCOUNT_DELETE_CONFIRMATION} to confirm account deletion",
                field="confirmation",
            )
        current = self.store.get_user(user.id)
        if not current:
            return not_found("User not found")
        if current.password_hash:
            if not password:
                return validation_failed(
                    "Password is required to delete account", field="password"
                )
            if not verify_password(current.password_hash, password):
                logger.warning("account_delete_rejected", user_id=user.id)
                return unauthorized("Invalid password")
        self.activity.record(
            user.id, ActivityAction.ACCOUNT_DELETE, "User deleted their account", device=device
        )
        if not self.store.delete_user(user.id):
            return not_found("User not found")
        logger.info("account_deleted", user_id=user.id)
        return Ok(None)

    async def begin_two_factor(self, user: User) -> Result[Enrollment]:
        return self.two_factor.begin_enrollment(user.id)

    async def enable_two_factor(
        self, user: User, secret: str, code: str, *, device: Optional[DeviceInfo] = None
    ) -> Result[None]:
        confirmed = self.two_factor.confirm_enrollment(user.id, secret, code)
        if confirmed.ok:
            self.activity.record(
                user.id, ActivityAction.TWO_FACTOR_ENABLE, "Two-factor authentication enabled", device=device
            )
            if self.email:
                self.email.send_two_factor_enabled(user.email)
        return confirmed

    async def disable_two_factor(
        self, user: User, password: str, *, device: Optional[DeviceInfo] = None
    ) -> Result[None]:
        disabled = self.two_factor.disable(user.id, password)
        if disabled.ok:
            self.activity.record(
                user.id, ActivityAction.TWO_FACTOR_DISABLE, "Two-factor authentication disabled", device=device
            )
        return disabled

    async def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        *,
        device: Optional[DeviceInfo] = None,
    ) -> Result[None]:
        changed = self.credentials.change_password(user.id, current_password, new_password)
        if changed.ok:
            self.activity.record(
                user.id, ActivityAction.PASSWORD_CHANGE, "User changed their password", device=device
            )
        return changed

    async def forgot_password(self, email: str, *, device: Optional[DeviceInfo] = None) -> None:
        token = await self.credentials.request_password_reset((email or "").strip())
        if token is None:
            return
        user = self.store.get_user_by_email(email.strip())
        if not user:
            return
        self.activity.record(
            user.id, ActivityAction.PASSWORD_RESET_REQUEST, "Password reset requested", device=device
        )
        if self.email:
            self.email.send_password_reset(user.email, token)

    async def reset_password(
        self, token: str, new_password: str, *, device: Optional[DeviceInfo] = None
    ) -> Result[None]:
        reset = await self.credentials.reset_password(token, new_password)
        if isinstance(reset, Failure):
            return reset
        self.activity.record(
            reset.value, ActivityAction.PASSWORD_RESET_COMPLETE, "Password reset completed", device=device
        )
        return Ok(None)

    async def send_verification(self, user: User) -> Result[None]:
        issued = await self.credentials.request_email_verification(user.id)
        if isinstance(issued, Failure):
            return issued
        if self.email:
            self.email.send_email_verification(user.email, issued.value)
        return Ok(None)

    async def verify_email(
        self, token: str, *, device: Optional[DeviceInfo] = None
    ) -> Result[LoginOutcome]:
        verified = await self.credentials.verify_email(token)
        if isinstance(verified, Failure):
            return verified
        user = verified.value
        self.activity.record(user.id, ActivityAction.EMAIL_VERIFY, "Email verified", device=device)
        return Ok(LoginOutcome(user=user, tokens=self._open_session(user, device)))

    def recent_activity(self, user: User, limit: int = 50) -> List[ActivityLog]:
        return self.activity.recent(user.id, limit=limit)
