from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import re
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional
from urllib.parse import quote

from nexora.logging import get_logger
from nexora.service.credentials import verify_password
from nexora.service.errors import (
    Ok,
    Result,
    conflict,
    forbidden,
    not_found,
    unauthorized,
    validation_failed,
)
from nexora.storage.models import utcnow

if TYPE_CHECKING:
    from nexora.service.credentials import CredentialStore

logger = get_logger(__name__)

_CODE_PATTERN = re.compile(r"^[0-9]{6}$")


def generate_secret() -> str:
    """Fresh 160-bit TOTP secret as 32 base32 characters."""
    return base64.b32encode(os.urandom(20)).decode("ascii")


def _decode_secret(secret: str) -> Optional[bytes]:
    cleaned = secret.replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        return None
    return key or None


def totp_code(secret: str, timestamp: float, *, step: int = 30, digits: int = 6) -> str:
    """RFC 6238 code (HMAC-SHA1) for ``secret`` at ``timestamp``."""
    key = _decode_secret(secret)
    if key is None:
        raise ValueError("invalid base32 secret")
    counter = int(timestamp // step).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


@dataclass(frozen=True)
class Enrollment:
    """Unconfirmed secret handed back to the client; the server keeps no copy."""

    secret: str
    display_uri: str


class TwoFactorGate:
    """TOTP enrollment, confirmation, login verification and deactivation.

    Only ``disabled`` and ``enabled`` are stored. Between ``begin_enrollment``
    and ``confirm_enrollment`` the secret lives with the caller.
    """

    def __init__(
        self,
        store: "CredentialStore",
        *,
        issuer: str = "NEXORA",
        window: int = 2,
        step: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.window = window
        self.step = step
        self._clock = clock

    def _provisioning_uri(self, account: str, secret: str) -> str:
        label = quote(f"{self.issuer}:{account}")
        return (
            f"otpauth://totp/{label}?secret={secret}"
            f"&issuer={quote(self.issuer)}&algorithm=SHA1&digits=6&period={self.step}"
        )

    def _code_matches(self, secret: str, code: str) -> bool:
        now = self._clock().timestamp()
        matched = False
        for offset in range(-self.window, self.window + 1):
            expected = totp_code(secret, now + offset * self.step, step=self.step)
            # No early exit so timing does not reveal the matching step
            if hmac.compare_digest(expected, code):
                matched = True
        return matched

    def _check_inputs(self, secret: str, code: str) -> Result[None]:
        if not isinstance(code, str) or not _CODE_PATTERN.match(code.strip()):
            return validation_failed("Code must be 6 digits", field="code")
        if not secret or _decode_secret(secret) is None:
            return validation_failed("Invalid two-factor secret", field="secret")
        return Ok(None)

    def begin_enrollment(self, user_id: str) -> Result[Enrollment]:
        user = self.store.get_user(user_id)
        if not user:
            return not_found("User not found")
        if user.two_factor_enabled:
            return conflict("Two-factor authentication is already enabled")
        secret = generate_secret()
        logger.info("two_factor_enrollment_started", user_id=user_id)
        return Ok(Enrollment(secret=secret, display_uri=self._provisioning_uri(user.email, secret)))

    def confirm_enrollment(self, user_id: str, secret: str, code: str) -> Result[None]:
        user = self.store.get_user(user_id)
        if not user:
            return not_found("User not found")
        if user.two_factor_enabled:
            return conflict("Two-factor authentication is already enabled")
        checked = self._check_inputs(secret, code)
        if not checked.ok:
            return checked
        if not self._code_matches(secret, code.strip()):
            logger.warning("two_factor_enrollment_code_rejected", user_id=user_id)
            return unauthorized("Invalid verification code")
        self.store.update_user_two_factor(user_id, secret, True)
        logger.info("two_factor_enabled", user_id=user_id)
        return Ok(None)

    def disable(self, user_id: str, password: str) -> Result[None]:
        user = self.store.get_user(user_id)
        if not user:
            return not_found("User not found")
        if not user.password_hash:
            return forbidden("Two-factor authentication is managed by your sign-in provider")
        if not user.two_factor_enabled:
            return conflict("Two-factor authentication is not enabled")
        if not verify_password(user.password_hash, password):
            logger.warning("two_factor_disable_rejected", user_id=user_id)
            return unauthorized("Invalid password")
        self.store.update_user_two_factor(user_id, None, False)
        logger.info("two_factor_disabled", user_id=user_id)
        return Ok(None)

    def verify_login_code(self, user_id: str, code: str) -> Result[None]:
        user = self.store.get_user(user_id)
        if not user:
            return not_found("User not found")
        if not user.two_factor_enabled or not user.two_factor_secret:
            return conflict("Two-factor authentication is not enabled")
        checked = self._check_inputs(user.two_factor_secret, code)
        if not checked.ok:
            return checked
        if not self._code_matches(user.two_factor_secret, code.strip()):
            logger.warning("two_factor_login_code_rejected", user_id=user_id)
            return unauthorized("Invalid verification code")
        return Ok(None)
