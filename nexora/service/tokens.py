from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from nexora.logging import get_logger
from nexora.storage.models import utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
CHALLENGE = "challenge"


@dataclass(frozen=True)
class TokenClaim:
    """Decoded, verified contents of a signed token."""

    user_id: str
    token_type: str
    issued_at: datetime
    expires_at: datetime
    jti: str


class TokenService:
    """Issue and verify HS256 JWTs for access, refresh and 2FA challenge use.

    Verification returns ``None`` for every kind of rejection (malformed,
    forged, wrong audience, wrong type, expired) so callers cannot tell which
    check failed.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str = "nexora",
        audience: str = "nexora-clients",
        access_ttl: timedelta = timedelta(hours=24),
        refresh_ttl: timedelta = timedelta(days=30),
        challenge_ttl: timedelta = timedelta(minutes=5),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.challenge_ttl = challenge_ttl
        self._clock = clock

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode(self, token: str) -> Optional[dict[str, Any]]:
        # Valid tokens are pure base64url; anything else cannot be compared safely
        if not isinstance(token, str) or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
            alg = header.get("alg")
        except (ValueError, AttributeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if alg != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=alg)
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        return payload

    def _issue(self, user_id: str, token_type: str, ttl: timedelta) -> str:
        now = self._clock()
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": str(uuid.uuid4()),
            "token_type": token_type,
        }
        return self._encode(payload)

    def _verify(self, token: str, token_type: str) -> Optional[TokenClaim]:
        payload = self._decode(token)
        if payload is None:
            return None
        if payload.get("token_type") != token_type:
            return None
        user_id = payload.get("sub")
        if not isinstance(user_id, str) or not user_id:
            return None
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload.get("iat", 0))
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp():
            return None
        return TokenClaim(
            user_id=user_id,
            token_type=token_type,
            issued_at=datetime.fromtimestamp(iat_ts, tz=timezone.utc),
            expires_at=datetime.fromtimestamp(exp_ts, tz=timezone.utc),
            jti=str(payload.get("jti", "")),
        )

    def issue_access_token(self, user_id: str) -> str:
        return self._issue(user_id, ACCESS, self.access_ttl)

    def issue_refresh_token(self, user_id: str) -> str:
        return self._issue(user_id, REFRESH, self.refresh_ttl)

    def issue_challenge_token(self, user_id: str) -> str:
        """Short-lived proof that the password step of a 2FA login passed."""
        return self._issue(user_id, CHALLENGE, self.challenge_ttl)

    def verify_access_token(self, token: str) -> Optional[TokenClaim]:
        return self._verify(token, ACCESS)

    def verify_refresh_token(self, token: str) -> Optional[TokenClaim]:
        """Check signature and expiry only; the session registry decides liveness."""
        return self._verify(token, REFRESH)

    def verify_challenge_token(self, token: str) -> Optional[TokenClaim]:
        return self._verify(token, CHALLENGE)
