from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: Optional[str] = None
    oauth_provider: Optional[str] = None
    oauth_id: Optional[str] = None
    role: str = "user"
    email_verified: bool = False
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def is_oauth_only(self) -> bool:
        return self.password_hash is None and self.oauth_provider is not None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class DeviceInfo:
    """Client details captured when a session is opened."""

    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device_name: Optional[str] = None
    device_type: Optional[str] = None

    @classmethod
    def from_user_agent(
        cls, user_agent: Optional[str], ip_address: Optional[str] = None
    ) -> "DeviceInfo":
        ua = (user_agent or "").lower()
        if "mobile" in ua or "android" in ua or "iphone" in ua:
            device_type = "mobile"
        elif "ipad" in ua or "tablet" in ua:
            device_type = "tablet"
        elif ua:
            device_type = "desktop"
        else:
            device_type = None
        device_name = None
        for marker, label in (
            ("edg/", "Edge"),
            ("chrome/", "Chrome"),
            ("firefox/", "Firefox"),
            ("safari/", "Safari"),
        ):
            if marker in ua:
                device_name = label
                break
        return cls(
            user_agent=user_agent,
            ip_address=ip_address,
            device_name=device_name,
            device_type=device_type,
        )


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token_digest: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device_name: Optional[str] = None
    device_type: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token_digest: str,
        expires_at: datetime,
        device: Optional[DeviceInfo] = None,
        *,
        now: Optional[datetime] = None,
    ) -> "Session":
        device = device or DeviceInfo()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_digest=refresh_token_digest,
            created_at=now or utcnow(),
            expires_at=expires_at,
            user_agent=device.user_agent,
            ip_address=device.ip_address,
            device_name=device.device_name,
            device_type=device.device_type,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class OneTimeToken:
    kind: str
    token_digest: str
    user_id: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class ActivityLog:
    id: str
    user_id: str
    action: str
    description: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
