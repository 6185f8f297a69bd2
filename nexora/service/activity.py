from __future__ import annotations

import uuid
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from nexora.logging import get_logger
from nexora.storage.models import ActivityLog, DeviceInfo

if TYPE_CHECKING:
    from nexora.service.credentials import CredentialStore

logger = get_logger(__name__)


class ActivityAction(str, Enum):
    LOGIN = "user.login"
    LOGOUT = "user.logout"
    REGISTER = "user.register"
    PASSWORD_RESET_REQUEST = "user.password_reset.request"
    PASSWORD_RESET_COMPLETE = "user.password_reset.complete"
    PASSWORD_CHANGE = "user.password.change"
    EMAIL_VERIFY = "user.email.verify"
    TWO_FACTOR_ENABLE = "user.2fa.enable"
    TWO_FACTOR_DISABLE = "user.2fa.disable"
    TWO_FACTOR_VERIFY = "user.2fa.verify"
    SESSION_DELETE = "user.session.delete"
    SESSION_DELETE_ALL = "user.session.delete_all"
    ACCOUNT_DELETE = "user.account.delete"
    OAUTH_LOGIN = "user.oauth.login"


class ActivityLogger:
    """Best-effort audit trail of security events.

    A failed write is logged and dropped; it never fails the operation that
    triggered it.
    """

    def __init__(self, store: "CredentialStore") -> None:
        self.store = store

    def record(
        self,
        user_id: str,
        action: ActivityAction,
        description: Optional[str] = None,
        *,
        device: Optional[DeviceInfo] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = ActivityLog(
            id=str(uuid.uuid4()),
            user_id=user_id,
            action=ActivityAction(action).value,
            description=description,
            ip_address=device.ip_address if device else None,
            user_agent=device.user_agent if device else None,
            metadata=metadata,
        )
        try:
            self.store.log_activity(entry)
        except Exception as exc:
            logger.warning(
                "activity_log_failed",
                user_id=user_id,
                action=entry.action,
                error=str(exc),
            )

    def recent(self, user_id: str, limit: int = 50) -> List[ActivityLog]:
        return self.store.list_activity(user_id, limit=limit)
