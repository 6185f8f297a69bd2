from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign-key rule of the credential store was broken."""

    def __init__(
        self,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
        *,
        field: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = dict(detail or {})
        if field and "field" not in self.detail:
            self.detail["field"] = field


class MissingUser(ConstraintViolation):
    """A row referenced a user id that does not exist."""

    def __init__(self, user_id: str):
        super().__init__("user does not exist", {"user_id": user_id})
        self.user_id = user_id


__all__ = ["ConstraintViolation", "MissingUser"]
