from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar, Union

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Closed set of failure kinds returned by core auth operations.

    Values double as the stable error codes of the HTTP envelope.
    """

    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    VALIDATION_FAILED = "validation_error"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T = None  # type: ignore[assignment]

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Failure]


def unauthorized(message: str, **details: Any) -> Failure:
    return Failure(ErrorKind.UNAUTHORIZED, message, details)


def forbidden(message: str, **details: Any) -> Failure:
    return Failure(ErrorKind.FORBIDDEN, message, details)


def not_found(message: str, **details: Any) -> Failure:
    return Failure(ErrorKind.NOT_FOUND, message, details)


def validation_failed(message: str, **details: Any) -> Failure:
    return Failure(ErrorKind.VALIDATION_FAILED, message, details)


def conflict(message: str, **details: Any) -> Failure:
    return Failure(ErrorKind.CONFLICT, message, details)


def rate_limited(message: str, **details: Any) -> Failure:
    return Failure(ErrorKind.RATE_LIMITED, message, details)


class ServiceError(Exception):
    """Base class for handler-layer exceptions mapped to HTTP responses.

    Each subclass pairs an HTTP ``status_code`` with the stable ``error_code``
    rendered in the error envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Invalid state transition or duplicate resource (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


_KIND_TO_ERROR: Dict[ErrorKind, type[ServiceError]] = {
    ErrorKind.UNAUTHORIZED: AuthenticationError,
    ErrorKind.FORBIDDEN: ForbiddenError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.VALIDATION_FAILED: ValidationError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.RATE_LIMITED: RateLimitedError,
}


def error_for_failure(failure: Failure) -> ServiceError:
    """Translate a core failure into the exception the HTTP layer renders."""
    error_cls = _KIND_TO_ERROR[failure.kind]
    return error_cls(failure.message, detail=dict(failure.details))


def unwrap(result: Result[T]) -> T:
    """Return the success value or raise the mapped ``ServiceError``."""
    if isinstance(result, Failure):
        raise error_for_failure(result)
    return result.value


__all__ = [
    "ErrorKind",
    "Ok",
    "Failure",
    "Result",
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_failed",
    "conflict",
    "rate_limited",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "error_for_failure",
    "unwrap",
]
