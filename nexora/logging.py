from __future__ import annotations

import logging
import os
import re
import uuid
from typing import Any, Dict, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, get_contextvars

# Whole value hidden: bearer material and one-time codes
_SECRET_KEY_PARTS = frozenset(
    {"password", "secret", "token", "authorization", "cookie", "code", "otp"}
)
# Local part masked, domain kept for debugging delivery
_EMAIL_KEY_PARTS = frozenset({"email", "to", "recipient"})

_REDACTED = "[redacted]"
_TOKEN_PARAM = re.compile(r"(?i)([?&](?:token|code|challenge)=)[^&\s\"'<>]+")
_JWT = re.compile(r"\beyJ[\w-]+\.[\w-]+\.[\w-]*")
_BEARER = re.compile(r"(?i)\bbearer\s+[\w.~+/=-]+")


def bind_request_id(request_id: Optional[str] = None) -> str:
    """Start a fresh log context for one request, tagged with its id."""
    rid = request_id or str(uuid.uuid4())
    clear_contextvars()
    bind_contextvars(request_id=rid)
    return rid


def current_request_id() -> Optional[str]:
    return get_contextvars().get("request_id")


def scrub_text(value: str) -> str:
    """Blank out tokens embedded in free text such as links or headers."""
    value = _TOKEN_PARAM.sub(lambda m: m.group(1) + _REDACTED, value)
    value = _JWT.sub(_REDACTED, value)
    return _BEARER.sub("Bearer " + _REDACTED, value)


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return _REDACTED
    return f"{local[:2]}***@{domain}"


def _key_parts(key: str) -> set[str]:
    return set(key.lower().replace("-", "_").split("_"))


def _scrub_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        parts = _key_parts(key)
        if parts & _SECRET_KEY_PARTS:
            event_dict[key] = _REDACTED
        elif parts & _EMAIL_KEY_PARTS:
            event_dict[key] = mask_email(value) if "***@" not in value else value
        else:
            event_dict[key] = scrub_text(value)
    return event_dict


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Route every ``get_logger`` logger through the credential scrubber."""
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _scrub_credentials,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"},
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
