from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional

import structlog

# Request id of the call being served; stamped on every log line
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Field names whose values must never be written verbatim: raw bearer tokens,
# device fingerprints and their salts, signing secrets.
_REDACTED_KEYS = (
    "token",
    "secret",
    "fingerprint",
    "salt",
    "anchor",
    "authorization",
    "password",
    "api_key",
)

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's request id, or mint one, for the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _is_sensitive(key: str) -> bool:
    lower_key = key.lower()
    return any(marker in lower_key for marker in _REDACTED_KEYS)


def redact_value(value: Any) -> Any:
    """Mask a sensitive string, keeping only the first and last two chars."""
    if not isinstance(value, str):
        return value
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _redact_mapping(values: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        key: redact_value(value) if _is_sensitive(str(key)) else value
        for key, value in values.items()
    }


def _stamp_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and device binding material, one level deep.

    Nested mappings such as logged request headers are redacted too.
    """
    for key, value in list(event_dict.items()):
        if _is_sensitive(key):
            event_dict[key] = redact_value(value)
        elif isinstance(value, Mapping):
            event_dict[key] = _redact_mapping(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in _TRUTHY


def configure_logging(
    log_level: Optional[str] = None,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Install the structlog processor chain.

    Unset arguments fall back to LOG_LEVEL, LOG_JSON and LOG_DEV_MODE.
    Production output is one JSON object per line; development mode renders
    colored console lines instead.
    """
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true")
    if development_mode is None:
        development_mode = _env_flag("LOG_DEV_MODE", "false")

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _stamp_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must not appear in a message returned to a client
_CLIENT_MESSAGE_SCRUBBERS = [
    re.compile(pattern)
    for pattern in (
        r"(?i)bearer\s+[A-Za-z0-9\-_\.]+",
        r"(?i)(password|secret|token|key|credential|fingerprint|salt)\s*[:=]\s*[^\s]+",
        r"(?i)redis://[^\s]+",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp)/[^\s]+",
        r"(?i)traceback\s*\(most recent call last\)",
    )
]

MAX_CLIENT_MESSAGE_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub a free-text error message before it leaves the service.

    Bearer tokens, credential assignments, store URLs, internal paths and
    stack trace markers are replaced, and the result is capped in length.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _CLIENT_MESSAGE_SCRUBBERS:
        result = pattern.sub(replacement, result)

    if len(result) > MAX_CLIENT_MESSAGE_LENGTH:
        result = result[: MAX_CLIENT_MESSAGE_LENGTH - 3] + "..."
    return result
