from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Iterable, Optional

import structlog

# X-Request-ID of the request being served; bound by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# substrings of event keys whose string values are masked
SENSITIVE_KEY_PARTS = ("password", "secret", "token", "authorization", "email", "code")
_EXEMPT_KEYS = frozenset({"event", "error_code", "status_code"})
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _mask(value: str) -> str:
    return f"{value[:2]}***{value[-2:]}"


def _inject_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask_sensitive_fields(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if key in _EXEMPT_KEYS or not isinstance(value, str) or len(value) <= 4:
            continue
        lowered = key.lower()
        if any(part in lowered for part in SENSITIVE_KEY_PARTS):
            event_dict[key] = _mask(value)
    return event_dict


def _renderers(json_output: bool, development_mode: bool) -> Iterable[Any]:
    if development_mode or not json_output:
        return [structlog.dev.ConsoleRenderer(colors=development_mode)]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline used by every agora module.

    Args:
        log_level: minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: render one JSON object per line when True
        development_mode: force the colored console renderer
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _inject_correlation_id,
            _mask_sensitive_fields,
            structlog.processors.StackInfoRenderer(),
            *_renderers(json_output, development_mode),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def redact_email(email: str) -> str:
    """Keep the first two characters of the mailbox and the full domain."""
    local, sep, domain = email.partition("@")
    if not sep:
        return "redacted"
    return f"{local[:2]}***@{domain}"
