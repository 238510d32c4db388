from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request id, echoed in X-Request-ID and in every envelope
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Keys whose values are credentials and never logged, even partially
_SECRET_KEYS = ("password", "secret", "token", "authorization", "hash")
_ADDRESS_KEYS = ("email", "to")
_TRUE_VALUES = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def redact_address(address: str) -> str:
    """Keep the domain and the first two local characters of an address."""
    if "@" not in address:
        return "redacted"
    local, domain = address.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or key == "event":
            continue
        lower_key = key.lower()
        if any(part in lower_key for part in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif lower_key in _ADDRESS_KEYS and "***" not in value:
            event_dict[key] = redact_address(value)
    return event_dict


def configure_logging(level: Optional[str] = None) -> None:
    """Configure structlog for the process.

    ``LOG_JSON`` picks JSON lines (default) over console output and
    ``LOG_DEV_MODE`` forces the coloured console renderer. ``level`` falls
    back to ``LOG_LEVEL``.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    json_output = os.getenv("LOG_JSON", "true").lower() in _TRUE_VALUES
    dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUE_VALUES

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
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
        cache_logger_on_first_use=False,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Backend detail that must not reach API clients
_SENSITIVE_PATTERNS = [
    re.compile(p)
    for p in (
        r"(?i)\b(select|insert|update|delete)\b.{0,80}",
        r"(?i)detail:\s*key\s*\(.*?\)=\(.*?\)",
        r"(?i)(postgres(ql)?|psycopg)\S*://\S+",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+",
        r"(?i)(password|secret|token)\s*[:=]\s*\S+",
    )
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL, key values, DSNs, paths and credentials from ``error``."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result if len(result) <= 500 else result[:497] + "..."
