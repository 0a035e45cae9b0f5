"""structlog setup shared by every hivelog module.

Configured once at import from ``LOG_LEVEL``, ``LOG_JSON`` and
``LOG_DEV_MODE``. Each request gets a correlation id (from ``X-Request-ID``
or generated) that is stamped on every event logged while it runs.
"""

from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Field names whose values never reach a log sink as-is
_SECRET_MARKERS = ("password", "secret", "token", "authorization", "cookie")
_EMAIL_MARKER = "email"
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def token_fingerprint(token: str) -> str:
    """First 12 hex chars of the token's sha256; safe to log."""
    return hashlib.sha256(token.encode()).hexdigest()[:12]


def _mask_email(value: str) -> str:
    local, _, domain = value.partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


def _stamp_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _scrub_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Replace secrets with fingerprints and mask email addresses."""
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if lowered == "fingerprint":
            continue
        if any(marker in lowered for marker in _SECRET_MARKERS):
            event_dict[key] = f"sha256:{token_fingerprint(value)}"
        elif _EMAIL_MARKER in lowered:
            event_dict[key] = _mask_email(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    dev_mode: bool = False,
) -> None:
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stamp_correlation_id,
        _scrub_sensitive,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    dev_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
