from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, MutableMapping, Optional

import structlog

EventDict = MutableMapping[str, Any]

_TRUTHY = {"1", "true", "yes", "on"}

# Substrings of event keys whose string values are masked before rendering
SENSITIVE_KEY_PARTS = ("token", "secret", "authorization", "email", "password")

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id for the current context, generating one if absent."""
    cid = correlation_id or str(uuid.uuid4())
    _request_id.set(cid)
    return cid


def mask_value(value: str) -> str:
    if len(value) <= 4:
        return value
    return f"{value[:2]}***{value[-2:]}"


def bind_correlation_id(_: Any, __: str, event_dict: EventDict) -> EventDict:
    cid = _request_id.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def mask_sensitive_fields(_: Any, __: str, event_dict: EventDict) -> EventDict:
    """Mask refresh tokens, secrets and emails so raw values never reach the log sink."""
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        if any(part in key.lower() for part in SENSITIVE_KEY_PARTS):
            event_dict[key] = mask_value(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def configure_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Set up structlog for the process.

    Defaults come from ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_DEV_MODE``; dev
    mode switches to the colored console renderer.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True) and not _env_flag("LOG_DEV_MODE", False)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        bind_correlation_id,
        mask_sensitive_fields,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    min_level = logging.getLevelName(level_name)
    if not isinstance(min_level, int):
        min_level = logging.INFO

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(min_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
