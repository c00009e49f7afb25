from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("idgate_request_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}

# Values under these keys are replaced outright
_SECRET_KEYS = ("password", "secret", "token", "authorization", "signature")
# Identifiers that merely contain a secret-looking word
_SAFE_KEYS = {"email_hash", "token_id", "token_count", "revoked_tokens"}


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request id for the current context, minting one if absent."""
    value = correlation_id or str(uuid.uuid4())
    _request_id.set(value)
    return value


def email_digest(email: Optional[str]) -> Optional[str]:
    """Stable, non-reversible identifier for an email address in logs."""
    if not email:
        return None
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]


def _bind_request_id(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    request_id = _request_id.get()
    if request_id and "correlation_id" not in event:
        event["correlation_id"] = request_id
    return event


def _scrub(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credentials and swap raw addresses for their digest."""
    for key in list(event):
        lowered = key.lower()
        if lowered in _SAFE_KEYS:
            continue
        if "email" in lowered and isinstance(event[key], str):
            event[key] = email_digest(event[key])
        elif any(marker in lowered for marker in _SECRET_KEYS) and event[key] is not None:
            event[key] = "[redacted]"
    return event


def configure_logging(level: str = "INFO", *, as_json: bool = True, console: bool = False) -> None:
    """Install the structlog pipeline.

    ``console`` forces the coloured renderer regardless of ``as_json``; JSON
    output carries formatted tracebacks so log shippers see one line per event.
    """
    chain = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_request_id,
        _scrub,
        structlog.processors.StackInfoRenderer(),
    ]
    if console or not as_json:
        chain.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        chain.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    threshold = logging.getLevelName(level.upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO
    structlog.configure(
        processors=chain,
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    as_json=_env_flag("LOG_JSON", "true"),
    console=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
