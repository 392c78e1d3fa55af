from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Key words marking credential values, which are dropped entirely
_CREDENTIAL_WORDS = {"password", "secret", "token", "authorization", "cookie"}
# OAuth callback parameters, matched on the whole key so status_code survives
_CREDENTIAL_KEYS = {"code", "state"}
_REDACTED = "[redacted]"

# JWTs and OAuth query parameters leak into exception strings (httpx errors, URLs)
_JWT_RE = re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]*")
_QUERY_SECRET_RE = re.compile(
    r"(?P<key>code|state|access_token|refresh_token|client_secret)=[^&\s\"']+"
)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def mask_email(email: str) -> str:
    """Keep the domain and the first character of the local part."""
    local, sep, domain = email.partition("@")
    if not sep:
        return _REDACTED
    return f"{local[:1]}***@{domain}"


def scrub_text(text: str) -> str:
    """Strip bearer tokens and OAuth secrets out of free-form strings."""
    text = _JWT_RE.sub("[jwt]", text)
    return _QUERY_SECRET_RE.sub(lambda m: f"{m.group('key')}={_REDACTED}", text)


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credential values, mask emails and scrub error strings.

    Refresh and access token values never appear in a log line, not even
    partially; ``*_present`` booleans are kept since they carry no secret.
    """
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        lower_key = key.lower()
        if isinstance(value, bool) or value is None:
            continue
        if lower_key in _CREDENTIAL_KEYS or _CREDENTIAL_WORDS.intersection(lower_key.split("_")):
            event_dict[key] = _REDACTED
        elif "email" in lower_key and isinstance(value, str):
            event_dict[key] = mask_email(value)
        elif isinstance(value, str):
            event_dict[key] = scrub_text(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog processor chain.

    Called once at import from ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_DEV_MODE``.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
