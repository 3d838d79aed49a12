from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# One id per coordinator call or maintenance run; copied into audit details
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

REDACTED = "[REDACTED]"

# Substrings of keys whose values are credential material
_CREDENTIAL_KEY_PARTS = (
    "password",
    "secret",
    "token",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "private_key",
    "code_verifier",
    "access_key",
)

# Store and driver details that must not reach a failure message or retention result
_ERROR_SCRUBBERS = [
    (re.compile(r"(?i)\b(postgres(?:ql)?|redis|rediss)://[^\s'\"]+"), r"\1://[redacted]"),
    (re.compile(r"(?i)\b(select|insert|update|delete)\b\s+.{0,80}"), "[redacted]"),
    (re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s'\"]+"), "[redacted]"),
    (re.compile(r"(?i)(password|secret|token|key|credential)\s*[:=]\s*[^\s,;]+"), r"\1=[redacted]"),
    (re.compile(r"(?i)traceback\s*\(most recent call last\).*", re.S), "[redacted]"),
]

_MAX_ERROR_LENGTH = 500


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set (or mint) the correlation id for the current task context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _is_credential_key(key: Any) -> bool:
    normalized = str(key).lower().replace("-", "_").replace(" ", "_")
    return any(part in normalized for part in _CREDENTIAL_KEY_PARTS)


def _mask_email(value: str) -> str:
    if "@" not in value:
        return REDACTED
    local, domain = value.split("@", 1)
    return f"{local[:2]}***@{domain}"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_event(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop credential values outright and mask email addresses."""
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        value = event_dict[key]
        if _is_credential_key(key):
            event_dict[key] = REDACTED
        elif "email" in key.lower() and isinstance(value, str):
            event_dict[key] = _mask_email(value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_event,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub DSNs, SQL, filesystem paths and inline credentials from ``error``.

    Applied before an error string is stored in a retention result or handed
    back inside a failure.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern, substitute in _ERROR_SCRUBBERS:
        result = pattern.sub(substitute.replace("[redacted]", replacement), result)
    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result


def redact_sensitive(data: Any, *, depth: int = 0, max_depth: int = 20) -> Any:
    """Copy of ``data`` with credential-bearing keys replaced by ``[REDACTED]``.

    Used on before/after state and details before they are hashed into an
    audit entry, so credential material never enters the chain.
    """
    if depth > max_depth:
        return "[max depth exceeded]"
    if isinstance(data, dict):
        return {
            key: REDACTED
            if _is_credential_key(key)
            else redact_sensitive(value, depth=depth + 1, max_depth=max_depth)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive(item, depth=depth + 1, max_depth=max_depth) for item in data]
    return data
