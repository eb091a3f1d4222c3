from __future__ import annotations

import logging
import os
import re
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation ID shared by every log line emitted while handling one auth flow
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Session credentials: access/refresh/reset tokens, passwords, OTP codes
_CREDENTIAL_KEYS = ("password", "secret", "token", "authorization", "api_key", "otp", "code")
_UNREDACTED_KEYS = frozenset({"event", "error_code", "status_code", "otp_type"})

_JWT_RE = re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]*")
_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")


def mask_email(email: str) -> str:
    """Keep the first two characters of the mailbox and the domain."""
    local, sep, domain = email.partition("@")
    if not sep:
        return "redacted"
    return f"{local[:2]}***@{domain}"


def _mask_credential(value: str) -> str:
    if len(value) > 4:
        # First/last 2 chars are enough to tell two tokens apart
        return value[:2] + "***" + value[-2:]
    return "***"


def _mask_phone(value: str) -> str:
    digits = [c for c in value if c.isdigit()]
    return "*" * max(len(digits) - 2, 0) + "".join(digits[-2:])


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor masking credentials, contact details and stray JWTs."""
    for key in list(event_dict.keys()):
        value = event_dict[key]
        lower_key = key.lower()
        if lower_key in _UNREDACTED_KEYS or not isinstance(value, str) or not value:
            continue
        if any(k in lower_key for k in _CREDENTIAL_KEYS):
            event_dict[key] = _mask_credential(value)
        elif "email" in lower_key:
            event_dict[key] = mask_email(value) if "***" not in value else value
        elif "phone" in lower_key:
            event_dict[key] = _mask_phone(value)
        else:
            # Free text (errors, messages) can still quote a bearer token
            event_dict[key] = _JWT_RE.sub("[jwt]", value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Log lines go to stderr so that stdout stays free for command output
    (the CLI prints exactly one JSON document there).

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# Initialize logging on module import
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


# What must never reach a user through a transport error message
_SENSITIVE_ERROR_PATTERNS = [
    # Token store files and other local paths
    (re.compile(r"(?i)/(?:home|root|var|etc|usr|opt|tmp|Users)/[^\s'\"]+"), "[path]"),
    (re.compile(r"(?i)[a-z]:\\[^\s'\"]+"), "[path]"),
    # Redis URLs may embed a password
    (re.compile(r"(?i)rediss?://[^\s'\"]+"), "[redis-url]"),
    (re.compile(r"(?i)bearer\s+[A-Za-z0-9\-_.=]+"), "Bearer [redacted]"),
    (_JWT_RE, "[jwt]"),
    (
        re.compile(r"(?i)(password|secret|token|otp|key)(\s*[:=]\s*)[^\s,;&]+"),
        r"\1\2[redacted]",
    ),
    (_EMAIL_RE, "[email]"),
    (re.compile(r"(?i)traceback\s*\(most recent call last\).*", re.S), "[traceback]"),
]


def sanitize_error_message(error: str) -> str:
    """Scrub a transport error before it is surfaced as a user message.

    Removes local paths, Redis URLs, bearer tokens and JWTs, credential
    assignments, email addresses and tracebacks, and caps the length.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern, replacement in _SENSITIVE_ERROR_PATTERNS:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result
