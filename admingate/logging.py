from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import structlog

# Any event key containing one of these fragments carries a credential or PII
_SENSITIVE_FRAGMENTS = (
    "password",
    "secret",
    "token",
    "backup_code",
    "authorization",
    "email",
    "otpauth",
)

_TRUTHY = {"1", "true", "yes", "on"}


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask string values under sensitive keys, leaving two chars at each end."""
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        lowered = key.lower()
        if any(fragment in lowered for fragment in _SENSITIVE_FRAGMENTS):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, dev_mode: bool = False
) -> None:
    """Install the structlog pipeline.

    Context bound with ``structlog.contextvars`` (for example the command name
    bound by the bootstrap script) is merged into every event before
    redaction runs.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if dev_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
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


def session_ref(session_id: Optional[str]) -> Optional[str]:
    """Shorten a session id for logs; the full id is a bearer credential."""
    if not session_id:
        return session_id
    return session_id[:8]
