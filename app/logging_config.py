"""
Structured Logging Configuration

Sets up structlog on top of the standard logging library. Queue workers,
the scheduler and the HTTP layer all log through here, so every record
carries the same context (app, level, logger, timestamp).

JSON output in production, colored console output in development.
"""

import logging
import sys
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict, WrappedLogger

from app import __version__
from app.config import Settings, get_settings

SENSITIVE_KEYS = {
    "token", "access_token", "api_key", "apikey", "secret",
    "password", "authorization", "credential", "bearer",
}

TOKEN_PREFIXES = ("sk-", "ghp_", "ghs_", "gho_", "github_pat_")


def _redact(value: Dict[str, Any]) -> Dict[str, Any]:
    result = {}
    for key, item in value.items():
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in SENSITIVE_KEYS):
            result[key] = "[REDACTED]"
        elif isinstance(item, dict):
            result[key] = _redact(item)
        elif isinstance(item, str) and item.startswith(TOKEN_PREFIXES):
            result[key] = "[REDACTED]"
        else:
            result[key] = item
    return result


def filter_sensitive_data(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Redact secrets, tokens and API keys before rendering."""
    return _redact(event_dict)


def add_app_context(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add application context to every log entry."""
    event_dict["app"] = "code-review-queue"
    event_dict["version"] = __version__
    return event_dict


def setup_logging(settings: Optional[Settings] = None) -> None:
    """
    Configure structured logging for the application.

    Safe to call more than once: the root handler installed here is
    replaced rather than duplicated.
    """
    settings = settings or get_settings()

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_app_context,
        filter_sensitive_data,
    ]

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if settings.log_json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.set_name("structlog")

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == "structlog":
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.log_level))

    # Suppress noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a logger instance with the given name.

    Usage:
        logger = get_logger(__name__)
        logger.info("Job completed", job_id="42", duration_ms=1800)
    """
    return structlog.get_logger(name)
