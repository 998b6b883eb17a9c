"""
Structured logging via structlog.

All application log entries carry consistent fields:
  timestamp, level, logger, event, run_id, user_id, trace_id, node,
  duration_ms, tool_name, error ...

run_id / user_id / trace_id are bound into structlog contextvars by the
graph executor for the lifetime of a run, so every entry emitted while a
run is in flight is correlated without threading ids through call sites.

Usage:
    from chat_orchestrator.core.logging import get_logger
    log = get_logger(__name__)
    log.info("node_completed", node="retrieve", duration_ms=42.1)
"""

import logging
import sys
from typing import Any

import structlog
from chat_orchestrator.core.config import get_settings

# State fields that must never reach a log sink verbatim
REDACTED_FIELDS = frozenset({"messages", "generated_text", "docs"})
REDACTED = "[REDACTED]"


def configure_logging() -> None:
    """
    Configure structlog processors. Call once at application startup.
    Development: pretty colored output.
    Production:  JSON output (machine-readable for cloud logging).
    """
    settings = get_settings()
    is_dev = settings.environment == "development"
    level = logging.DEBUG if is_dev else logging.getLevelName(settings.log_level.upper())

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    if is_dev:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        # add_logger_name reads .name, which only stdlib loggers carry
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__):
    return structlog.get_logger(name)


def redact_state(state: dict[str, Any]) -> dict[str, Any]:
    """Return a shallow copy of a state dict that is safe to log."""
    return {
        key: (REDACTED if key in REDACTED_FIELDS and value else value)
        for key, value in state.items()
    }
