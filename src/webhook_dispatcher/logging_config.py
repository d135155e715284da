"""Logging configuration for structured TSKV (Tab-Separated Key-Value) logging."""
from __future__ import annotations

import logging
import sys

import structlog


def _sanitize_string(value: str) -> str:
    """Escape control characters so the log entry stays on a single line."""
    return (
        value.replace("\\", "\\\\")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def replace_newlines_processor(logger, method_name, event_dict):
    """
    Processor to replace newlines in string values with \\n.
    Keeps every entry on one line, receiver error bodies included.
    Runs after format_exc_info so formatted tracebacks are covered too.
    """
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _sanitize_string(value)
        elif isinstance(value, (list, tuple)):
            event_dict[key] = [
                _sanitize_string(item) if isinstance(item, str) else item
                for item in value
            ]
        elif isinstance(value, dict):
            event_dict[key] = {
                k: _sanitize_string(v) if isinstance(v, str) else v
                for k, v in value.items()
            }
    return event_dict


class SingleLineFormatter(logging.Formatter):
    """Formatter that ensures output is always on a single line."""

    def format(self, record):
        message = super().format(record)
        # Records from plain stdlib loggers skip the structlog processors,
        # so escape their newlines here
        return message.replace("\n", "\\n").replace("\r", "\\r")


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structlog for key=value output suitable for Loki/Alloy."""
    # stdlib records (aiohttp, asyncpg) share the single-line stdout handler
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SingleLineFormatter("%(message)s"))

    # Root logger
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)
    root_logger.propagate = False

    # aiohttp access log goes through the root handler
    aiohttp_logger = logging.getLogger("aiohttp.access")
    aiohttp_logger.setLevel(level)
    aiohttp_logger.propagate = True
    aiohttp_logger.handlers = []  # drop aiohttp's own handlers

    # Format: timestamp=2026-01-01T12:00:00Z level=info logger=webhook_dispatcher.dispatcher
    #   event='webhook delivery failed' delivery_id=... status=retrying trace_id=...
    # Values with spaces are quoted, so Alloy can extract fields without a JSON stage
    structlog.configure(
        processors=[
            # trace_id / request_id bound by the trace middleware
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            # Stack info for exceptions
            structlog.processors.StackInfoRenderer(),
            # Adds the exception field with the traceback
            structlog.processors.format_exc_info,
            # Must stay after format_exc_info and before the renderer
            replace_newlines_processor,
            # Space-separated key=value output
            structlog.processors.KeyValueRenderer(
                key_order=["timestamp", "level", "logger", "event", "message"],
                drop_missing=True,
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
