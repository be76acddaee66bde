"""Structured TSKV (key=value) logging for the hub."""
from __future__ import annotations

import logging
import sys

import structlog

_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\r": "\\r", "\t": "\\t"}


def _escape(value: str) -> str:
    for raw, escaped in _ESCAPES.items():
        value = value.replace(raw, escaped)
    return value


def escape_control_chars(logger, method_name, event_dict):
    """Keep every entry on one line, including formatted tracebacks and webhook bodies."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _escape(value)
        elif isinstance(value, (list, tuple)):
            event_dict[key] = [_escape(v) if isinstance(v, str) else v for v in value]
        elif isinstance(value, dict):
            event_dict[key] = {k: _escape(v) if isinstance(v, str) else v for k, v in value.items()}
    return event_dict


class SingleLineFormatter(logging.Formatter):
    """Formatter for stdlib records that never emits a raw newline."""

    def format(self, record):
        return super().format(record).replace("\n", "\\n").replace("\r", "\\r")


def configure_logging(level: int = logging.INFO) -> None:
    """Route stdlib and structlog output to stdout as single-line key=value entries."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SingleLineFormatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    access_logger = logging.getLogger("aiohttp.access")
    access_logger.setLevel(level)
    access_logger.handlers = []
    access_logger.propagate = True

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            # must run after format_exc_info so tracebacks are escaped too
            escape_control_chars,
            structlog.processors.KeyValueRenderer(
                key_order=["timestamp", "level", "logger", "event"],
                drop_missing=True,
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
