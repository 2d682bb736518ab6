"""
Logging Configuration
Version: 2.0

One pipeline for both logger kinds used here:
- structlog loggers (main.py, routers) with keyword fields
- stdlib loggers (services/*) with f-string messages

Both pass through the same processors, so every line carries the HTTP
trace id and, inside a sync task, the sync session token.
"""
import logging
import os
import sys
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

import structlog


trace_id_var: ContextVar[Optional[str]] = ContextVar('trace_id', default=None)
sync_session_var: ContextVar[Optional[str]] = ContextVar('sync_session', default=None)

QUIET_LOGGERS = ("sqlalchemy.engine", "asyncpg", "httpx", "httpcore", "uvicorn.access")


def get_trace_id() -> Optional[str]:
    return trace_id_var.get()


def set_trace_id(trace_id: str) -> None:
    """Bind the request trace id for the current task."""
    trace_id_var.set(trace_id)


def bind_sync_session(session_token: str) -> None:
    """Bind a sync session token; call from inside the sync task."""
    sync_session_var.set(session_token)


def add_request_context(logger, method_name, event_dict):
    trace_id = trace_id_var.get()
    if trace_id:
        event_dict['trace_id'] = trace_id
    session = sync_session_var.get()
    if session:
        event_dict['sync_session'] = session
    return event_dict


def add_timestamp(logger, method_name, event_dict):
    event_dict['timestamp'] = datetime.now(timezone.utc).isoformat()
    return event_dict


def add_service_info(logger, method_name, event_dict):
    event_dict['service'] = os.getenv('APP_NAME', 'conversation-intake')
    event_dict['version'] = os.getenv('APP_VERSION', 'unknown')
    event_dict['environment'] = os.getenv('APP_ENV', 'development')
    return event_dict


def rename_event_key(logger, method_name, event_dict):
    """Rename 'event' to 'message' for log shipper compatibility."""
    if 'event' in event_dict:
        event_dict['message'] = event_dict.pop('event')
    return event_dict


def configure_logging(
    json_format: Optional[bool] = None,
    log_level: str = "INFO"
) -> None:
    """
    Configure structlog and route stdlib records through the same renderer.

    Args:
        json_format: JSON lines when True, colored console when False.
                     None picks JSON when APP_ENV is production.
        log_level: Root level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    if json_format is None:
        json_format = os.getenv('APP_ENV', 'development') == 'production'

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_request_context,
        add_timestamp,
    ]

    if json_format:
        renderers = [
            add_service_info,
            rename_event_key,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=pre_chain + [
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta] + renderers,
    ))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LogTimer:
    """Logs '<operation> completed|failed' with duration_ms on exit."""

    def __init__(self, logger, operation: str, **extra):
        self.logger = logger
        self.operation = operation
        self.extra = extra
        self.duration_ms = 0.0
        self._started = 0.0

    def __enter__(self):
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = round((time.perf_counter() - self._started) * 1000, 2)

        if exc_type:
            self.logger.error(f"{self.operation} failed", duration_ms=self.duration_ms, error=str(exc_val), **self.extra)
        else:
            self.logger.info(f"{self.operation} completed", duration_ms=self.duration_ms, **self.extra)
        return False
