"""
Shared logging infrastructure for the realtime voice session stack.

This module provides a unified logging setup for both the Credential Broker
backend and the Realtime Client.

Features:
- JSON-formatted structured logs
- Configurable log levels
- Session ID correlation across all logs
- Component and severity tagging
"""

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class Severity(str, Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Component(str, Enum):
    """System components for log tagging."""
    CREDENTIAL_BROKER = "credential_broker"
    BROKER_SERVER = "broker_server"
    REALTIME_CLIENT = "realtime_client"
    NEGOTIATOR = "negotiator"
    CONVERSATION = "conversation"
    MEDIA = "media"
    AUDIO_LEVELS = "audio_levels"


# Attributes every LogRecord carries; anything else came in through `extra`.
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "component", "session_id", "message", "taskName",
})


class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.

    Output fields:
    - ISO8601 timestamp
    - Severity level
    - Component identifier
    - Session ID (if available in extra)
    - Message and additional fields
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": record.levelname.lower(),
            "component": getattr(record, "component", "unknown"),
            "message": record.getMessage(),
        }

        if hasattr(record, "session_id"):
            log_data["session_id"] = record.session_id

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    Wrapper around Python's logging with structured JSON output.

    Usage:
        logger = StructuredLogger("negotiator", session_id="conv_123")
        logger.info("Offer applied", sdp_bytes=1234)
        logger.error("Exchange failed", error="details")
    """

    def __init__(
        self,
        component: str | Component,
        session_id: Optional[str] = None,
        logger_name: Optional[str] = None
    ):
        self.component = component.value if isinstance(component, Component) else component
        self.session_id = session_id
        self.logger = logging.getLogger(logger_name or self.component)

    def _log(self, level: int, message: str, **kwargs: Any):
        """Internal logging method with structured data."""
        exc_info = kwargs.pop("exc_info", None)
        stack_info = kwargs.pop("stack_info", None)
        stacklevel = kwargs.pop("stacklevel", 1)

        extra = {
            "component": self.component,
            **kwargs
        }

        if self.session_id:
            extra["session_id"] = self.session_id

        self.logger.log(
            level,
            message,
            exc_info=exc_info,
            stack_info=stack_info,
            stacklevel=stacklevel,
            extra=extra
        )

    def debug(self, message: str, **kwargs):
        """Log a debug message."""
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        """Log an info message."""
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        """Log a warning message."""
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        """Log an error message."""
        self._log(logging.ERROR, message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log an error message with exception info (mirrors logging.Logger.exception)."""
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, message, **kwargs)

    def with_session(self, session_id: str) -> "StructuredLogger":
        """Create a new logger instance with a session ID."""
        return StructuredLogger(
            self.component,
            session_id=session_id,
            logger_name=self.logger.name
        )


def setup_logging(
    level: str = "INFO",
    use_json: bool = True,
    include_timestamp: bool = True
) -> None:
    """
    Configure root logger for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: Use JSON formatter (True) or simple text (False)
        include_timestamp: Include timestamps in logs

    This should be called once at application startup.
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # stderr keeps stdout free for structured events and the terminal client
    console_handler = logging.StreamHandler(sys.stderr)

    if use_json:
        formatter = JSONFormatter()
    else:
        format_str = "%(levelname)s - %(component)s - %(message)s"
        if include_timestamp:
            format_str = "%(asctime)s - " + format_str
        formatter = logging.Formatter(format_str)

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)


def get_logger(
    component: str | Component,
    session_id: Optional[str] = None
) -> StructuredLogger:
    """
    Get a structured logger for a component.

    Example:
        logger = get_logger(Component.CONVERSATION, session_id="conv_123")
        logger.info("Conversation started")
    """
    return StructuredLogger(component, session_id=session_id)
