"""
dbflow logging infrastructure.

Component loggers (``SQL``, ``REDIS``, ``FLOW``) under the ``dbflow``
logger, with:
- Console output for human monitoring
- Optional JSONL file output (one JSON object per line)
- The active correlation id stamped on every record
- ``LoggingSink``, the default correlation sink
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from dbflow.runtime.correlation import current_correlation_id

# =============================================================================
# Terminal Colors (respects NO_COLOR)
# =============================================================================

_NO_COLOR = bool(os.environ.get("NO_COLOR")) or not sys.stdout.isatty()


class Colors:
    """ANSI color codes for terminal output."""

    RESET = "" if _NO_COLOR else "\033[0m"
    DIM = "" if _NO_COLOR else "\033[2m"

    # Log levels
    DEBUG = "" if _NO_COLOR else "\033[36m"  # Cyan
    INFO = "" if _NO_COLOR else "\033[32m"  # Green
    WARNING = "" if _NO_COLOR else "\033[33m"  # Yellow
    ERROR = "" if _NO_COLOR else "\033[31m"  # Red
    CRITICAL = "" if _NO_COLOR else "\033[35m"  # Magenta

    # Components
    SQL = "" if _NO_COLOR else "\033[34m"  # Blue
    REDIS = "" if _NO_COLOR else "\033[31m"  # Red
    FLOW = "" if _NO_COLOR else "\033[35m"  # Magenta


# =============================================================================
# Formatters
# =============================================================================


class CorrelationFilter(logging.Filter):
    """Attach the active correlation id (if any) to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = current_correlation_id()
        return True


class JSONLFormatter(logging.Formatter):
    """
    Formats log records as JSON Lines.

    Example output:
    {"timestamp":"2024-01-15T10:30:45.123Z","level":"WARNING","component":"REDIS","correlation_id":"9f0c...","message":"Old members not deleted","context":{"model":"user"}}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "component": getattr(record, "component", "FLOW"),
            "message": record.getMessage(),
        }

        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            entry["correlation_id"] = correlation_id

        context = getattr(record, "context", None)
        if context:
            entry["context"] = context

        if record.exc_info and record.exc_info[0]:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for console output."""

    LEVEL_COLORS = {
        logging.DEBUG: Colors.DEBUG,
        logging.INFO: Colors.INFO,
        logging.WARNING: Colors.WARNING,
        logging.ERROR: Colors.ERROR,
        logging.CRITICAL: Colors.CRITICAL,
    }

    def format(self, record: logging.LogRecord) -> str:
        component = getattr(record, "component", "FLOW")
        component_color = getattr(record, "component_color", Colors.FLOW)
        timestamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")

        prefix = f"{Colors.DIM}{timestamp}{Colors.RESET} {component_color}[{component}]{Colors.RESET}"

        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            prefix = f"{prefix} {Colors.DIM}{correlation_id[:8]}{Colors.RESET}"

        if record.levelno != logging.INFO:
            level_color = self.LEVEL_COLORS.get(record.levelno, "")
            prefix = f"{prefix} {level_color}{record.levelname}{Colors.RESET}:"

        message = f"{prefix} {record.getMessage()}"
        context = getattr(record, "context", None)
        if context and record.levelno >= logging.WARNING:
            message = f"{message}\n{json.dumps(context, indent=2, default=str)}"
        return message


# =============================================================================
# Logger Setup
# =============================================================================

_loggers: dict[str, logging.Logger] = {}


def setup_logging(
    level: int = logging.INFO,
    log_dir: Path | str | None = None,
    max_bytes: int = 5 * 1024 * 1024,  # 5MB
    backup_count: int = 3,
) -> logging.Logger:
    """
    Configure the ``dbflow`` root logger.

    Args:
        level: Minimum log level
        log_dir: Directory for ``dbflow.log`` (JSONL); console only if None
        max_bytes: Max size per log file before rotation
        backup_count: Number of rotated files to keep

    Returns:
        The configured root logger
    """
    root_logger = logging.getLogger("dbflow")
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(ConsoleFormatter())
    console_handler.addFilter(CorrelationFilter())
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    if log_dir is not None:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path / "dbflow.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(JSONLFormatter())
        file_handler.addFilter(CorrelationFilter())
        file_handler.setLevel(level)
        root_logger.addHandler(file_handler)

    return root_logger


def get_logger(component: str, color: str = Colors.FLOW) -> logging.Logger:
    """
    Get a logger for a specific component.

    Args:
        component: Component name (e.g. "SQL", "REDIS", "FLOW")
        color: ANSI color code for the component tag

    Returns:
        Configured logger instance
    """
    if component in _loggers:
        return _loggers[component]

    logger = logging.getLogger(f"dbflow.{component.lower().replace(' ', '_')}")

    class ComponentFilter(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            if not hasattr(record, "component"):
                record.component = component
            if not hasattr(record, "component_color"):
                record.component_color = color
            return True

    logger.addFilter(ComponentFilter())
    logger.addFilter(CorrelationFilter())
    _loggers[component] = logger
    return logger


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    context: dict[str, Any] | None = None,
    *,
    correlation_id: str | None = None,
    **kwargs: Any,
) -> None:
    """
    Log a message with structured context data.

    Args:
        logger: Logger instance
        level: Logging level (logging.INFO, logging.ERROR, etc.)
        message: Human-readable message
        context: Structured context data (included in JSONL)
        correlation_id: Operation the message belongs to
        **kwargs: Additional context items
    """
    extra: dict[str, Any] = {}
    if context or kwargs:
        extra["context"] = {**(context or {}), **kwargs}
    if correlation_id is not None:
        extra["correlation_id"] = correlation_id
    logger.log(level, message, extra=extra)


# =============================================================================
# Component Loggers
# =============================================================================


def get_flow_logger() -> logging.Logger:
    """Logger for orchestrated flow operations."""
    return get_logger("FLOW", Colors.FLOW)


_COMPONENT_COLORS = {"SQL": Colors.SQL, "REDIS": Colors.REDIS, "FLOW": Colors.FLOW}


# =============================================================================
# Correlation Sink
# =============================================================================


class LoggingSink:
    """Correlation sink that writes every event to the component loggers."""

    def start(self) -> str:
        event_id = uuid.uuid4().hex
        get_flow_logger().debug("Correlation started", extra={"correlation_id": event_id})
        return event_id

    def annotate(
        self,
        event_id: str,
        level: int,
        component: str,
        message: str,
        context: dict[str, Any],
    ) -> None:
        logger = get_logger(component, _COMPONENT_COLORS.get(component, Colors.FLOW))
        log_with_context(logger, level, message, context, correlation_id=event_id)

    def mark_used(self, event_id: str) -> None:
        get_flow_logger().debug("Correlation borrowed", extra={"correlation_id": event_id})

    def finish(self, event_id: str) -> None:
        get_flow_logger().debug("Correlation finished", extra={"correlation_id": event_id})
