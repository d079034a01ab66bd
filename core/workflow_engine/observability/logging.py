"""
Structured logging with automatic run context propagation.

The executor sets run_id, thread_id and workflow_id once per run and
node_id per step; every ``logger.info(...)`` made underneath picks them up
through a ContextVar, including calls made inside step executors and
parallel branches.

Output modes: JSON for production, colorized human-readable for
development.
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# ContextVar is copied into each asyncio task, so parallel branches keep their own node_id
trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

# ANSI escape code pattern (matches \033[...m or \x1b[...m)
ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m|\033\[[0-9;]*m")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Produces machine-parseable log entries with:
    - Standard fields (timestamp, level, logger, message)
    - Run context (run_id, thread_id, workflow_id, node_id)
    - Custom fields from extra dict (event, latency_ms, node_id)
    """

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}
        message = strip_ansi_codes(record.getMessage())

        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": message,
        }
        log_entry.update(context)

        event = getattr(record, "event", None)
        if event is not None:
            log_entry["event"] = strip_ansi_codes(event) if isinstance(event, str) else event

        latency_ms = getattr(record, "latency_ms", None)
        if latency_ms is not None:
            log_entry["latency_ms"] = latency_ms

        node_id = getattr(record, "node_id", None)
        if node_id is not None:
            log_entry["node_id"] = node_id

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Human-readable formatter for development.

    Colorized level plus a short run/thread/node prefix.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}
        run_id = context.get("run_id", "")
        thread_id = context.get("thread_id", "")
        node_id = context.get("node_id", "")

        prefix_parts = []
        if run_id:
            prefix_parts.append(f"run:{run_id[:8]}")
        if thread_id:
            prefix_parts.append(f"thread:{thread_id[-8:]}")
        if node_id:
            prefix_parts.append(f"node:{node_id}")
        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = ""
        record_event = getattr(record, "event", None)
        if record_event is not None:
            event = f" [{record_event}]"

        return f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event}"


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure logging for the application. Call once at startup.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Output format:
            - "json": Machine-parseable JSON (for production)
            - "human": Human-readable with colors (for development)
            - "auto": JSON if LOG_FORMAT=json or ENV=production, else human
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    formatter: logging.Formatter
    if format == "json":
        formatter = StructuredFormatter()
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # route httpx/httpcore records through our formatter in JSON mode
    if format == "json":
        for logger_name in ("httpcore", "httpx"):
            logger = logging.getLogger(logger_name)
            logger.handlers.clear()
            logger.propagate = True


def set_trace_context(**kwargs: Any) -> None:
    """
    Add fields to the current run context.

    Called by the executor (run_id, thread_id, workflow_id) and per step
    (node_id). Values propagate to every log call in the same task and to
    tasks created from it.
    """
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    """
    Get current trace context.

    Returns:
        Dict with run_id, thread_id, etc. Empty dict if no context set.
    """
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """Clear trace context (between test runs or before an unrelated run)."""
    trace_context.set(None)
