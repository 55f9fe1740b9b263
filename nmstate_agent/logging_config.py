"""Agent logging configuration with JSON formatting.

This module provides structured logging capabilities for the agent:
- JSON-formatted log output for easy parsing by log aggregation systems
- Transaction IDs so every line of one apply can be correlated
- Configurable log levels and formats
"""
from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from nmstate_agent.config import Settings

# Context variable for the transaction ID (apply-scoped)
transaction_id_var: ContextVar[str | None] = ContextVar("transaction_id", default=None)


def get_transaction_id() -> str | None:
    """Get the current transaction ID from context."""
    return transaction_id_var.get()


def set_transaction_id(transaction_id: str | None) -> None:
    """Set the transaction ID in context."""
    transaction_id_var.set(transaction_id)


def generate_transaction_id() -> str:
    """Generate a new transaction ID."""
    return str(uuid4())


class AgentJSONFormatter(logging.Formatter):
    """JSON log formatter for agent structured logging.

    Formats log records as JSON objects with consistent fields:
    - timestamp: ISO8601 formatted timestamp
    - level: Log level (INFO, WARNING, ERROR, etc.)
    - logger: Logger name
    - message: Log message
    - service: Always "nmstate-agent" for identification
    - node: The node this agent manages (if available)
    - transaction_id: Apply transaction ID (if inside one)
    - extra: Additional context fields
    """

    def __init__(self, node_name: str = ""):
        super().__init__()
        self.node_name = node_name

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as JSON."""
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": "nmstate-agent",
        }

        if self.node_name:
            log_entry["node"] = self.node_name

        transaction_id = get_transaction_id()
        if transaction_id:
            log_entry["transaction_id"] = transaction_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        # Add extra fields from the record
        standard_attrs = {
            "name", "msg", "args", "created", "filename", "funcName",
            "levelname", "levelno", "lineno", "module", "msecs",
            "pathname", "process", "processName", "relativeCreated",
            "stack_info", "exc_info", "exc_text", "thread", "threadName",
            "taskName", "message",
        }

        extra = {}
        for key, value in record.__dict__.items():
            if key not in standard_attrs:
                try:
                    json.dumps(value)
                    extra[key] = value
                except (TypeError, ValueError):
                    extra[key] = str(value)

        if extra:
            log_entry["extra"] = extra

        return json.dumps(log_entry)


class AgentTextFormatter(logging.Formatter):
    """Text log formatter for agent (development use).

    Provides a human-readable format:
    [timestamp] LEVEL [node] (txn) logger: message
    """

    def __init__(self, node_name: str = ""):
        super().__init__()
        self.node_name = node_name

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as text."""
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        node_part = f" [{self.node_name}]" if self.node_name else ""
        transaction_id = get_transaction_id()
        txn_part = f" ({transaction_id[:8]})" if transaction_id else ""

        message = (
            f"[{timestamp}] {record.levelname:8}{node_part}{txn_part} "
            f"{record.name}: {record.getMessage()}"
        )

        if record.exc_info:
            message += f"\n{self.formatException(record.exc_info)}"

        return message


def setup_agent_logging(settings: Settings) -> None:
    """Configure agent logging based on settings.

    Sets up the root logger with either JSON or text formatting
    based on the log_format setting.
    """
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)

    if settings.log_format.lower() == "json":
        handler.setFormatter(AgentJSONFormatter(settings.node_name))
    else:
        handler.setFormatter(AgentTextFormatter(settings.node_name))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers
    for existing_handler in root_logger.handlers[:]:
        root_logger.removeHandler(existing_handler)

    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
