"""Structured logging configuration.

Features:
- JSON formatted logs for aggregation
- Flag/subject correlation fields
- Error tracking
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

# Context variables for evaluation tracking
flag_key_var: ContextVar[Optional[str]] = ContextVar("flag_key", default=None)
subject_id_var: ContextVar[Optional[str]] = ContextVar("subject_id", default=None)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        service_name: str = "flagkit",
        environment: str = "production",
        include_stack_trace: bool = True,
    ):
        super().__init__()
        self.service_name = service_name
        self.environment = environment
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
        }

        log_entry["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        if flag_key := flag_key_var.get():
            log_entry["flag_key"] = flag_key
        if subject_id := subject_id_var.get():
            log_entry["subject_id"] = subject_id

        # Fields passed through logger.x(..., extra={...})
        for attr in ("flag_key", "segment", "error_code", "reason", "operator"):
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        if record.exc_info and self.include_stack_trace:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stacktrace": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_entry, default=str)


def setup_structured_logging(
    service_name: str = "flagkit",
    environment: str = "production",
    level: Union[int, str] = logging.INFO,
    json_output: bool = True,
) -> None:
    """Configure structured logging for the application."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if json_output:
        formatter: logging.Formatter = StructuredFormatter(
            service_name=service_name,
            environment=environment,
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)


def set_evaluation_context(
    flag_key: Optional[str] = None,
    subject_id: Optional[str] = None,
) -> None:
    """Attach flag/subject identifiers to subsequent log records."""
    flag_key_var.set(flag_key)
    subject_id_var.set(subject_id)


def clear_evaluation_context() -> None:
    flag_key_var.set(None)
    subject_id_var.set(None)
