"""Logging helpers for flagkit."""

from flagkit.core.logging.structured import (
    StructuredFormatter,
    clear_evaluation_context,
    set_evaluation_context,
    setup_structured_logging,
)

__all__ = [
    "StructuredFormatter",
    "clear_evaluation_context",
    "set_evaluation_context",
    "setup_structured_logging",
]
