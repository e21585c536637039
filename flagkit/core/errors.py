"""Error types for flag evaluation.

Evaluation never lets these escape to callers: configuration problems are
logged and degrade the affected rule or flag to its safest default, and
prerequisite cycles are reported through the evaluation reason.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, List, Optional, Sequence


class ErrorCode(str, Enum):
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    UNKNOWN_SEGMENT = "UNKNOWN_SEGMENT"
    UNKNOWN_OPERATOR = "UNKNOWN_OPERATOR"
    INVALID_RULE_VALUE = "INVALID_RULE_VALUE"
    INVALID_WEIGHTS = "INVALID_WEIGHTS"
    SCHEMA_VALIDATION_FAILED = "SCHEMA_VALIDATION_FAILED"
    CYCLE_DETECTED = "CYCLE_DETECTED"


class FlagError(Exception):
    """Base exception for flagkit errors."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code

    def __str__(self) -> str:
        return f"{self.code.value}: {super().__str__()}"


class ConfigurationError(FlagError):
    """Malformed flag configuration (bad rule, unknown segment, bad weights)."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.CONFIGURATION_ERROR,
        flag_key: Optional[str] = None,
        errors: Optional[List[Any]] = None,
    ) -> None:
        super().__init__(code, message)
        self.flag_key = flag_key
        self.errors = errors or []


class CycleDetectedError(FlagError):
    """Prerequisite graph contains a cycle."""

    def __init__(self, path: Sequence[str]) -> None:
        self.path = tuple(path)
        super().__init__(
            ErrorCode.CYCLE_DETECTED,
            f"prerequisite cycle: {' -> '.join(self.path)}",
        )


__all__ = ["ErrorCode", "FlagError", "ConfigurationError", "CycleDetectedError"]
