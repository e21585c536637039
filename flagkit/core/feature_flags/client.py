"""Feature flag client.

Owns the current configuration snapshot for a process and hands it to the
stateless engine on every call. Lifecycle: load, atomic swap on refresh,
teardown. Until a snapshot is loaded the client answers from the caller's
fallback flags instead of raising.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from flagkit.core.config import get_settings
from flagkit.core.errors import ConfigurationError
from flagkit.core.feature_flags.engine import FlagEngine
from flagkit.core.feature_flags.exposure import ExposureTracker
from flagkit.core.feature_flags.models import (
    ConfigSnapshot,
    EvaluationContext,
    EvaluationResult,
    Reason,
)
from flagkit.core.feature_flags.schema import load_snapshot, snapshot_from_dict
from flagkit.core.feature_flags.validation import ValidationIssue, validate_snapshot
from flagkit.core.logging.structured import clear_evaluation_context, set_evaluation_context

logger = logging.getLogger(__name__)

# bool -> enabled/disabled; str -> enabled with that variant
FallbackValue = Union[bool, str]


class FeatureFlagClient:
    """Snapshot holder plus evaluation entry point for application code."""

    def __init__(
        self,
        snapshot: Optional[ConfigSnapshot] = None,
        fallback_flags: Optional[Mapping[str, FallbackValue]] = None,
        engine: Optional[FlagEngine] = None,
        tracker: Optional[ExposureTracker] = None,
    ):
        """Initialize the client.

        Args:
            snapshot: Initial configuration, if already available
            fallback_flags: Answers used while no snapshot is loaded
            engine: Evaluation engine (a default one is created)
            tracker: Records an exposure for each ``evaluate`` call
        """
        self.fallback_flags: Dict[str, FallbackValue] = dict(fallback_flags or {})
        self.engine = engine or FlagEngine()
        self.tracker = tracker
        self._lock = threading.Lock()
        self._snapshot: Optional[ConfigSnapshot] = snapshot

    @property
    def snapshot(self) -> Optional[ConfigSnapshot]:
        return self._snapshot

    @property
    def is_ready(self) -> bool:
        return self._snapshot is not None

    # Lifecycle

    def swap(self, snapshot: Optional[ConfigSnapshot]) -> Optional[ConfigSnapshot]:
        """Replace the current snapshot; returns the previous one."""
        with self._lock:
            previous, self._snapshot = self._snapshot, snapshot
        logger.info(
            f"Flag snapshot swapped: "
            f"{previous.version if previous else None!r} -> {snapshot.version if snapshot else None!r}"
        )
        return previous

    def load(self, snapshot: ConfigSnapshot) -> None:
        self.swap(snapshot)

    def load_dict(self, data: Dict[str, Any]) -> None:
        """Validate and load a configuration mapping.

        On failure the current snapshot stays in place and the error is raised.
        """
        self.swap(snapshot_from_dict(data))

    def load_file(self, path: Union[str, Path]) -> None:
        self.swap(load_snapshot(path))

    def teardown(self) -> None:
        """Drop the snapshot and stop exposure delivery."""
        self.swap(None)
        if self.tracker is not None:
            self.tracker.close()

    # Evaluation

    def evaluate(
        self,
        flag_key: str,
        context: Optional[EvaluationContext] = None,
    ) -> EvaluationResult:
        """Evaluate a flag against the current snapshot (or the fallback)."""
        context = context or EvaluationContext()
        snapshot = self._snapshot
        if snapshot is None:
            return self._fallback(flag_key)

        set_evaluation_context(flag_key=flag_key, subject_id=context.subject_id)
        try:
            result = self.engine.evaluate(flag_key, context, snapshot)
        finally:
            clear_evaluation_context()

        if self.tracker is not None:
            try:
                self.tracker.record_exposure(flag_key, result, context)
            except Exception:
                logger.exception(
                    f"Recording exposure for '{flag_key}' failed",
                    extra={"flag_key": flag_key},
                )
        return result

    def evaluate_all(
        self, context: Optional[EvaluationContext] = None
    ) -> Dict[str, EvaluationResult]:
        """Evaluate every flag. Bulk evaluation does not record exposures."""
        context = context or EvaluationContext()
        snapshot = self._snapshot
        if snapshot is None:
            return {key: self._fallback(key) for key in self.fallback_flags}
        return self.engine.evaluate_all(context, snapshot)

    def is_enabled(self, flag_key: str, context: Optional[EvaluationContext] = None) -> bool:
        """Check if a feature flag is enabled."""
        return self.evaluate(flag_key, context).enabled

    def get_variant(
        self, flag_key: str, context: Optional[EvaluationContext] = None
    ) -> Optional[str]:
        """Get the assigned variant name, if any."""
        return self.evaluate(flag_key, context).variant

    def validate(self) -> List[ValidationIssue]:
        """Run static checks on the current snapshot."""
        snapshot = self._snapshot
        return validate_snapshot(snapshot) if snapshot is not None else []

    def _fallback(self, flag_key: str) -> EvaluationResult:
        value = self.fallback_flags.get(flag_key, False)
        if isinstance(value, str):
            return EvaluationResult(
                flag_key=flag_key, enabled=True, reason=Reason.DEFAULT, variant=value
            )
        return EvaluationResult(flag_key=flag_key, enabled=bool(value), reason=Reason.DEFAULT)


# Global client instance
_client: Optional[FeatureFlagClient] = None


def get_feature_client() -> FeatureFlagClient:
    """Get the process-wide client, loading ``FLAGKIT_CONFIG_PATH`` if set."""
    global _client
    if _client is None:
        settings = get_settings()
        client = FeatureFlagClient(tracker=ExposureTracker())
        if settings.CONFIG_PATH:
            try:
                client.load_file(settings.CONFIG_PATH)
            except ConfigurationError as e:
                logger.error(f"Failed to load flag configuration, serving fallbacks: {e}")
        _client = client
    return _client


def reset_feature_client() -> None:
    """Tear down the process-wide client."""
    global _client
    if _client is not None:
        _client.teardown()
    _client = None


def is_enabled(flag_key: str, context: Optional[EvaluationContext] = None) -> bool:
    """Check if a feature flag is enabled (convenience function)."""
    return get_feature_client().is_enabled(flag_key, context)


__all__ = [
    "FallbackValue",
    "FeatureFlagClient",
    "get_feature_client",
    "is_enabled",
    "reset_feature_client",
]
