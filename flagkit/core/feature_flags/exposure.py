"""Exposure tracking for experiments and rollouts.

Records that a subject was shown a flag decision and notifies registered
sinks. Recording never blocks evaluation: the dedup store is updated under a
lock and sink notification runs on a background worker.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from flagkit.core.config import get_settings
from flagkit.core.feature_flags.models import EvaluationContext, EvaluationResult, Reason
from flagkit.utils.metrics import flag_exposures_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExposureEvent:
    """Payload delivered to exposure sinks."""

    flag_key: str
    variant: Optional[str]
    subject_id: str
    enabled: bool
    reason: Reason
    is_first_exposure: bool
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "flag_key": self.flag_key,
            "variant": self.variant,
            "subject_id": self.subject_id,
            "enabled": self.enabled,
            "reason": self.reason.value,
            "is_first_exposure": self.is_first_exposure,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ExposureRecord:
    """Stored exposure for one (subject, flag, variant)."""

    flag_key: str
    variant: Optional[str]
    first_exposed_at: datetime
    last_exposed_at: datetime
    last_emitted_at: datetime
    exposure_count: int = 1


@dataclass(frozen=True)
class ExposureSummary:
    subject_id: str
    flag_count: int
    total_exposures: int
    first_seen_at: datetime
    last_seen_at: datetime
    records: Tuple[ExposureRecord, ...]


class ExposureSink(ABC):
    """Receiver of exposure events."""

    @abstractmethod
    def on_exposure(self, event: ExposureEvent) -> None:
        """Called once per non-duplicate exposure."""
        pass


class LoggingExposureSink(ExposureSink):
    """Sink that logs exposures."""

    def on_exposure(self, event: ExposureEvent) -> None:
        logger.info(
            f"Exposure: '{event.flag_key}' variant={event.variant} "
            f"subject={event.subject_id} reason={event.reason.value}"
        )


ExposureCallback = Callable[[ExposureEvent], None]

_RecordKey = Tuple[str, Optional[str]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExposureTracker:
    """Deduplicating exposure recorder.

    An exposure for the same (subject, flag, variant) is emitted at most once
    per ``dedup_window`` seconds; :meth:`reset_session` ends the window for a
    subject early. Subjects idle for a whole window are forgotten.
    """

    def __init__(
        self,
        dedup_window: Optional[float] = None,
        max_exposures_per_subject: Optional[int] = None,
        enabled: Optional[bool] = None,
        clock: Callable[[], datetime] = _utcnow,
        executor: Optional[Executor] = None,
    ):
        settings = get_settings()
        self.dedup_window = (
            settings.EXPOSURE_DEDUP_WINDOW_SECONDS if dedup_window is None else dedup_window
        )
        self.max_exposures_per_subject = (
            settings.EXPOSURE_MAX_PER_SUBJECT
            if max_exposures_per_subject is None
            else max_exposures_per_subject
        )
        self.enabled = settings.EXPOSURE_ENABLED if enabled is None else enabled
        self._clock = clock

        self._lock = threading.Lock()
        self._records: Dict[str, "OrderedDict[_RecordKey, ExposureRecord]"] = {}
        self._listeners: List[ExposureCallback] = []

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="flagkit-exposure"
        )
        self._pending: Set[Future] = set()
        self._closed = False
        self._last_pruned_at: Optional[datetime] = None

    # Registration

    def on_exposure(
        self, callback: Union[ExposureCallback, ExposureSink]
    ) -> Callable[[], None]:
        """Register a sink; returns a function that unregisters it."""
        listener = callback.on_exposure if isinstance(callback, ExposureSink) else callback
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # Recording

    def record_exposure(
        self,
        flag_key: str,
        result: EvaluationResult,
        context: EvaluationContext,
    ) -> Optional[ExposureEvent]:
        """Record an exposure.

        Returns the emitted event, or None when tracking is disabled, the
        context has no subject, or the exposure is a duplicate.
        """
        if not self.enabled or not context.has_subject:
            flag_exposures_total.labels(outcome="dropped").inc()
            return None

        subject_id = context.subject_id
        key: _RecordKey = (flag_key, result.variant)
        now = self._clock()

        with self._lock:
            if self._last_pruned_at is None:
                self._last_pruned_at = now
            elif (now - self._last_pruned_at).total_seconds() >= self.dedup_window:
                self._prune_locked(now, keep=subject_id)
            subject_records = self._records.setdefault(subject_id, OrderedDict())
            existing = subject_records.get(key)
            duplicate = (
                existing is not None
                and (now - existing.last_emitted_at).total_seconds() < self.dedup_window
            )

            if existing is None:
                record = ExposureRecord(
                    flag_key=flag_key,
                    variant=result.variant,
                    first_exposed_at=now,
                    last_exposed_at=now,
                    last_emitted_at=now,
                )
            else:
                record = replace(
                    existing,
                    last_exposed_at=now,
                    last_emitted_at=existing.last_emitted_at if duplicate else now,
                    exposure_count=existing.exposure_count + 1,
                )
            subject_records[key] = record
            subject_records.move_to_end(key)
            while len(subject_records) > self.max_exposures_per_subject:
                subject_records.popitem(last=False)

            listeners = list(self._listeners)

        if duplicate:
            flag_exposures_total.labels(outcome="deduplicated").inc()
            logger.debug(f"Duplicate exposure suppressed: '{flag_key}' for {subject_id}")
            return None

        event = ExposureEvent(
            flag_key=flag_key,
            variant=result.variant,
            subject_id=subject_id,
            enabled=result.enabled,
            reason=result.reason,
            is_first_exposure=existing is None,
            timestamp=now,
        )
        flag_exposures_total.labels(outcome="recorded").inc()
        self._dispatch(event, listeners)
        return event

    def _dispatch(self, event: ExposureEvent, listeners: List[ExposureCallback]) -> None:
        if not listeners:
            return

        with self._lock:
            if self._closed:
                logger.debug(f"Tracker closed, exposure for '{event.flag_key}' not delivered")
                return
            try:
                future = self._executor.submit(self._notify, event, listeners)
            except RuntimeError as e:
                # executor shut down underneath us
                logger.warning(
                    f"Exposure for '{event.flag_key}' not delivered: {e}",
                    extra={"flag_key": event.flag_key},
                )
                return
            self._pending.add(future)
        future.add_done_callback(self._discard_pending)

    def _discard_pending(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    @staticmethod
    def _notify(event: ExposureEvent, listeners: List[ExposureCallback]) -> None:
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Exposure listener failed for '{event.flag_key}'")

    # Queries

    def get_exposure(self, subject_id: str, flag_key: str) -> Optional[ExposureRecord]:
        """Most recent record for a subject and flag, across variants."""
        with self._lock:
            records = self._records.get(subject_id, {})
            matches = [r for (key, _), r in records.items() if key == flag_key]
        if not matches:
            return None
        return max(matches, key=lambda r: r.last_exposed_at)

    def get_exposures(self, subject_id: str) -> List[ExposureRecord]:
        with self._lock:
            return list(self._records.get(subject_id, {}).values())

    def was_exposed(self, subject_id: str, flag_key: str) -> bool:
        return self.get_exposure(subject_id, flag_key) is not None

    def exposed_subjects(self, flag_key: str) -> List[str]:
        with self._lock:
            return [
                subject_id
                for subject_id, records in self._records.items()
                if any(key == flag_key for key, _ in records)
            ]

    def summary(self, subject_id: str) -> Optional[ExposureSummary]:
        records = self.get_exposures(subject_id)
        if not records:
            return None
        return ExposureSummary(
            subject_id=subject_id,
            flag_count=len({record.flag_key for record in records}),
            total_exposures=sum(record.exposure_count for record in records),
            first_seen_at=min(record.first_exposed_at for record in records),
            last_seen_at=max(record.last_exposed_at for record in records),
            records=tuple(records),
        )

    # Lifecycle

    def reset_session(self, subject_id: str) -> None:
        """Forget a subject's exposures so the next one is emitted again."""
        with self._lock:
            self._records.pop(subject_id, None)

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def prune(self) -> int:
        """Forget subjects with no exposure inside the dedup window.

        Runs on its own from :meth:`record_exposure` once per window. Returns
        the number of subjects removed.
        """
        now = self._clock()
        with self._lock:
            return self._prune_locked(now)

    def _prune_locked(self, now: datetime, keep: Optional[str] = None) -> int:
        stale = [
            subject_id
            for subject_id, records in self._records.items()
            if subject_id != keep
            and all(
                (now - record.last_exposed_at).total_seconds() >= self.dedup_window
                for record in records.values()
            )
        ]
        for subject_id in stale:
            del self._records[subject_id]
        self._last_pruned_at = now
        if stale:
            logger.debug(f"Pruned exposure records of {len(stale)} idle subject(s)")
        return len(stale)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued notifications. Returns False on timeout."""
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def close(self) -> None:
        """Deliver queued notifications and stop the worker."""
        with self._lock:
            self._closed = True
        self.flush()
        if self._owns_executor:
            self._executor.shutdown(wait=True)

    def __enter__(self) -> "ExposureTracker":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


__all__ = [
    "ExposureCallback",
    "ExposureEvent",
    "ExposureRecord",
    "ExposureSink",
    "ExposureSummary",
    "ExposureTracker",
    "LoggingExposureSink",
]
