"""Tests for exposure tracking."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from flagkit.core.feature_flags.exposure import (
    ExposureEvent,
    ExposureSink,
    ExposureTracker,
    LoggingExposureSink,
)
from flagkit.core.feature_flags.models import EvaluationContext, EvaluationResult, Reason


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tracker(clock):
    tracker = ExposureTracker(dedup_window=60, max_exposures_per_subject=10, clock=clock)
    yield tracker
    tracker.close()


def result(flag_key="checkout-experiment", variant="wizard", enabled=True):
    reason = Reason.VARIANT_ASSIGNED if variant else Reason.DEFAULT
    return EvaluationResult(flag_key=flag_key, enabled=enabled, reason=reason, variant=variant)


def ctx(subject_id="user-42"):
    return EvaluationContext(subject_id=subject_id)


class TestRecording:
    """Tests for record_exposure."""

    def test_first_exposure(self, tracker, clock):
        """Test the first exposure is emitted and flagged as first."""
        event = tracker.record_exposure("checkout-experiment", result(), ctx())
        assert isinstance(event, ExposureEvent)
        assert event.is_first_exposure is True
        assert event.variant == "wizard"
        assert event.subject_id == "user-42"
        assert event.timestamp == clock.now

    def test_duplicate_suppressed(self, tracker):
        """Test repeats inside the window are not emitted but are counted."""
        tracker.record_exposure("checkout-experiment", result(), ctx())
        assert tracker.record_exposure("checkout-experiment", result(), ctx()) is None
        assert tracker.get_exposure("user-42", "checkout-experiment").exposure_count == 2

    def test_window_expiry(self, tracker, clock):
        """Test an exposure is re-emitted once the window passes."""
        tracker.record_exposure("checkout-experiment", result(), ctx())
        clock.advance(30)
        assert tracker.record_exposure("checkout-experiment", result(), ctx()) is None
        clock.advance(31)
        event = tracker.record_exposure("checkout-experiment", result(), ctx())
        assert event is not None
        assert event.is_first_exposure is False

    def test_window_from_last_emission(self, tracker, clock):
        """Test suppressed repeats do not extend the window."""
        tracker.record_exposure("checkout-experiment", result(), ctx())
        for _ in range(5):
            clock.advance(20)
            tracker.record_exposure("checkout-experiment", result(), ctx())
        record = tracker.get_exposure("user-42", "checkout-experiment")
        assert record.last_emitted_at == clock.now - timedelta(seconds=40)

    def test_variant_change_is_new_exposure(self, tracker):
        """Test a different variant for the same flag is emitted."""
        tracker.record_exposure("checkout-experiment", result(variant="wizard"), ctx())
        event = tracker.record_exposure("checkout-experiment", result(variant="control"), ctx())
        assert event is not None
        assert event.is_first_exposure is True

    def test_no_subject_dropped(self, tracker):
        """Test exposures without a subject are not recorded."""
        assert tracker.record_exposure("f", result(), EvaluationContext()) is None
        assert tracker.exposed_subjects("f") == []

    def test_disabled_tracking(self, clock):
        """Test a disabled tracker records nothing."""
        with ExposureTracker(enabled=False, clock=clock) as tracker:
            assert tracker.record_exposure("f", result(), ctx()) is None
            assert tracker.was_exposed("user-42", "f") is False

    def test_per_subject_cap(self, tracker):
        """Test the oldest records are evicted beyond the cap."""
        for i in range(15):
            tracker.record_exposure(f"flag-{i}", result(flag_key=f"flag-{i}"), ctx())
        records = tracker.get_exposures("user-42")
        assert len(records) == 10
        assert not tracker.was_exposed("user-42", "flag-0")
        assert tracker.was_exposed("user-42", "flag-14")

    def test_settings_defaults(self, monkeypatch):
        """Test defaults come from FLAGKIT_ settings."""
        monkeypatch.setenv("FLAGKIT_EXPOSURE_DEDUP_WINDOW_SECONDS", "5")
        monkeypatch.setenv("FLAGKIT_EXPOSURE_MAX_PER_SUBJECT", "3")
        with ExposureTracker() as tracker:
            assert tracker.dedup_window == 5
            assert tracker.max_exposures_per_subject == 3


class TestSinks:
    """Tests for exposure listeners."""

    def test_callback_notified(self, tracker):
        """Test callbacks receive emitted events."""
        received = []
        tracker.on_exposure(received.append)
        tracker.record_exposure("checkout-experiment", result(), ctx())
        tracker.record_exposure("checkout-experiment", result(), ctx())
        assert tracker.flush(timeout=5)
        assert len(received) == 1
        assert received[0].flag_key == "checkout-experiment"

    def test_sink_object(self, tracker):
        """Test ExposureSink subclasses can be registered."""

        class CollectingSink(ExposureSink):
            def __init__(self):
                self.events = []

            def on_exposure(self, event):
                self.events.append(event)

        sink = CollectingSink()
        tracker.on_exposure(sink)
        tracker.record_exposure("f", result(flag_key="f"), ctx())
        tracker.flush(timeout=5)
        assert [e.flag_key for e in sink.events] == ["f"]

    def test_unsubscribe(self, tracker):
        """Test an unsubscribed callback is no longer notified."""
        received = []
        unsubscribe = tracker.on_exposure(received.append)
        unsubscribe()
        tracker.record_exposure("f", result(flag_key="f"), ctx())
        tracker.flush(timeout=5)
        assert received == []

    def test_failing_listener_isolated(self, tracker, caplog):
        """Test a raising listener is logged and others still run."""
        received = []

        def broken(event):
            raise RuntimeError("sink down")

        tracker.on_exposure(broken)
        tracker.on_exposure(received.append)
        with caplog.at_level(logging.ERROR):
            event = tracker.record_exposure("f", result(flag_key="f"), ctx())
            tracker.flush(timeout=5)
        assert event is not None
        assert len(received) == 1
        assert "Exposure listener failed" in caplog.text

    def test_logging_sink(self, tracker, caplog):
        """Test the logging sink writes one line per exposure."""
        tracker.on_exposure(LoggingExposureSink())
        with caplog.at_level(logging.INFO):
            tracker.record_exposure("f", result(flag_key="f"), ctx())
            tracker.flush(timeout=5)
        assert "Exposure: 'f'" in caplog.text

    def test_closed_tracker_does_not_deliver(self, clock):
        """Test recording after close still returns the event without delivery."""
        tracker = ExposureTracker(clock=clock)
        received = []
        tracker.on_exposure(received.append)
        tracker.close()
        assert tracker.record_exposure("f", result(flag_key="f"), ctx()) is not None
        assert received == []

    def test_shut_down_executor_does_not_raise(self, clock, caplog):
        """Test an executor shut down underneath the tracker only drops delivery."""
        executor = ThreadPoolExecutor(max_workers=1)
        tracker = ExposureTracker(clock=clock, executor=executor)
        received = []
        tracker.on_exposure(received.append)
        executor.shutdown()
        with caplog.at_level(logging.WARNING):
            event = tracker.record_exposure("f", result(flag_key="f"), ctx())
        assert event is not None
        assert received == []
        assert "not delivered" in caplog.text
        tracker.close()


class TestQueries:
    """Tests for exposure queries."""

    def test_summary(self, tracker, clock):
        """Test summary aggregates a subject's records."""
        tracker.record_exposure("a", result(flag_key="a"), ctx())
        clock.advance(10)
        tracker.record_exposure("b", result(flag_key="b"), ctx())
        tracker.record_exposure("b", result(flag_key="b"), ctx())
        summary = tracker.summary("user-42")
        assert summary.flag_count == 2
        assert summary.total_exposures == 3
        assert summary.last_seen_at - summary.first_seen_at == timedelta(seconds=10)
        assert tracker.summary("nobody") is None

    def test_exposed_subjects(self, tracker):
        """Test listing subjects exposed to a flag."""
        tracker.record_exposure("f", result(flag_key="f"), ctx("u1"))
        tracker.record_exposure("f", result(flag_key="f"), ctx("u2"))
        tracker.record_exposure("g", result(flag_key="g"), ctx("u3"))
        assert sorted(tracker.exposed_subjects("f")) == ["u1", "u2"]

    def test_reset_session(self, tracker):
        """Test resetting a subject re-emits its next exposure."""
        tracker.record_exposure("f", result(flag_key="f"), ctx())
        tracker.reset_session("user-42")
        event = tracker.record_exposure("f", result(flag_key="f"), ctx())
        assert event is not None and event.is_first_exposure is True

    def test_clear(self, tracker):
        """Test clear forgets every subject."""
        tracker.record_exposure("f", result(flag_key="f"), ctx("u1"))
        tracker.clear()
        assert tracker.get_exposures("u1") == []

    def test_event_to_dict(self, tracker):
        """Test events serialize to plain values."""
        event = tracker.record_exposure("f", result(flag_key="f"), ctx())
        data = event.to_dict()
        assert data["reason"] == "variant-assigned"
        assert data["timestamp"].startswith("2024-01-01")


class TestPruning:
    """Tests for forgetting idle subjects."""

    def test_idle_subject_pruned(self, tracker, clock):
        """Test a subject idle for a whole window is dropped on the next record."""
        tracker.record_exposure("f", result(flag_key="f"), ctx("idle"))
        clock.advance(61)
        tracker.record_exposure("f", result(flag_key="f"), ctx("active"))
        assert tracker.get_exposures("idle") == []
        assert tracker.was_exposed("active", "f")

    def test_recent_subject_kept(self, tracker, clock):
        """Test a subject seen inside the window survives pruning."""
        tracker.record_exposure("f", result(flag_key="f"), ctx("u1"))
        clock.advance(30)
        tracker.record_exposure("f", result(flag_key="f"), ctx("u1"))
        clock.advance(31)
        tracker.record_exposure("f", result(flag_key="f"), ctx("u2"))
        assert tracker.was_exposed("u1", "f")

    def test_recording_subject_not_pruned(self, tracker, clock):
        """Test the subject being recorded keeps its history."""
        tracker.record_exposure("f", result(flag_key="f"), ctx())
        clock.advance(120)
        event = tracker.record_exposure("f", result(flag_key="f"), ctx())
        assert event.is_first_exposure is False
        assert tracker.get_exposure("user-42", "f").exposure_count == 2

    def test_prune(self, tracker, clock):
        """Test prune reports how many subjects it removed."""
        tracker.record_exposure("f", result(flag_key="f"), ctx("u1"))
        tracker.record_exposure("f", result(flag_key="f"), ctx("u2"))
        clock.advance(60)
        assert tracker.prune() == 2
        assert tracker.exposed_subjects("f") == []
        assert tracker.prune() == 0


class TestConcurrency:
    """Tests for concurrent recording."""

    def test_one_emission_under_contention(self, tracker):
        """Test concurrent duplicates emit exactly one event."""
        emitted = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            for _ in range(100):
                event = tracker.record_exposure("f", result(flag_key="f"), ctx())
                if event is not None:
                    with lock:
                        emitted.append(event)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(emitted) == 1
        assert tracker.get_exposure("user-42", "f").exposure_count == 800
