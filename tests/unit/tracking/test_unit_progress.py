# tests/unit/tracking/test_unit_progress.py - v2
"""Tests for tracking/progress.py - counters, cadence, rate and ETA."""

from __future__ import annotations

import pytest

from vifit.core.models import Failure, Success, UnitOutcome, WorkUnit
from vifit.tracking.progress import ProgressTracker, format_duration


class FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _outcomes(n_ok: int, n_fail: int, reason: str = "insufficient_data") -> list[UnitOutcome]:
    ok = [
        UnitOutcome(unit=WorkUnit(pixel_id=f"ok{i}"), outcome=Success(values={}))
        for i in range(n_ok)
    ]
    bad = [
        UnitOutcome(unit=WorkUnit(pixel_id=f"bad{i}"), outcome=Failure(reason=reason))
        for i in range(n_fail)
    ]
    return ok + bad


class TestFormatDuration:
    @pytest.mark.parametrize(
        ("seconds", "expected"),
        [(None, "--"), (0, "0s"), (59.4, "59s"), (61, "1m01s"), (3725.2, "1h02m05s")],
    )
    def test_format(self, seconds, expected):
        assert format_duration(seconds) == expected


class TestProgressTracker:
    def test_counts(self):
        tracker = ProgressTracker(total=100, clock=FakeClock())
        tracker.record(_outcomes(3, 2))
        assert tracker.progress.processed_this_run == 3
        assert tracker.progress.failed_this_run == 2
        assert tracker.progress.attempted_this_run == 5
        assert tracker.remaining == 95
        assert tracker.failures_by_reason == {"insufficient_data": 2}

    def test_cadence_follows_attempts(self):
        tracker = ProgressTracker(total=1000, progress_every=50, clock=FakeClock())
        lines = [tracker.record(_outcomes(0, 10)) for _ in range(10)]
        emitted = [line for line in lines if line is not None]
        assert len(emitted) == 2
        assert "attempted=50 ok=0 failed=50" in emitted[0]
        assert tracker.lines_emitted == 2

    def test_no_line_before_threshold(self):
        tracker = ProgressTracker(total=10, progress_every=50, clock=FakeClock())
        assert tracker.record(_outcomes(5, 4)) is None

    def test_rate_and_eta_use_this_run(self):
        clock = FakeClock()
        tracker = ProgressTracker(total=1000, succeeded=600, clock=clock)
        clock.now += 10.0
        tracker.record(_outcomes(40, 10))
        snap = tracker.snapshot()
        assert snap.succeeded == 640
        assert snap.remaining == 350
        assert snap.attempts_per_second == pytest.approx(5.0)
        assert snap.successes_per_second == pytest.approx(4.0)
        assert snap.eta_seconds == pytest.approx(70.0)

    def test_eta_unknown_without_attempts(self):
        tracker = ProgressTracker(total=10, clock=FakeClock())
        assert tracker.snapshot().eta_seconds is None
        assert "ETA --" in tracker.report()

    def test_eta_zero_when_done(self):
        clock = FakeClock()
        tracker = ProgressTracker(total=5, clock=clock)
        clock.now += 1.0
        tracker.record(_outcomes(5, 0))
        assert tracker.snapshot().eta_seconds == 0.0

    def test_resumed_failures_count_as_done(self):
        tracker = ProgressTracker(total=100, succeeded=50, failed=10, clock=FakeClock())
        assert tracker.remaining == 40
        assert tracker.report().startswith("60/100 (60.0%)")

    def test_invalid_cadence(self):
        with pytest.raises(ValueError):
            ProgressTracker(total=1, progress_every=0)

    def test_log_record_carries_counters(self, caplog):
        tracker = ProgressTracker(total=200, progress_every=50, clock=FakeClock())
        with caplog.at_level("INFO", logger="vifit.tracking.progress"):
            tracker.record(_outcomes(20, 30))
        (record,) = caplog.records
        assert record.data["attempted_this_run"] == 50
        assert record.data["failed"] == 30
        assert record.data["remaining"] == 150
