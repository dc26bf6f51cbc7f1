# src/tracking/progress.py - v2
"""Run progress: cumulative and run-scoped counters, rate and ETA.

Progress lines are triggered by *attempted* units (successes plus failures)
so a stretch of fast-failing units still reports at a steady cadence. Rate
and ETA use this run's counts and elapsed time only, which keeps them
accurate after a resume.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable, Iterable

from pydantic import BaseModel

from vifit.core.models import Failure, RunProgress, UnitOutcome

logger = logging.getLogger(__name__)


class ProgressSnapshot(BaseModel):
    """Point-in-time view of run progress."""

    total: int
    succeeded: int
    failed: int
    remaining: int
    succeeded_this_run: int
    failed_this_run: int
    attempted_this_run: int
    elapsed_seconds: float
    attempts_per_second: float
    successes_per_second: float
    eta_seconds: float | None = None


def format_duration(seconds: float | None) -> str:
    """``3725.2`` → ``1h02m05s``; None → ``--``."""
    if seconds is None:
        return "--"
    seconds = int(round(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes:02d}m{secs:02d}s"
    if minutes:
        return f"{minutes}m{secs:02d}s"
    return f"{secs}s"


class ProgressTracker:
    """Counts outcomes and renders progress lines.

    Args:
        total: Catalog size.
        succeeded: Units already succeeded before this run (from the checkpoint).
        failed: Units already failed before this run and not being retried.
        progress_every: Attempted units between progress lines.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        total: int,
        succeeded: int = 0,
        failed: int = 0,
        progress_every: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if progress_every < 1:
            raise ValueError("progress_every must be >= 1")
        self.total = total
        self.progress = RunProgress()
        self._base_succeeded = succeeded
        self._base_failed = failed
        self._progress_every = progress_every
        self._clock = clock
        self._started = clock()
        self._last_report_at = 0
        self._reasons: Counter[str] = Counter()
        self.lines_emitted = 0

    @property
    def failures_by_reason(self) -> dict[str, int]:
        return dict(sorted(self._reasons.items()))

    @property
    def remaining(self) -> int:
        done = self._base_succeeded + self._base_failed + self.progress.attempted_this_run
        return max(self.total - done, 0)

    def record(self, outcomes: Iterable[UnitOutcome]) -> str | None:
        """Count outcomes; return (and log) a progress line when one is due."""
        for item in outcomes:
            if isinstance(item.outcome, Failure):
                self.progress.failed_this_run += 1
                self._reasons[item.outcome.reason] += 1
            else:
                self.progress.processed_this_run += 1

        attempted = self.progress.attempted_this_run
        if attempted - self._last_report_at < self._progress_every:
            return None
        self._last_report_at = attempted
        snapshot = self.snapshot()
        line = render(snapshot)
        self.lines_emitted += 1
        logger.info(line, extra={"data": snapshot.model_dump()})
        return line

    def snapshot(self) -> ProgressSnapshot:
        elapsed = max(self._clock() - self._started, 0.0)
        attempted = self.progress.attempted_this_run
        attempts_rate = attempted / elapsed if elapsed > 0 else 0.0
        success_rate = self.progress.processed_this_run / elapsed if elapsed > 0 else 0.0
        remaining = self.remaining
        eta = remaining / attempts_rate if attempts_rate > 0 else None
        return ProgressSnapshot(
            total=self.total,
            succeeded=self._base_succeeded + self.progress.processed_this_run,
            failed=self._base_failed + self.progress.failed_this_run,
            remaining=remaining,
            succeeded_this_run=self.progress.processed_this_run,
            failed_this_run=self.progress.failed_this_run,
            attempted_this_run=attempted,
            elapsed_seconds=elapsed,
            attempts_per_second=attempts_rate,
            successes_per_second=success_rate,
            eta_seconds=0.0 if remaining == 0 else eta,
        )

    def report(self) -> str:
        """Human-readable progress line."""
        return render(self.snapshot())


def render(s: ProgressSnapshot) -> str:
    """One progress line for a snapshot."""
    done = s.total - s.remaining
    pct = 100.0 * done / s.total if s.total else 100.0
    return (
        f"{done}/{s.total} ({pct:.1f}%) succeeded={s.succeeded} failed={s.failed} "
        f"remaining={s.remaining} | this run: attempted={s.attempted_this_run} "
        f"ok={s.succeeded_this_run} failed={s.failed_this_run} | "
        f"{s.attempts_per_second:.2f} units/s ({s.successes_per_second:.2f} ok/s) | "
        f"ETA {format_duration(s.eta_seconds)}"
    )
