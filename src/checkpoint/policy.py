# src/checkpoint/policy.py - v1
"""When to save: a threshold-crossing rule on successes this run.

A save is due once ``processed_this_run - last_checkpoint_mark`` reaches the
interval. An exact-multiple test (``processed % interval == 0``) never fires
when the batch size does not divide the interval, so it is not used.
"""

from __future__ import annotations

from vifit.core.models import RunProgress


class CheckpointPolicy:
    def __init__(self, interval: int) -> None:
        if interval < 1:
            raise ValueError("checkpoint interval must be >= 1")
        self.interval = interval

    def should_save(self, progress: RunProgress) -> bool:
        return progress.processed_this_run - progress.last_checkpoint_mark >= self.interval

    def mark_saved(self, progress: RunProgress) -> None:
        progress.last_checkpoint_mark = progress.processed_this_run
