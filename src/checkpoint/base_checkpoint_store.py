# src/checkpoint/base_checkpoint_store.py - v1
"""Abstract checkpoint store interface.

Backends persist only what they are handed: ``append`` writes the rows and
failures accumulated since the previous save, so its cost never depends on
how many rows the checkpoint already holds. Appends are timed and counted so
that tests and logs can observe the write cost.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence

from vifit.core.models import CheckpointState, CounterDelta, FailureRecord, FitRecord

logger = logging.getLogger(__name__)


class BaseCheckpointStore(ABC):
    """Unified interface for checkpoint storage backends."""

    def __init__(self, phase: str) -> None:
        self.phase = phase
        self.append_count = 0
        self.rows_written_last_append = 0
        self.seconds_in_appends = 0.0

    def append(
        self,
        rows: Sequence[FitRecord],
        failures: Sequence[FailureRecord],
        delta: CounterDelta,
    ) -> None:
        """Durably add new rows, failure dispositions and counter increments."""
        start = time.perf_counter()
        self._append(rows, failures, delta)
        elapsed = time.perf_counter() - start
        self.append_count += 1
        self.rows_written_last_append = len(rows)
        self.seconds_in_appends += elapsed
        logger.debug(
            "Checkpoint append #%d: %d rows, %d failures in %.3fs",
            self.append_count, len(rows), len(failures), elapsed,
        )

    def finalize(
        self,
        rows: Sequence[FitRecord] = (),
        failures: Sequence[FailureRecord] = (),
        delta: CounterDelta | None = None,
    ) -> CheckpointState:
        """Append any unsaved rows, mark the checkpoint final, return the full state."""
        delta = delta or CounterDelta()
        if rows or failures or not delta.is_empty:
            self.append(rows, failures, delta)
        self._mark_finalized()
        state = self.load()
        if state is None:
            return CheckpointState(phase=self.phase, finalized=True)
        return state

    @abstractmethod
    def load(self) -> CheckpointState | None:
        """Return the persisted state, or None if no checkpoint exists.

        Raises:
            CheckpointCorruptError: If the checkpoint cannot be read.
        """

    @abstractmethod
    def exists(self) -> bool:
        """Whether a checkpoint is present on disk."""

    @abstractmethod
    def discard(self) -> None:
        """Delete the checkpoint."""

    @abstractmethod
    def close(self) -> None:
        """Release any open handles."""

    @abstractmethod
    def _append(
        self,
        rows: Sequence[FitRecord],
        failures: Sequence[FailureRecord],
        delta: CounterDelta,
    ) -> None:
        """Backend-specific durable append."""

    @abstractmethod
    def _mark_finalized(self) -> None:
        """Record that every unit has a disposition."""
