# src/pipeline/orchestrator.py - v2
"""Batch-fitting orchestrator: drives one phase to completion, resumably.

State machine::

    INIT -> LOADING_CHECKPOINT -> COMPUTING_REMAINING
         -> (no work) MERGING -> DONE
         -> (work) DISPATCHING <-> CHECKPOINTING -> MERGING -> DONE

The orchestrator is single-threaded: it dispatches one batch, waits for all
of its outcomes, feeds them to the run buffer and the progress tracker, and
saves a checkpoint whenever the threshold rule fires. Only this thread
touches the checkpoint store. A stop request is honoured between batches;
the buffer is flushed to the checkpoint before returning.

On MERGING the checkpoint rows are written to the output in catalog order,
the manifest is written, and only then is the checkpoint discarded. A crash
between the output write and the discard is safe: the next run finds a
finalized checkpoint (or a completed manifest) and performs no attempts.
"""

from __future__ import annotations

import logging
import math
import os
import time
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from vifit.catalog.catalog import WorkUnitCatalog, iter_batches, iter_waves
from vifit.checkpoint.base_checkpoint_store import BaseCheckpointStore
from vifit.checkpoint.buffer import RunBuffer
from vifit.checkpoint.policy import CheckpointPolicy
from vifit.config.settings import Settings
from vifit.core.errors import (
    BatchDispatchError,
    CatalogError,
    CheckpointMismatchError,
    OutputWriteError,
)
from vifit.core.models import Batch, CheckpointState, RunSummary, UnitOutcome, WorkUnit
from vifit.fitting.phases import PhaseSpec
from vifit.logging.context import clear_context, set_run_context, set_wave_context
from vifit.pool.worker_pool import ProviderFactory, WorkerPool
from vifit.storage import layout
from vifit.storage.base_output_writer import BaseOutputWriter
from vifit.storage.reader import load_manifest
from vifit.storage.run_manager import create_manifest, finalize_manifest, generate_run_id, write_manifest
from vifit.storage.writer_factory import create_output_writer
from vifit.tracking.progress import ProgressTracker, format_duration

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    INIT = "init"
    LOADING_CHECKPOINT = "loading_checkpoint"
    COMPUTING_REMAINING = "computing_remaining"
    DISPATCHING = "dispatching"
    CHECKPOINTING = "checkpointing"
    MERGING = "merging"
    DONE = "done"


class Orchestrator:
    """Top-level driver for one phase.

    Args:
        phase: Phase definition (unit kind, output columns, fit function).
        catalog: Every work unit of the phase.
        store: Checkpoint store for the phase.
        provider_factory: Picklable callable building an input slice
            provider; called once in every worker process.
        settings: Run parameters (batching, checkpointing, pool, output).
        output_path: Final result table; defaults to the standard layout.
        writer: Output writer; defaults to ``settings.output_format``.
        stop_requested: Polled between batches; True stops the run.
        pool_factory: Builds the worker pool of each wave.
        clock: Monotonic time source for progress and elapsed time.
    """

    def __init__(
        self,
        phase: PhaseSpec,
        catalog: WorkUnitCatalog,
        store: BaseCheckpointStore,
        provider_factory: ProviderFactory,
        settings: Settings,
        output_path: Path | None = None,
        writer: BaseOutputWriter | None = None,
        stop_requested: Callable[[], bool] | None = None,
        pool_factory: Callable[..., WorkerPool] = WorkerPool,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._phase = phase
        self._catalog = catalog
        self._store = store
        self._provider_factory = provider_factory
        self._settings = settings
        self._params: Mapping[str, Any] = settings.fit_params()
        self._output_path = Path(
            output_path or layout.output_path(settings.output_dir, phase.name, settings.output_format)
        )
        self._writer = writer or create_output_writer(settings.output_format)
        self._stop_requested = stop_requested or (lambda: False)
        self._pool_factory = pool_factory
        self._clock = clock
        self._policy = CheckpointPolicy(settings.checkpoint_interval)

        self.state = RunState.INIT
        self.transitions: list[RunState] = [RunState.INIT]
        self.checkpoint_saves = 0
        self.sequential_fallbacks = 0
        self.tracker: ProgressTracker | None = None

    @property
    def output_path(self) -> Path:
        return self._output_path

    def _transition(self, new_state: RunState) -> None:
        if new_state is not self.state:
            logger.debug("State %s -> %s", self.state.value, new_state.value)
            self.state = new_state
            self.transitions.append(new_state)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self) -> RunSummary:
        """Drive the phase to completion (or to a requested stop).

        Raises:
            FatalRunError: Catalog empty, output not writable, checkpoint
                corrupt or mismatched. Checkpoint state is left untouched.
        """
        started_at = datetime.now(timezone.utc)
        start = self._clock()
        run_id = generate_run_id(started_at)
        set_run_context(run_id, self._phase.name)
        try:
            return self._run(run_id, started_at, start)
        finally:
            self._store.close()
            clear_context()

    def _run(self, run_id: str, started_at: datetime, start: float) -> RunSummary:
        self._preflight()

        self._transition(RunState.LOADING_CHECKPOINT)
        checkpoint = self._store.load()
        if checkpoint is not None:
            self._validate_checkpoint(checkpoint)
            logger.info(
                "Resuming from checkpoint: %d rows, %d failed units, %d attempts recorded%s",
                len(checkpoint.rows), len(checkpoint.failures), checkpoint.attempted_count,
                " (finalized)" if checkpoint.finalized else "",
            )
        else:
            done = self._completed_summary(started_at)
            if done is not None:
                self._transition(RunState.DONE)
                return done

        self._transition(RunState.COMPUTING_REMAINING)
        retry_failed = self._settings.retry_failed_on_resume
        all_units = self._catalog.enumerate_all()
        if checkpoint is None:
            pending = all_units
            done_succeeded, done_failed = 0, 0
            seen: set[str] = set()
        elif checkpoint.finalized:
            pending = []
            done_succeeded = len(checkpoint.succeeded_tokens())
            done_failed = len(checkpoint.failed_tokens())
            seen = checkpoint.completed_tokens(include_failed=True)
        else:
            seen = checkpoint.completed_tokens(include_failed=not retry_failed)
            pending = WorkUnitCatalog.remaining(all_units, seen)
            done_succeeded = len(checkpoint.succeeded_tokens())
            done_failed = 0 if retry_failed else len(checkpoint.failed_tokens())

        logger.info(
            "Phase %s: %d units total, %d queued (batch_size=%d, workers=%d, checkpoint_interval=%d)",
            self._phase.name, len(self._catalog), len(pending),
            self._settings.batch_size, self._settings.n_workers, self._settings.checkpoint_interval,
        )

        self.tracker = ProgressTracker(
            total=len(self._catalog),
            succeeded=done_succeeded,
            failed=done_failed,
            progress_every=self._settings.progress_every,
            clock=self._clock,
        )
        buffer = RunBuffer(seen)

        stopped = self._dispatch(pending, buffer) if pending else False
        if stopped:
            return self._interrupt(run_id, buffer, started_at, start, len(pending))

        self._transition(RunState.MERGING)
        final = self._store.finalize(*buffer.flush())
        summary = self._merge(run_id, final, started_at, start, len(pending))
        self._transition(RunState.DONE)
        return summary

    # ------------------------------------------------------------------
    # Preflight / validation
    # ------------------------------------------------------------------

    def _preflight(self) -> None:
        if len(self._catalog) == 0:
            raise CatalogError(f"Empty catalog for phase {self._phase.name!r}")
        directory = self._output_path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OutputWriteError(f"Cannot create output directory {directory}: {exc}") from exc
        if not os.access(directory, os.W_OK):
            raise OutputWriteError(f"Output directory is not writable: {directory}")

    def _validate_checkpoint(self, checkpoint: CheckpointState) -> None:
        if checkpoint.phase != self._phase.name:
            raise CheckpointMismatchError(
                f"Checkpoint belongs to phase {checkpoint.phase!r}, not {self._phase.name!r}"
            )
        tokens = [r.token for r in checkpoint.rows] + list(checkpoint.failures)
        unknown = self._catalog.unknown_tokens(tokens)
        if unknown:
            raise CheckpointMismatchError(
                f"Checkpoint holds {len(unknown)} units outside the catalog (e.g. {unknown[0]})"
            )
        if len(set(tokens[:len(checkpoint.rows)])) != len(checkpoint.rows):
            raise CheckpointMismatchError("Checkpoint holds duplicate result rows")

    def _completed_summary(self, started_at: datetime) -> RunSummary | None:
        """Summary for an output already completed by an earlier run, if any."""
        manifest = load_manifest(self._output_path)
        if (
            manifest is None
            or manifest.status != "completed"
            or manifest.phase != self._phase.name
            or manifest.total != len(self._catalog)
            or not self._output_path.exists()
        ):
            return None
        logger.info("Output already complete: %s (no units attempted)", self._output_path)
        return RunSummary(
            phase=self._phase.name,
            status="already_complete",
            total=manifest.total,
            succeeded=manifest.succeeded,
            failed=manifest.failed,
            remaining=0,
            output_path=str(self._output_path),
            failures_by_reason=manifest.failures_by_reason,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch(self, pending: Sequence[WorkUnit], buffer: RunBuffer) -> bool:
        """Run all pending units; return True if stopped early."""
        assert self.tracker is not None
        settings = self._settings
        batch_index = 0
        for wave_no, wave in enumerate(iter_waves(pending, settings.pool_recycle_units), start=1):
            set_wave_context(wave_no)
            logger.debug("Wave %d: %d units", wave_no, len(wave))
            with self._pool_factory(
                fit=self._phase.fit,
                provider_factory=self._provider_factory,
                params=self._params,
                columns=self._phase.columns,
                n_workers=settings.n_workers,
                blas_threads=settings.blas_threads_per_worker,
                start_method=settings.start_method,
            ) as pool:
                for batch in iter_batches(wave, settings.batch_size, start_index=batch_index):
                    if self._stop_requested():
                        logger.warning("Stop requested; not dispatching batch %d", batch.index)
                        return True
                    self._transition(RunState.DISPATCHING)
                    outcomes = self._execute(pool, batch)
                    buffer.add(outcomes)
                    self.tracker.record(outcomes)
                    if self._policy.should_save(self.tracker.progress):
                        self._transition(RunState.CHECKPOINTING)
                        self._save(buffer)
                        self._policy.mark_saved(self.tracker.progress)
            batch_index += math.ceil(len(wave) / settings.batch_size)
        return False

    def _execute(self, pool: WorkerPool, batch: Batch) -> list[UnitOutcome]:
        try:
            outcomes = pool.run_batch(batch)
            _check_outcomes(batch, outcomes)
            return outcomes
        except BatchDispatchError as exc:
            self.sequential_fallbacks += 1
            logger.warning("%s; running batch %d in-process", exc, batch.index)
            outcomes = pool.run_sequential(batch)
            pool.reset()
            return outcomes

    def _save(self, buffer: RunBuffer) -> None:
        if buffer.is_empty:
            return
        rows, failures, delta = buffer.flush()
        self._store.append(rows, failures, delta)
        self.checkpoint_saves += 1
        logger.info(
            "Checkpoint #%d saved: +%d rows, +%d failures (%.3fs spent in checkpoint writes so far)",
            self.checkpoint_saves, len(rows), len(failures), self._store.seconds_in_appends,
        )

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _interrupt(
        self, run_id: str, buffer: RunBuffer, started_at: datetime, start: float, queued: int
    ) -> RunSummary:
        assert self.tracker is not None
        self._transition(RunState.CHECKPOINTING)
        self._save(buffer)
        checkpoint = self._store.load()
        succeeded = len(checkpoint.succeeded_tokens()) if checkpoint else 0
        failed_tokens = checkpoint.failed_tokens() if checkpoint else set()
        failures = {t: checkpoint.failures[t].reason for t in failed_tokens} if checkpoint else {}

        manifest = create_manifest(
            run_id, self._phase.name, self._output_path,
            self._settings.output_format, list(self._phase.output_columns),
        )
        finalize_manifest(
            manifest, "interrupted", len(self._catalog), succeeded, failures, _by_reason(failures),
        )
        write_manifest(self._output_path, manifest)
        summary = self._summary(
            "interrupted", succeeded, failures, started_at, start, queued, output=None,
        )
        logger.warning(
            "Run interrupted: %d/%d units have a disposition; resume to continue",
            summary.succeeded + summary.failed, summary.total,
        )
        return summary

    def _merge(
        self, run_id: str, final: CheckpointState, started_at: datetime, start: float, queued: int
    ) -> RunSummary:
        rows = sorted(final.rows, key=lambda r: self._catalog.position(r.token))
        failures = {t: final.failures[t].reason for t in final.failed_tokens()}

        count = self._writer.write(
            self._output_path, list(self._phase.output_columns), (r.to_row() for r in rows),
        )
        manifest = create_manifest(
            run_id, self._phase.name, self._output_path,
            self._settings.output_format, list(self._phase.output_columns),
        )
        finalize_manifest(
            manifest, "completed", len(self._catalog), count, failures, _by_reason(failures),
        )
        write_manifest(self._output_path, manifest)
        self._store.discard()

        summary = self._summary(
            "completed", count, failures, started_at, start, queued, output=str(self._output_path),
        )
        logger.info(
            "Run complete: succeeded=%d failed=%d total=%d remaining=%d elapsed=%s -> %s",
            summary.succeeded, summary.failed, summary.total, summary.remaining,
            format_duration(summary.elapsed_seconds), self._output_path,
        )
        return summary

    def _summary(
        self,
        status: str,
        succeeded: int,
        failures: dict[str, str],
        started_at: datetime,
        start: float,
        queued: int,
        output: str | None,
    ) -> RunSummary:
        total = len(self._catalog)
        return RunSummary(
            phase=self._phase.name,
            status=status,  # type: ignore[arg-type]
            total=total,
            succeeded=succeeded,
            failed=len(failures),
            remaining=total - succeeded - len(failures),
            queued_this_run=queued,
            attempted_this_run=self.tracker.progress.attempted_this_run if self.tracker else 0,
            checkpoint_saves=self.checkpoint_saves,
            sequential_fallbacks=self.sequential_fallbacks,
            elapsed_seconds=self._clock() - start,
            output_path=output,
            failures_by_reason=_by_reason(failures),
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )


def _check_outcomes(batch: Batch, outcomes: Sequence[UnitOutcome]) -> None:
    expected = sorted(u.token for u in batch.units)
    got = sorted(o.unit.token for o in outcomes)
    if expected != got:
        raise BatchDispatchError(
            f"Batch {batch.index} returned outcomes for {len(got)} units, expected {len(expected)}"
        )


def _by_reason(failures: Mapping[str, str]) -> dict[str, int]:
    return dict(sorted(Counter(failures.values()).items()))
