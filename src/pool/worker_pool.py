# src/pool/worker_pool.py - v2
"""Bounded process pool that runs one fit per work unit.

Each worker process builds its own input slice provider through the
``provider_factory`` it receives at start-up; nothing mutable is inherited
from the parent. Everything a worker needs (fit function, provider factory,
fit parameters, expected output columns) is passed explicitly as initializer
arguments.

An exception raised while fitting one unit becomes a ``Failure`` for that
unit only, and so does a unit whose fit kills its worker process. A
failure of the dispatch mechanism itself, including a pool that cannot be
restarted, is raised as ``BatchDispatchError`` so that the orchestrator can
rerun the batch in-process.
"""

from __future__ import annotations

import logging
import multiprocessing
import os
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from dataclasses import dataclass
from typing import Any, Protocol

from vifit.core.errors import BatchDispatchError
from vifit.core.models import Batch, Failure, Success, UnitOutcome, WorkUnit

logger = logging.getLogger(__name__)

BLAS_ENV_VARS = (
    "OMP_NUM_THREADS",
    "OPENBLAS_NUM_THREADS",
    "MKL_NUM_THREADS",
    "VECLIB_MAXIMUM_THREADS",
    "NUMEXPR_NUM_THREADS",
)


class SliceProvider(Protocol):
    def slice_for(self, unit: WorkUnit) -> Any: ...


ProviderFactory = Callable[[], SliceProvider]
FitFunction = Callable[[Any, Mapping[str, Any]], Any]


@dataclass
class WorkerContext:
    """Per-process state: built once in each worker, never shared."""

    fit: FitFunction
    provider: SliceProvider
    params: Mapping[str, Any]
    columns: tuple[str, ...]


_WORKER: WorkerContext | None = None


def _pin_blas_threads(n_threads: int) -> None:
    for var in BLAS_ENV_VARS:
        os.environ.setdefault(var, str(n_threads))


def _init_worker(
    fit: FitFunction,
    provider_factory: ProviderFactory,
    params: Mapping[str, Any],
    columns: Sequence[str],
    blas_threads: int,
) -> None:
    """Process-pool initializer."""
    global _WORKER
    _pin_blas_threads(blas_threads)
    _WORKER = WorkerContext(
        fit=fit, provider=provider_factory(), params=dict(params), columns=tuple(columns),
    )


def _run_in_worker(unit: WorkUnit) -> UnitOutcome:
    if _WORKER is None:
        raise RuntimeError("Worker context not initialized")
    return run_unit(_WORKER, unit)


def _ping() -> bool:
    if _WORKER is None:
        raise RuntimeError("Worker context not initialized")
    return True


def run_unit(ctx: WorkerContext, unit: WorkUnit) -> UnitOutcome:
    """Fit one unit; never raises for per-unit problems."""
    try:
        input_slice = ctx.provider.slice_for(unit)
        if input_slice is None:
            outcome: Success | Failure = Failure(reason="insufficient_data", detail="no observations")
        else:
            outcome = ctx.fit(input_slice, ctx.params)
    except Exception as exc:
        logger.debug("Fit raised for %s: %s", unit.token, exc)
        outcome = Failure(reason="numerical_error", detail=f"{type(exc).__name__}: {exc}")

    if isinstance(outcome, Success):
        missing = [c for c in ctx.columns if c not in outcome.values]
        if missing:
            outcome = Failure(reason="numerical_error", detail=f"result missing columns {missing}")
    elif not isinstance(outcome, Failure):
        outcome = Failure(
            reason="numerical_error", detail=f"fit returned {type(outcome).__name__}",
        )
    return UnitOutcome(unit=unit, outcome=outcome)


class WorkerPool:
    """Process pool for one wave of work; use as a context manager.

    With ``n_workers <= 1`` every batch runs in-process.
    """

    def __init__(
        self,
        fit: FitFunction,
        provider_factory: ProviderFactory,
        params: Mapping[str, Any],
        columns: Sequence[str] = (),
        n_workers: int = 4,
        blas_threads: int = 1,
        start_method: str | None = None,
    ) -> None:
        self._fit = fit
        self._provider_factory = provider_factory
        self._params = dict(params)
        self._columns = tuple(columns)
        self._n_workers = n_workers
        self._blas_threads = blas_threads
        self._start_method = start_method
        self._executor: ProcessPoolExecutor | None = None
        self._local: WorkerContext | None = None

    @property
    def parallel(self) -> bool:
        return self._n_workers > 1

    def __enter__(self) -> WorkerPool:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def start(self) -> None:
        if not self.parallel or self._executor is not None:
            return
        mp_context = multiprocessing.get_context(self._start_method) if self._start_method else None
        self._executor = ProcessPoolExecutor(
            max_workers=self._n_workers,
            mp_context=mp_context,
            initializer=_init_worker,
            initargs=(
                self._fit, self._provider_factory, self._params, self._columns, self._blas_threads,
            ),
        )
        logger.debug("Worker pool started (%d workers)", self._n_workers)

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None
            logger.debug("Worker pool shut down")

    def reset(self) -> None:
        """Replace the executor, e.g. after a broken pool."""
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        self.start()

    def run_batch(self, batch: Batch) -> list[UnitOutcome]:
        """Run every unit of ``batch`` and block until all have an outcome.

        A worker process that dies takes every unit still in flight down
        with it. Those units are rerun one at a time on a fresh pool; the
        unit that kills its worker again gets a ``Failure``.

        Raises:
            BatchDispatchError: If the pool fails for any other reason or
                cannot be restarted.
        """
        if self._executor is None:
            return self.run_sequential(batch)
        outcomes: dict[str, UnitOutcome] = {}
        suspects: list[WorkUnit] = []
        try:
            futures = [(unit, self._executor.submit(_run_in_worker, unit)) for unit in batch.units]
            for unit, future in futures:
                try:
                    outcomes[unit.token] = future.result()
                except BrokenProcessPool:
                    suspects.append(unit)
        except BrokenProcessPool:
            suspects = [u for u in batch.units if u.token not in outcomes]
        except Exception as exc:
            raise BatchDispatchError(
                f"Batch {batch.index} ({len(batch)} units) dispatch failed: {type(exc).__name__}: {exc}"
            ) from exc

        if suspects:
            logger.warning(
                "Worker pool broke during batch %d; rerunning %d units one at a time",
                batch.index, len(suspects),
            )
            outcomes.update(self._run_isolated(batch.index, suspects))
        return [outcomes[unit.token] for unit in batch.units]

    def _run_isolated(self, batch_index: int, units: Sequence[WorkUnit]) -> dict[str, UnitOutcome]:
        outcomes: dict[str, UnitOutcome] = {}
        broken = True
        for unit in units:
            if broken:
                self._restart_checked(batch_index)
                broken = False
            assert self._executor is not None
            try:
                outcomes[unit.token] = self._executor.submit(_run_in_worker, unit).result()
            except BrokenProcessPool as exc:
                logger.warning("Worker crashed while fitting %s", unit.token)
                outcomes[unit.token] = UnitOutcome(
                    unit=unit,
                    outcome=Failure(reason="numerical_error", detail=f"worker crashed: {exc}"),
                )
                broken = True
            except Exception as exc:
                raise BatchDispatchError(
                    f"Batch {batch_index}: rerun of {unit.token} failed: {type(exc).__name__}: {exc}"
                ) from exc
        if broken:
            self._restart_checked(batch_index)
        return outcomes

    def _restart_checked(self, batch_index: int) -> None:
        """Replace the executor and make sure a worker can start.

        Raises:
            BatchDispatchError: If a fresh worker cannot be initialized.
        """
        self.reset()
        assert self._executor is not None
        try:
            self._executor.submit(_ping).result()
        except Exception as exc:
            self.shutdown()
            raise BatchDispatchError(
                f"Batch {batch_index}: worker pool cannot be restarted: {type(exc).__name__}: {exc}"
            ) from exc

    def run_sequential(self, batch: Batch) -> list[UnitOutcome]:
        """Run ``batch`` in the calling process."""
        ctx = self._local_context()
        return [run_unit(ctx, unit) for unit in batch.units]

    def _local_context(self) -> WorkerContext:
        if self._local is None:
            self._local = WorkerContext(
                fit=self._fit,
                provider=self._provider_factory(),
                params=self._params,
                columns=self._columns,
            )
        return self._local
