# src/checkpoint/buffer.py - v1
"""Run-scoped accumulator of outcomes not yet written to the checkpoint."""

from __future__ import annotations

from collections.abc import Iterable

from vifit.core.errors import DuplicateUnitError
from vifit.core.models import CounterDelta, FailureRecord, FitRecord, Success, UnitOutcome


class RunBuffer:
    """Holds rows and failures since the last save.

    ``flush`` hands the contents over and clears the buffer, so each save
    writes only what arrived since the previous one. Every token seen in
    this run (plus tokens already checkpointed) is remembered to reject
    duplicates.
    """

    def __init__(self, checkpointed_tokens: Iterable[str] = ()) -> None:
        self._rows: list[FitRecord] = []
        self._failures: dict[str, FailureRecord] = {}
        self._delta = CounterDelta()
        self._seen: set[str] = set(checkpointed_tokens)

    def __len__(self) -> int:
        return len(self._rows) + len(self._failures)

    @property
    def is_empty(self) -> bool:
        return self._delta.is_empty

    @property
    def rows(self) -> list[FitRecord]:
        return list(self._rows)

    def add(self, outcomes: Iterable[UnitOutcome]) -> None:
        """Buffer outcomes.

        Raises:
            DuplicateUnitError: If a unit already has a result in this run
                or in the checkpoint.
        """
        for item in outcomes:
            token = item.unit.token
            if token in self._seen:
                raise DuplicateUnitError(f"Unit {token} produced a second result")
            self._seen.add(token)
            self._delta.attempted += 1
            if isinstance(item.outcome, Success):
                self._rows.append(FitRecord(unit=item.unit, values=item.outcome.values))
                self._delta.succeeded += 1
            else:
                self._failures[token] = FailureRecord(
                    token=token, reason=item.outcome.reason, detail=item.outcome.detail
                )
                self._delta.failed += 1

    def flush(self) -> tuple[list[FitRecord], list[FailureRecord], CounterDelta]:
        """Return buffered rows, failures and counter increments, then clear."""
        rows, failures, delta = self._rows, list(self._failures.values()), self._delta
        self._rows = []
        self._failures = {}
        self._delta = CounterDelta()
        return rows, failures, delta
