# src/core/models.py - v1
"""Shared Pydantic domain models used across modules.

WorkUnit keys, per-unit outcomes, result records, batches, checkpoint state
and run counters. No module redefines these types.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

CHECKPOINT_SCHEMA_VERSION = 2

FailureReason = Literal["insufficient_data", "non_convergence", "numerical_error"]

_KEY_FIELDS = ("pixel_id", "year", "yday")
_INT_KEY_FIELDS = {"year", "yday"}


# === WORK UNITS ===


class WorkUnit(BaseModel):
    """Opaque composite key of one independent fit.

    The key doubles as the reference to the unit's input slice, which the
    input slice provider fetches lazily inside the worker.
    """

    model_config = ConfigDict(frozen=True)

    pixel_id: str | None = None
    year: int | None = None
    yday: int | None = None

    @field_validator("pixel_id")
    @classmethod
    def validate_pixel_id(cls, v: str | None) -> str | None:
        if v is not None and ("|" in v or "=" in v):
            raise ValueError("pixel_id must not contain '|' or '='")
        return v

    @property
    def token(self) -> str:
        """Stable string form used as the store key: ``pixel_id=p1|year=2015``."""
        return "|".join(f"{name}={value}" for name, value in self.as_dict().items())

    @classmethod
    def from_token(cls, token: str) -> WorkUnit:
        """Parse a token produced by ``token``."""
        fields: dict[str, Any] = {}
        for part in token.split("|"):
            name, sep, value = part.partition("=")
            if not sep or name not in _KEY_FIELDS:
                raise ValueError(f"Invalid work unit token: {token!r}")
            fields[name] = int(value) if name in _INT_KEY_FIELDS else value
        return cls(**fields)

    def as_dict(self) -> dict[str, Any]:
        """Return the non-None key fields in canonical order."""
        return {
            name: getattr(self, name)
            for name in _KEY_FIELDS
            if getattr(self, name) is not None
        }

    def sort_key(self) -> tuple[str, int, int]:
        return (
            self.pixel_id or "",
            -1 if self.year is None else self.year,
            -1 if self.yday is None else self.yday,
        )


class Batch(BaseModel):
    """Contiguous, non-overlapping slice of pending units for one dispatch."""

    index: int
    units: list[WorkUnit]

    def __len__(self) -> int:
        return len(self.units)


# === OUTCOMES ===


class Success(BaseModel):
    """Fit succeeded; ``values`` holds the phase's output columns."""

    model_config = ConfigDict(frozen=True)

    status: Literal["success"] = "success"
    values: dict[str, Any]


class Failure(BaseModel):
    """Fit failed with a classified reason."""

    model_config = ConfigDict(frozen=True)

    status: Literal["failure"] = "failure"
    reason: FailureReason
    detail: str = ""


Outcome = Annotated[Success | Failure, Field(discriminator="status")]


class UnitOutcome(BaseModel):
    """Outcome of attempting one unit."""

    model_config = ConfigDict(frozen=True)

    unit: WorkUnit
    outcome: Outcome

    @property
    def ok(self) -> bool:
        return isinstance(self.outcome, Success)


# === RESULT ROWS ===


class FitRecord(BaseModel):
    """One output row: a succeeded unit's key plus its fitted values."""

    unit: WorkUnit
    values: dict[str, Any]

    @property
    def token(self) -> str:
        return self.unit.token

    def to_row(self) -> dict[str, Any]:
        """Flatten key fields and values into a single output row."""
        row = self.unit.as_dict()
        row.update(self.values)
        return row


class FailureRecord(BaseModel):
    """Disposition of a failed unit, persisted as checkpoint metadata."""

    token: str
    reason: FailureReason
    detail: str = ""


# === CHECKPOINT STATE ===


class CounterDelta(BaseModel):
    """Counter increments accumulated since the previous save."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0

    @property
    def is_empty(self) -> bool:
        return self.attempted == 0


class CheckpointState(BaseModel):
    """Durable representation of run progress."""

    schema_version: int = CHECKPOINT_SCHEMA_VERSION
    phase: str
    rows: list[FitRecord] = Field(default_factory=list)
    failures: dict[str, FailureRecord] = Field(default_factory=dict)
    attempted_count: int = 0
    succeeded_count: int = 0
    failed_count: int = 0
    last_saved_at: int = 0
    finalized: bool = False

    def succeeded_tokens(self) -> set[str]:
        return {r.token for r in self.rows}

    def failed_tokens(self) -> set[str]:
        """Failed keys that never succeeded on a later attempt."""
        succeeded = self.succeeded_tokens()
        return {t for t in self.failures if t not in succeeded}

    def completed_tokens(self, include_failed: bool) -> set[str]:
        done = self.succeeded_tokens()
        if include_failed:
            done |= set(self.failures)
        return done


# === RUN COUNTERS / SUMMARY ===


class RunProgress(BaseModel):
    """Run-scoped counters, reset on every process invocation."""

    processed_this_run: int = 0
    failed_this_run: int = 0
    last_checkpoint_mark: int = 0

    @property
    def attempted_this_run(self) -> int:
        return self.processed_this_run + self.failed_this_run


class RunSummary(BaseModel):
    """Final report of one orchestrator invocation."""

    phase: str
    status: Literal["completed", "already_complete", "interrupted"]
    total: int
    succeeded: int
    failed: int
    remaining: int
    queued_this_run: int = 0
    attempted_this_run: int = 0
    checkpoint_saves: int = 0
    sequential_fallbacks: int = 0
    elapsed_seconds: float = 0.0
    output_path: str | None = None
    failures_by_reason: dict[str, int] = Field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None
