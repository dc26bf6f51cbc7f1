# src/logging/context.py - v2
"""Contextual logging support: attach run_id, phase and wave to log records."""

from __future__ import annotations

import contextvars
from dataclasses import dataclass
from typing import Any

# Set once per orchestrator run, wave updated per worker-pool generation.
_run_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "run_id", default=None
)
_phase: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "phase", default=None
)
_wave: contextvars.ContextVar[int | None] = contextvars.ContextVar(
    "wave", default=None
)


@dataclass
class LogContext:
    """Immutable snapshot of current logging context."""

    run_id: str | None = None
    phase: str | None = None
    wave: int | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return non-None fields as dict for JSON log injection."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


def get_context() -> LogContext:
    """Snapshot current context variables."""
    return LogContext(run_id=_run_id.get(), phase=_phase.get(), wave=_wave.get())


def set_run_context(run_id: str, phase: str) -> None:
    """Set run-level context (called once per orchestrator run)."""
    _run_id.set(run_id)
    _phase.set(phase)
    _wave.set(None)


def set_wave_context(wave: int | None) -> None:
    """Set the current worker-pool wave."""
    _wave.set(wave)


def clear_context() -> None:
    """Reset all context variables."""
    _run_id.set(None)
    _phase.set(None)
    _wave.set(None)
