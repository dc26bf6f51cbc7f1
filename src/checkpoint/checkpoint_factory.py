# src/checkpoint/checkpoint_factory.py - v1
"""Factory for checkpoint store instantiation."""

from __future__ import annotations

from vifit.checkpoint.base_checkpoint_store import BaseCheckpointStore
from vifit.config.settings import Settings
from vifit.storage import layout


def create_checkpoint_store(settings: Settings, phase: str | None = None) -> BaseCheckpointStore:
    """Instantiate the configured checkpoint backend.

    Args:
        settings: Application settings.
        phase: Phase name; defaults to ``settings.phase``.

    Returns:
        Configured BaseCheckpointStore implementation.

    Raises:
        ValueError: If the backend is not supported.
    """
    phase = phase or settings.phase
    backend = settings.checkpoint_backend
    path = layout.checkpoint_path(settings.output_dir, phase, backend)

    if backend == "sqlite":
        from vifit.checkpoint.sqlite_store import SqliteCheckpointStore
        return SqliteCheckpointStore(path, phase=phase)

    if backend == "jsonl":
        from vifit.checkpoint.jsonl_store import JsonlCheckpointStore
        return JsonlCheckpointStore(path, phase=phase)

    raise ValueError(f"Unsupported checkpoint backend: {backend!r}")
