# src/storage/base_output_writer.py - v2
"""Abstract output writer interface.

Writers serialize rows in the order given. ``write`` goes through a
temporary sibling file that is flushed, fsynced and atomically renamed over
the target, so a reader never sees a partial result table.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path
from typing import IO, Any

from vifit.core.errors import OutputWriteError


def atomic_write(path: Path, write_fn: Callable[[IO[str]], None]) -> None:
    """Write ``path`` via a temporary file and ``os.replace``.

    Raises:
        OutputWriteError: If any step fails; the target is left untouched.
    """
    path = Path(path)
    tmp = path.with_name(f".{path.name}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tmp.open("w", encoding="utf-8", newline="") as handle:
            write_fn(handle)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except OSError as exc:
        tmp.unlink(missing_ok=True)
        raise OutputWriteError(f"Failed to write {path}: {exc}") from exc


class BaseOutputWriter(ABC):
    """Unified interface for result table formats."""

    extension: str = ""

    def write(self, path: Path, columns: Sequence[str], rows: Iterable[Mapping[str, Any]]) -> int:
        """Atomically write ``rows`` to ``path``; return the row count."""
        count = 0

        def _write(handle: IO[str]) -> None:
            nonlocal count
            count = self.serialize(handle, columns, rows)

        atomic_write(Path(path), _write)
        return count

    @abstractmethod
    def serialize(
        self, handle: IO[str], columns: Sequence[str], rows: Iterable[Mapping[str, Any]]
    ) -> int:
        """Write rows to an open text handle; return the row count."""

    @abstractmethod
    def read(self, path: Path) -> list[dict[str, Any]]:
        """Read rows back."""
