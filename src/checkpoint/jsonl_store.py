# src/checkpoint/jsonl_store.py - v1
"""JSON Lines checkpoint store (CHECKPOINT_BACKEND=jsonl).

Layout under the checkpoint directory::

    rows.jsonl      one FitRecord per line, append-only
    failures.jsonl  one FailureRecord per line, later lines win
    meta.json       counters plus the committed byte length of each file

``meta.json`` is replaced atomically after the data files are fsynced, so it
is the commit point: bytes past the committed length belong to an append
that never completed and are ignored on load and truncated on the next
append.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from vifit.checkpoint.base_checkpoint_store import BaseCheckpointStore
from vifit.core.errors import CheckpointCorruptError
from vifit.core.models import (
    CHECKPOINT_SCHEMA_VERSION,
    CheckpointState,
    CounterDelta,
    FailureRecord,
    FitRecord,
)

logger = logging.getLogger(__name__)

_ROWS = "rows.jsonl"
_FAILURES = "failures.jsonl"
_META = "meta.json"


class JsonlCheckpointStore(BaseCheckpointStore):
    """Directory of append-only JSON Lines files."""

    def __init__(self, checkpoint_dir: Path | str, phase: str) -> None:
        super().__init__(phase)
        self._root = Path(checkpoint_dir).expanduser()

    @property
    def path(self) -> Path:
        return self._root

    def exists(self) -> bool:
        return (self._root / _META).exists()

    def _read_meta(self) -> dict[str, Any]:
        try:
            return json.loads((self._root / _META).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise CheckpointCorruptError(f"Unreadable checkpoint meta in {self._root}: {exc}") from exc

    def _committed_lines(self, name: str, length: int) -> list[bytes]:
        path = self._root / name
        if length == 0:
            return []
        try:
            with path.open("rb") as handle:
                data = handle.read(length)
        except OSError as exc:
            raise CheckpointCorruptError(f"Unreadable checkpoint file {path}: {exc}") from exc
        if len(data) < length:
            raise CheckpointCorruptError(
                f"{path} is shorter than its committed length ({len(data)} < {length})"
            )
        return [line for line in data.splitlines() if line.strip()]

    def load(self) -> CheckpointState | None:
        if not self.exists():
            return None
        meta = self._read_meta()
        version = meta.get("schema_version")
        if version != CHECKPOINT_SCHEMA_VERSION:
            raise CheckpointCorruptError(
                f"Checkpoint {self._root} has unsupported schema version {version!r}"
            )
        try:
            rows = [
                FitRecord.model_validate_json(line)
                for line in self._committed_lines(_ROWS, int(meta["rows_bytes"]))
            ]
            failures: dict[str, FailureRecord] = {}
            for line in self._committed_lines(_FAILURES, int(meta["failures_bytes"])):
                record = FailureRecord.model_validate_json(line)
                failures[record.token] = record
            return CheckpointState(
                schema_version=version,
                phase=meta["phase"],
                rows=rows,
                failures=failures,
                attempted_count=meta["attempted_count"],
                succeeded_count=meta["succeeded_count"],
                failed_count=meta["failed_count"],
                last_saved_at=meta["last_saved_at"],
                finalized=meta.get("finalized", False),
            )
        except (KeyError, ValueError, ValidationError) as exc:
            raise CheckpointCorruptError(f"Malformed checkpoint {self._root}: {exc}") from exc

    def _initial_meta(self) -> dict[str, Any]:
        return {
            "schema_version": CHECKPOINT_SCHEMA_VERSION,
            "phase": self.phase,
            "attempted_count": 0,
            "succeeded_count": 0,
            "failed_count": 0,
            "last_saved_at": 0,
            "rows_bytes": 0,
            "failures_bytes": 0,
            "finalized": False,
        }

    def _append_lines(self, name: str, committed: int, lines: list[str]) -> int:
        path = self._root / name
        payload = "".join(line + "\n" for line in lines).encode("utf-8")
        with path.open("ab") as handle:
            handle.truncate(committed)
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        return committed + len(payload)

    def _write_meta(self, meta: dict[str, Any]) -> None:
        target = self._root / _META
        tmp = target.with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as handle:
            json.dump(meta, handle, sort_keys=True)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, target)

    def _append(
        self,
        rows: Sequence[FitRecord],
        failures: Sequence[FailureRecord],
        delta: CounterDelta,
    ) -> None:
        self._root.mkdir(parents=True, exist_ok=True)
        meta = self._read_meta() if self.exists() else self._initial_meta()
        meta["rows_bytes"] = self._append_lines(
            _ROWS, int(meta["rows_bytes"]), [r.model_dump_json() for r in rows]
        )
        meta["failures_bytes"] = self._append_lines(
            _FAILURES, int(meta["failures_bytes"]), [f.model_dump_json() for f in failures]
        )
        meta["attempted_count"] += delta.attempted
        meta["succeeded_count"] += delta.succeeded
        meta["failed_count"] += delta.failed
        meta["last_saved_at"] = meta["attempted_count"]
        self._write_meta(meta)

    def _mark_finalized(self) -> None:
        meta = self._read_meta() if self.exists() else self._initial_meta()
        meta["finalized"] = True
        self._root.mkdir(parents=True, exist_ok=True)
        self._write_meta(meta)

    def discard(self) -> None:
        if self._root.exists():
            shutil.rmtree(self._root)
            logger.info("Checkpoint discarded: %s", self._root)

    def close(self) -> None:
        """Nothing to release; files are opened per operation."""
