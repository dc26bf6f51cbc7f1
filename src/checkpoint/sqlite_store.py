# src/checkpoint/sqlite_store.py - v3
"""SQLite checkpoint store (CHECKPOINT_BACKEND=sqlite, default).

Uses stdlib sqlite3 in WAL mode. Each append is a single transaction that
inserts only the new rows and updates a handful of counter keys.

Layouts:
    v2: ``meta`` (schema_version, phase, counters, finalized), ``rows``,
        ``failures``.
    v1: ``meta`` with ``n_processed`` / ``n_failed`` only, ``rows``; no
        failure dispositions. Loaded with counters derived from those keys
        and upgraded in place on the next append.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Sequence
from pathlib import Path

from pydantic import ValidationError

from vifit.checkpoint.base_checkpoint_store import BaseCheckpointStore
from vifit.core.errors import CheckpointCorruptError, DuplicateUnitError
from vifit.core.models import (
    CHECKPOINT_SCHEMA_VERSION,
    CheckpointState,
    CounterDelta,
    FailureRecord,
    FitRecord,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS rows (
    token TEXT PRIMARY KEY,
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS failures (
    token TEXT PRIMARY KEY,
    reason TEXT NOT NULL,
    detail TEXT NOT NULL DEFAULT ''
);
"""

_COUNTER_KEYS = ("attempted_count", "succeeded_count", "failed_count", "last_saved_at")


class SqliteCheckpointStore(BaseCheckpointStore):
    """SQLite-backed checkpoint with O(delta) appends."""

    def __init__(self, db_path: Path | str, phase: str) -> None:
        super().__init__(phase)
        self._db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None

    @property
    def path(self) -> Path:
        return self._db_path

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._db_path))
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=FULL")
            self._conn.executescript(_SCHEMA)
        return self._conn

    def _meta(self) -> dict[str, str]:
        return dict(self._connection().execute("SELECT key, value FROM meta").fetchall())

    def exists(self) -> bool:
        if not self._db_path.exists():
            return False
        try:
            conn = self._connection()
            has_meta = conn.execute("SELECT 1 FROM meta LIMIT 1").fetchone() is not None
            return has_meta or conn.execute("SELECT 1 FROM rows LIMIT 1").fetchone() is not None
        except sqlite3.DatabaseError as exc:
            raise CheckpointCorruptError(f"Unreadable checkpoint {self._db_path}: {exc}") from exc

    def load(self) -> CheckpointState | None:
        """Load the full checkpoint state."""
        if not self.exists():
            return None
        try:
            meta = self._meta()
            version = int(meta.get("schema_version", "1"))
            conn = self._connection()
            rows = [
                FitRecord.model_validate_json(data)
                for (data,) in conn.execute("SELECT data FROM rows ORDER BY rowid")
            ]
            failures = {
                token: FailureRecord(token=token, reason=reason, detail=detail)
                for token, reason, detail in conn.execute(
                    "SELECT token, reason, detail FROM failures ORDER BY rowid"
                )
            }
        except (sqlite3.DatabaseError, ValueError, ValidationError) as exc:
            raise CheckpointCorruptError(f"Unreadable checkpoint {self._db_path}: {exc}") from exc

        if version == 1:
            succeeded = int(meta.get("n_processed", len(rows)))
            failed = int(meta.get("n_failed", 0))
            logger.info(
                "Loaded version-1 checkpoint %s (%d rows); counters derived", self._db_path, len(rows)
            )
            return CheckpointState(
                schema_version=1,
                phase=meta.get("phase", self.phase),
                rows=rows,
                failures=failures,
                attempted_count=succeeded + failed,
                succeeded_count=succeeded,
                failed_count=failed,
                last_saved_at=succeeded + failed,
                finalized=meta.get("finalized") == "1",
            )
        if version != CHECKPOINT_SCHEMA_VERSION:
            raise CheckpointCorruptError(
                f"Checkpoint {self._db_path} has unsupported schema version {version}"
            )
        return CheckpointState(
            schema_version=version,
            phase=meta.get("phase", self.phase),
            rows=rows,
            failures=failures,
            finalized=meta.get("finalized") == "1",
            **{key: int(meta.get(key, "0")) for key in _COUNTER_KEYS},
        )

    def _current_counters(self, meta: dict[str, str]) -> dict[str, int]:
        if "schema_version" in meta:
            return {key: int(meta.get(key, "0")) for key in _COUNTER_KEYS}
        succeeded = int(meta.get("n_processed", "0"))
        failed = int(meta.get("n_failed", "0"))
        return {
            "attempted_count": succeeded + failed,
            "succeeded_count": succeeded,
            "failed_count": failed,
            "last_saved_at": succeeded + failed,
        }

    def _append(
        self,
        rows: Sequence[FitRecord],
        failures: Sequence[FailureRecord],
        delta: CounterDelta,
    ) -> None:
        conn = self._connection()
        counters = self._current_counters(self._meta())
        counters["attempted_count"] += delta.attempted
        counters["succeeded_count"] += delta.succeeded
        counters["failed_count"] += delta.failed
        counters["last_saved_at"] = counters["attempted_count"]

        meta = {
            "schema_version": str(CHECKPOINT_SCHEMA_VERSION),
            "phase": self.phase,
            **{key: str(value) for key, value in counters.items()},
        }
        try:
            with conn:
                conn.executemany(
                    "INSERT INTO rows (token, data) VALUES (?, ?)",
                    [(r.token, r.model_dump_json()) for r in rows],
                )
                conn.executemany(
                    "INSERT OR REPLACE INTO failures (token, reason, detail) VALUES (?, ?, ?)",
                    [(f.token, f.reason, f.detail) for f in failures],
                )
                conn.executemany(
                    "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                    list(meta.items()),
                )
                conn.execute("DELETE FROM meta WHERE key IN ('n_processed', 'n_failed')")
        except sqlite3.IntegrityError as exc:
            raise DuplicateUnitError(f"Row already checkpointed: {exc}") from exc

    def _mark_finalized(self) -> None:
        conn = self._connection()
        meta = self._meta()
        marks = {"finalized": "1", "phase": meta.get("phase", self.phase)}
        if not meta and not self._has_rows():
            marks["schema_version"] = str(CHECKPOINT_SCHEMA_VERSION)
        with conn:
            conn.executemany(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", list(marks.items()),
            )

    def _has_rows(self) -> bool:
        return self._connection().execute("SELECT 1 FROM rows LIMIT 1").fetchone() is not None

    def discard(self) -> None:
        """Close the connection and delete the database and its WAL files."""
        self.close()
        for suffix in ("", "-wal", "-shm"):
            path = Path(f"{self._db_path}{suffix}")
            if path.exists():
                path.unlink()
        logger.info("Checkpoint discarded: %s", self._db_path)

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
