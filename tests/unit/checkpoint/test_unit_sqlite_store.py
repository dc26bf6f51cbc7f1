# tests/unit/checkpoint/test_unit_sqlite_store.py - v2
"""Tests for checkpoint/sqlite_store.py - legacy layout, corruption, duplicates."""

from __future__ import annotations

import sqlite3

import pytest

from vifit.checkpoint.sqlite_store import SqliteCheckpointStore
from vifit.core.errors import CheckpointCorruptError, DuplicateUnitError
from vifit.core.models import CounterDelta, FailureRecord, FitRecord, WorkUnit


def _record(i: int) -> FitRecord:
    return FitRecord(unit=WorkUnit(pixel_id=f"p{i:04d}"), values={"score": i})


@pytest.fixture
def legacy_db(tmp_path):
    """Version-1 layout: counters as n_processed / n_failed, no failures table."""
    path = tmp_path / "legacy.sqlite"
    conn = sqlite3.connect(str(path))
    with conn:
        conn.execute("CREATE TABLE meta (key TEXT PRIMARY KEY, value TEXT NOT NULL)")
        conn.execute("CREATE TABLE rows (token TEXT PRIMARY KEY, data TEXT NOT NULL)")
        conn.executemany(
            "INSERT INTO meta (key, value) VALUES (?, ?)",
            [("phase", "synthetic"), ("n_processed", "2"), ("n_failed", "5")],
        )
        conn.executemany(
            "INSERT INTO rows (token, data) VALUES (?, ?)",
            [(r.token, r.model_dump_json()) for r in (_record(1), _record(2))],
        )
    conn.close()
    return path


class TestLegacyCheckpoint:
    def test_load_derives_counters(self, legacy_db):
        store = SqliteCheckpointStore(legacy_db, phase="synthetic")
        state = store.load()
        assert state.schema_version == 1
        assert len(state.rows) == 2
        assert state.succeeded_count == 2
        assert state.failed_count == 5
        assert state.attempted_count == 7
        assert state.failures == {}
        store.close()

    def test_append_upgrades_to_current_version(self, legacy_db):
        store = SqliteCheckpointStore(legacy_db, phase="synthetic")
        store.append([_record(3)], [], CounterDelta(attempted=1, succeeded=1))
        state = store.load()
        assert state.schema_version == 2
        assert state.succeeded_count == 3
        assert state.attempted_count == 8
        assert len(state.rows) == 3
        store.close()

        conn = sqlite3.connect(str(legacy_db))
        keys = {k for (k,) in conn.execute("SELECT key FROM meta")}
        conn.close()
        assert "n_processed" not in keys

    def test_finalize_without_new_rows(self, legacy_db):
        store = SqliteCheckpointStore(legacy_db, phase="synthetic")
        state = store.finalize()
        assert state.finalized is True
        assert state.schema_version == 1
        assert len(state.rows) == 2
        store.close()

        reopened = SqliteCheckpointStore(legacy_db, phase="synthetic")
        assert reopened.load().finalized is True
        reopened.close()


class TestFreshFinalize:
    def test_finalize_never_appended(self, sqlite_store):
        state = sqlite_store.finalize()
        assert state.finalized is True
        assert state.schema_version == 2
        assert state.phase == "synthetic"
        assert sqlite_store.append_count == 0


class TestCorruption:
    def test_unknown_schema_version(self, sqlite_store):
        sqlite_store.append([_record(1)], [], CounterDelta(attempted=1, succeeded=1))
        conn = sqlite3.connect(str(sqlite_store.path))
        with conn:
            conn.execute("UPDATE meta SET value = '9' WHERE key = 'schema_version'")
        conn.close()
        with pytest.raises(CheckpointCorruptError, match="schema version 9"):
            sqlite_store.load()

    def test_not_a_database(self, tmp_path):
        path = tmp_path / "garbage.sqlite"
        path.write_bytes(b"this is not a sqlite database file at all" * 10)
        store = SqliteCheckpointStore(path, phase="synthetic")
        with pytest.raises(CheckpointCorruptError):
            store.load()
        store.close()

    def test_invalid_row_payload(self, sqlite_store):
        sqlite_store.append([_record(1)], [], CounterDelta(attempted=1, succeeded=1))
        conn = sqlite3.connect(str(sqlite_store.path))
        with conn:
            conn.execute("UPDATE rows SET data = '{\"broken\": true}'")
        conn.close()
        with pytest.raises(CheckpointCorruptError):
            sqlite_store.load()


class TestDuplicates:
    def test_duplicate_row_rejected(self, sqlite_store):
        sqlite_store.append([_record(1)], [], CounterDelta(attempted=1, succeeded=1))
        with pytest.raises(DuplicateUnitError):
            sqlite_store.append([_record(1)], [], CounterDelta(attempted=1, succeeded=1))
        state = sqlite_store.load()
        assert len(state.rows) == 1
        assert state.attempted_count == 1

    def test_failure_rewritten_on_retry(self, sqlite_store):
        first = FailureRecord(token="pixel_id=p0001", reason="numerical_error")
        second = FailureRecord(token="pixel_id=p0001", reason="non_convergence")
        sqlite_store.append([], [first], CounterDelta(attempted=1, failed=1))
        sqlite_store.append([], [second], CounterDelta(attempted=1, failed=1))
        state = sqlite_store.load()
        assert state.failures["pixel_id=p0001"].reason == "non_convergence"
        assert state.failed_count == 2


class TestDiscard:
    def test_removes_wal_files(self, sqlite_store):
        sqlite_store.append([_record(1)], [], CounterDelta(attempted=1, succeeded=1))
        sqlite_store.discard()
        parent = sqlite_store.path.parent
        assert not any(p.name.startswith(sqlite_store.path.name) for p in parent.iterdir())
