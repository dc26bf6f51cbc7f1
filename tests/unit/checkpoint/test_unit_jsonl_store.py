# tests/unit/checkpoint/test_unit_jsonl_store.py - v1
"""Tests for checkpoint/jsonl_store.py - commit point and recovery."""

from __future__ import annotations

import json

import pytest

from vifit.core.errors import CheckpointCorruptError
from vifit.core.models import CounterDelta, FailureRecord, FitRecord, WorkUnit


def _record(i: int) -> FitRecord:
    return FitRecord(unit=WorkUnit(pixel_id=f"p{i:04d}"), values={"score": i})


class TestCommitPoint:
    def test_uncommitted_tail_ignored(self, jsonl_store):
        jsonl_store.append([_record(1)], [], CounterDelta(attempted=1, succeeded=1))
        with (jsonl_store.path / "rows.jsonl").open("a", encoding="utf-8") as handle:
            handle.write(_record(2).model_dump_json() + "\n")
            handle.write('{"unit": {"pixel_id": "p00')
        state = jsonl_store.load()
        assert [r.token for r in state.rows] == ["pixel_id=p0001"]

    def test_next_append_truncates_tail(self, jsonl_store):
        jsonl_store.append([_record(1)], [], CounterDelta(attempted=1, succeeded=1))
        with (jsonl_store.path / "rows.jsonl").open("a", encoding="utf-8") as handle:
            handle.write('{"half written')
        jsonl_store.append([_record(3)], [], CounterDelta(attempted=1, succeeded=1))

        lines = (jsonl_store.path / "rows.jsonl").read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert [r.token for r in jsonl_store.load().rows] == ["pixel_id=p0001", "pixel_id=p0003"]

    def test_meta_records_byte_lengths(self, jsonl_store):
        jsonl_store.append([_record(1)], [], CounterDelta(attempted=1, succeeded=1))
        meta = json.loads((jsonl_store.path / "meta.json").read_text(encoding="utf-8"))
        assert meta["rows_bytes"] == (jsonl_store.path / "rows.jsonl").stat().st_size
        assert meta["failures_bytes"] == 0
        assert meta["schema_version"] == 2

    def test_later_failure_line_wins(self, jsonl_store):
        jsonl_store.append(
            [], [FailureRecord(token="pixel_id=p0001", reason="numerical_error")],
            CounterDelta(attempted=1, failed=1),
        )
        jsonl_store.append(
            [], [FailureRecord(token="pixel_id=p0001", reason="insufficient_data")],
            CounterDelta(attempted=1, failed=1),
        )
        assert jsonl_store.load().failures["pixel_id=p0001"].reason == "insufficient_data"


class TestCorruption:
    def test_unsupported_version(self, jsonl_store):
        jsonl_store.append([_record(1)], [], CounterDelta(attempted=1, succeeded=1))
        meta_path = jsonl_store.path / "meta.json"
        meta = json.loads(meta_path.read_text(encoding="utf-8"))
        meta["schema_version"] = 7
        meta_path.write_text(json.dumps(meta), encoding="utf-8")
        with pytest.raises(CheckpointCorruptError, match="schema version"):
            jsonl_store.load()

    def test_truncated_data_file(self, jsonl_store):
        jsonl_store.append([_record(1), _record(2)], [], CounterDelta(attempted=2, succeeded=2))
        (jsonl_store.path / "rows.jsonl").write_text("{}\n", encoding="utf-8")
        with pytest.raises(CheckpointCorruptError, match="shorter"):
            jsonl_store.load()

    def test_unreadable_meta(self, jsonl_store):
        jsonl_store.path.mkdir(parents=True)
        (jsonl_store.path / "meta.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(CheckpointCorruptError):
            jsonl_store.load()
