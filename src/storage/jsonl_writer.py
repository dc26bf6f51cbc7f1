# src/storage/jsonl_writer.py - v1
"""JSON Lines result tables: one object per row, keys in column order."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import IO, Any

from vifit.storage.base_output_writer import BaseOutputWriter


class JsonlOutputWriter(BaseOutputWriter):
    extension = "jsonl"

    def serialize(
        self, handle: IO[str], columns: Sequence[str], rows: Iterable[Mapping[str, Any]]
    ) -> int:
        count = 0
        for row in rows:
            handle.write(json.dumps({c: row.get(c) for c in columns}, separators=(",", ":")))
            handle.write("\n")
            count += 1
        return count

    def read(self, path: Path) -> list[dict[str, Any]]:
        with Path(path).open(encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]
