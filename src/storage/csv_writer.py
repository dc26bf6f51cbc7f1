# src/storage/csv_writer.py - v1
"""CSV result tables. List-valued columns are stored as JSON arrays."""

from __future__ import annotations

import csv
import json
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import IO, Any

from vifit.storage.base_output_writer import BaseOutputWriter

TEXT_COLUMNS = frozenset({"pixel_id"})


def encode_cell(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, separators=(",", ":"))


def decode_cell(column: str, raw: str) -> Any:
    if column in TEXT_COLUMNS or raw == "":
        return raw
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class CsvOutputWriter(BaseOutputWriter):
    extension = "csv"

    def serialize(
        self, handle: IO[str], columns: Sequence[str], rows: Iterable[Mapping[str, Any]]
    ) -> int:
        writer = csv.writer(handle, lineterminator="\n")
        writer.writerow(columns)
        count = 0
        for row in rows:
            writer.writerow([encode_cell(row.get(c)) for c in columns])
            count += 1
        return count

    def read(self, path: Path) -> list[dict[str, Any]]:
        with Path(path).open(newline="", encoding="utf-8") as handle:
            return [
                {column: decode_cell(column, raw) for column, raw in row.items()}
                for row in csv.DictReader(handle)
            ]
