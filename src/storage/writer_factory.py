# src/storage/writer_factory.py - v3
"""Factory: instantiate an output writer for a result table format."""

from __future__ import annotations

from vifit.storage.base_output_writer import BaseOutputWriter
from vifit.storage.csv_writer import CsvOutputWriter
from vifit.storage.jsonl_writer import JsonlOutputWriter


def create_output_writer(output_format: str) -> BaseOutputWriter:
    """Create the writer for ``output_format`` (``csv`` or ``jsonl``).

    Raises:
        ValueError: If the format is not supported.
    """
    if output_format == "csv":
        return CsvOutputWriter()

    if output_format == "jsonl":
        return JsonlOutputWriter()

    raise ValueError(f"Unsupported output format: {output_format!r}")
