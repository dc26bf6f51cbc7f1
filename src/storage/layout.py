# src/storage/layout.py - v2
"""Output directory structure.

    {output_dir}/
        {phase}.csv | {phase}.jsonl           final merged result table
        {phase}.csv.manifest.json             run manifest
        checkpoints/{phase}.sqlite            in-progress checkpoint (sqlite)
        checkpoints/{phase}.jsonl.d/          in-progress checkpoint (jsonl)
"""

from __future__ import annotations

from pathlib import Path

CHECKPOINTS_DIR = "checkpoints"
MANIFEST_SUFFIX = ".manifest.json"


def output_path(output_dir: Path, phase: str, output_format: str) -> Path:
    """Final result table for a phase."""
    return Path(output_dir) / f"{phase}.{output_format}"


def manifest_path(output: Path) -> Path:
    """Manifest written next to an output file."""
    return output.with_name(output.name + MANIFEST_SUFFIX)


def checkpoints_dir(output_dir: Path) -> Path:
    return Path(output_dir) / CHECKPOINTS_DIR


def checkpoint_path(output_dir: Path, phase: str, backend: str) -> Path:
    """Checkpoint location of a phase for a backend."""
    if backend == "sqlite":
        return checkpoints_dir(output_dir) / f"{phase}.sqlite"
    return checkpoints_dir(output_dir) / f"{phase}.jsonl.d"
