# src/storage/reader.py - v2
"""Read finished outputs and manifests back (re-run checks, anomalies, status)."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from vifit.storage import layout
from vifit.storage.models import RunManifest
from vifit.storage.writer_factory import create_output_writer

logger = logging.getLogger(__name__)


def read_output(path: Path | str) -> list[dict[str, Any]]:
    """Load a result table; the format follows the file suffix."""
    path = Path(path)
    return create_output_writer(path.suffix.lstrip(".")).read(path)


def load_manifest(output: Path) -> RunManifest | None:
    """Load the manifest written next to ``output``; None if absent or unreadable."""
    path = layout.manifest_path(output)
    if not path.exists():
        return None
    try:
        return RunManifest(**json.loads(path.read_text(encoding="utf-8")))
    except (OSError, ValueError, ValidationError) as e:
        logger.warning("Ignoring unreadable manifest %s: %s", path, e)
        return None
