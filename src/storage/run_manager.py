# src/storage/run_manager.py - v2
"""Run lifecycle: run ids and manifest creation, finalization and persistence."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path

from vifit.storage import layout
from vifit.storage.base_output_writer import atomic_write
from vifit.storage.models import RunManifest
from vifit.version import __version__


def generate_run_id(timestamp: datetime | None = None) -> str:
    """Generate a run_id: yyyymmdd_hhmm_{uuid4_short}."""
    ts = timestamp or datetime.now(timezone.utc)
    short_uuid = uuid.uuid4().hex[:5]
    return f"{ts.strftime('%Y%m%d_%H%M')}_{short_uuid}"


def create_manifest(run_id: str, phase: str, output: Path, output_format: str, columns: list[str]) -> RunManifest:
    """Manifest for a run that has just started."""
    return RunManifest(
        run_id=run_id,
        phase=phase,
        vifit_version=__version__,
        status="running",
        created_at=datetime.now(timezone.utc),
        output_path=str(output),
        output_format=output_format,
        columns=columns,
    )


def write_manifest(output: Path, manifest: RunManifest) -> Path:
    """Atomically write the manifest next to ``output``."""
    path = layout.manifest_path(output)
    atomic_write(path, lambda handle: handle.write(manifest.model_dump_json(indent=2)))
    return path


def finalize_manifest(
    manifest: RunManifest,
    status: str,
    total: int,
    succeeded: int,
    failures: dict[str, str],
    failures_by_reason: dict[str, int],
) -> RunManifest:
    """Update counts and dispositions in place; returns the manifest."""
    manifest.status = status  # type: ignore[assignment]
    manifest.completed_at = datetime.now(timezone.utc)
    manifest.total = total
    manifest.succeeded = succeeded
    manifest.failed = len(failures)
    manifest.failures = dict(sorted(failures.items()))
    manifest.failures_by_reason = dict(sorted(failures_by_reason.items()))
    return manifest
