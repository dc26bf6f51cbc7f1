# src/storage/models.py - v2
"""Storage domain models: RunManifest."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class RunManifest(BaseModel):
    """Record of one run, written next to the output as ``*.manifest.json``.

    ``failures`` maps every failed unit token to its reason, so no unit is
    missing from the output without an explanation.
    """

    run_id: str
    phase: str
    vifit_version: str
    status: Literal["running", "completed", "interrupted"]
    created_at: datetime
    completed_at: datetime | None = None
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    output_path: str | None = None
    output_format: str | None = None
    columns: list[str] = Field(default_factory=list)
    failures: dict[str, str] = Field(default_factory=dict)
    failures_by_reason: dict[str, int] = Field(default_factory=dict)
