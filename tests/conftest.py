# tests/conftest.py - v2
"""Shared test fixtures for all unit and integration tests.

Provides settings bound to tmp_path, a synthetic phase whose fit outcome
is a pure function of the unit key, checkpoint stores, and a small
vegetation-index CSV on a pixel grid.
"""

from __future__ import annotations

import csv
import math
from functools import partial
from pathlib import Path
from typing import Any

import numpy as np
import pytest

from vifit.catalog.catalog import WorkUnitCatalog
from vifit.checkpoint.jsonl_store import JsonlCheckpointStore
from vifit.checkpoint.sqlite_store import SqliteCheckpointStore
from vifit.config.settings import Settings, load_settings
from vifit.core.models import Success, WorkUnit
from vifit.fitting.phases import PhaseSpec
from vifit.pipeline.orchestrator import Orchestrator
from vifit.storage import layout

SYNTHETIC = "synthetic"


# === SYNTHETIC PHASE ===


def unit_index(unit: WorkUnit) -> int:
    return int(unit.pixel_id[1:])


class PrefixGapProvider:
    """Has no data for pixels p0001..p{n_missing}; otherwise the slice is the unit itself."""

    def __init__(self, n_missing: int = 0) -> None:
        self.n_missing = n_missing

    def slice_for(self, unit: WorkUnit) -> WorkUnit | None:
        return None if unit_index(unit) <= self.n_missing else unit


def score_fit(input_slice: WorkUnit, params: dict[str, Any]) -> Success:
    return Success(values={"score": unit_index(input_slice) * 2})


SYNTHETIC_PHASE = PhaseSpec(SYNTHETIC, "pixel", ("score",), score_fit)


def make_units(n: int) -> list[WorkUnit]:
    return [WorkUnit(pixel_id=f"p{i:04d}") for i in range(1, n + 1)]


@pytest.fixture
def synthetic_phase() -> PhaseSpec:
    return SYNTHETIC_PHASE


@pytest.fixture
def units():
    return make_units


@pytest.fixture
def gap_provider_factory():
    """``n_missing -> provider factory`` for the synthetic phase."""
    return lambda n_missing=0: partial(PrefixGapProvider, n_missing)


# === SETTINGS / STORES ===


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    return tmp_path / "out"


@pytest.fixture
def make_settings(output_dir: Path):
    """Settings factory: in-process pool, batch 10, interval 100, no .env."""

    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "_env_file": None,
            "output_dir": output_dir,
            "n_workers": 1,
            "batch_size": 10,
            "checkpoint_interval": 100,
            "progress_every": 50,
        }
        values.update(overrides)
        return load_settings(**values)

    return _make


@pytest.fixture
def sqlite_store(tmp_path: Path) -> SqliteCheckpointStore:
    store = SqliteCheckpointStore(tmp_path / "ckpt" / "phase.sqlite", phase=SYNTHETIC)
    yield store
    store.close()


@pytest.fixture
def jsonl_store(tmp_path: Path) -> JsonlCheckpointStore:
    return JsonlCheckpointStore(tmp_path / "ckpt" / "phase.jsonl.d", phase=SYNTHETIC)


@pytest.fixture(params=["sqlite", "jsonl"])
def any_store(request, sqlite_store, jsonl_store):
    return sqlite_store if request.param == "sqlite" else jsonl_store


@pytest.fixture
def make_orchestrator(make_settings, output_dir: Path):
    """Orchestrator factory over the synthetic phase.

    Every call builds a fresh store on the same checkpoint path, as a
    restarted process would.
    """

    def _make(
        n_units: int = 1000,
        n_missing: int = 100,
        store=None,
        stop_requested=None,
        **overrides: Any,
    ) -> Orchestrator:
        settings = make_settings(**overrides)
        if store is None:
            path = layout.checkpoint_path(output_dir, SYNTHETIC, settings.checkpoint_backend)
            store = (
                SqliteCheckpointStore(path, phase=SYNTHETIC)
                if settings.checkpoint_backend == "sqlite"
                else JsonlCheckpointStore(path, phase=SYNTHETIC)
            )
        return Orchestrator(
            phase=SYNTHETIC_PHASE,
            catalog=WorkUnitCatalog(make_units(n_units)),
            store=store,
            provider_factory=partial(PrefixGapProvider, n_missing),
            settings=settings,
            stop_requested=stop_requested,
        )

    return _make


# === TIME SERIES ===

GRID_PIXELS = [(f"g{ix}{iy}", float(ix), float(iy)) for ix in range(4) for iy in range(3)]
SPARSE_PIXEL = "sparse"


def seasonal_value(yday: int, x: float) -> float:
    return 0.3 + 0.25 * math.sin(2 * math.pi * (yday - 110) / 365) + 0.01 * x


@pytest.fixture
def timeseries_csv(tmp_path: Path) -> Path:
    """12 grid pixels sampled every 4 days in 2020-2021, plus one sparse pixel."""
    rng = np.random.default_rng(0)
    path = tmp_path / "ndvi.csv"
    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(["pixel_id", "x", "y", "year", "yday", "ndvi"])
        for pixel_id, x, y in GRID_PIXELS:
            for year in (2020, 2021):
                for yday in range(1, 366, 4):
                    value = seasonal_value(yday, x) + rng.normal(0, 0.02)
                    writer.writerow([pixel_id, x, y, year, yday, f"{value:.5f}"])
        for yday in (10, 50, 90, 130, 170):
            writer.writerow([SPARSE_PIXEL, 5.0, 5.0, 2020, yday, "0.4"])
        writer.writerow([SPARSE_PIXEL, 5.0, 5.0, 2020, 200, "NA"])
    return path


@pytest.fixture
def fit_params(make_settings) -> dict[str, Any]:
    return make_settings(
        baseline_year_start=2020, baseline_year_end=2021,
        target_year_start=2020, target_year_end=2021,
        spatial_knots=4, n_posterior_sims=50,
    ).fit_params()
