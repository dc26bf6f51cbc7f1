# src/timeseries/provider.py - v2
"""Input slice provider: maps a work unit key to the observations it needs.

Built once per worker process (``TimeseriesProvider.from_csv``); never shared
across processes. Returns ``None`` when no data exists for a key so that the
fit layer can classify the unit as ``insufficient_data``.

The ``doy_year`` slices pair every observation with the DOY norm of its
pixel, read once per provider from the ``doy_norm`` output.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import numpy as np

from vifit.core.errors import CatalogError
from vifit.core.models import WorkUnit
from vifit.storage.reader import read_output
from vifit.timeseries.models import (
    InputSlice,
    SpatialSlice,
    SpatialYearSlice,
    TemporalSlice,
    TimeseriesTable,
)
from vifit.timeseries.reader import read_timeseries_csv

logger = logging.getLogger(__name__)

DAYS_PER_YEAR = 365


def doy_window(target: int, half_width: int) -> np.ndarray:
    """Days within ``target ± half_width`` on a wrap-around 365-day year."""
    offsets = np.arange(-half_width, half_width + 1)
    return np.unique((target - 1 + offsets) % DAYS_PER_YEAR + 1)


def day_number(year, yday):
    """Days since 1970-01-01 of ``(year, yday)``; works on scalars and arrays."""
    start = (np.asarray(year) - 1970).astype("datetime64[Y]").astype("datetime64[D]")
    return (start + (np.asarray(yday) - 1)).astype(np.int64)


class TimeseriesProvider:
    """Serve per-unit input slices from an in-memory ``TimeseriesTable``."""

    def __init__(self, table: TimeseriesTable, params: dict[str, Any]) -> None:
        self._table = table
        self._params = params
        self._baseline_years = np.asarray(params.get("baseline_years") or table.years())
        target_years = params.get("target_years") or table.years()
        self._first_target = min(target_years)
        self._last_target = max(target_years)
        self._grid: tuple[list[str], np.ndarray, np.ndarray] | None = None
        self._norm_table: np.ndarray | None = None
        self._row_pixel: np.ndarray | None = None
        self._row_day: np.ndarray | None = None

    @classmethod
    def from_csv(cls, path: Path | str, params: dict[str, Any]) -> TimeseriesProvider:
        return cls(read_timeseries_csv(path), params)

    @property
    def table(self) -> TimeseriesTable:
        return self._table

    def pixel_ids(self) -> list[str]:
        return self._table.pixel_ids()

    def slice_for(self, unit: WorkUnit) -> InputSlice | None:
        """Return the input slice for ``unit``, or None when no data exists."""
        if unit.yday is not None:
            if unit.year is not None:
                return self._doy_year_slice(unit.year, unit.yday)
            return self._doy_slice(unit.yday)
        if unit.pixel_id is None:
            return None
        if unit.year is not None:
            return self._year_slice(unit.pixel_id, unit.year)
        return self._baseline_slice(unit.pixel_id)

    # --- Per-phase slices ---

    def _baseline_slice(self, pixel_id: str) -> TemporalSlice | None:
        rows = self._table.rows_for_pixel(pixel_id)
        if rows is None:
            return None
        rows = rows[np.isin(self._table.year[rows], self._baseline_years)]
        if len(rows) == 0:
            return None
        return TemporalSlice(
            yday=self._table.yday[rows].astype(np.float64),
            value=self._table.value[rows],
            n_target_obs=len(rows),
        )

    def _year_slice(self, pixel_id: str, year: int) -> TemporalSlice | None:
        rows = self._table.rows_for_pixel(pixel_id)
        if rows is None:
            return None
        pad = int(self._params.get("edge_padding_days", 31))
        years = self._table.year[rows]
        ydays = self._table.yday[rows]

        in_year = years == year
        prev_tail = (years == year - 1) & (ydays > DAYS_PER_YEAR - pad)
        next_head = (years == year + 1) & (ydays <= pad)

        shifted = np.concatenate([
            ydays[prev_tail] - 366,
            ydays[in_year],
            ydays[next_head] + DAYS_PER_YEAR,
        ]).astype(np.float64)
        values = np.concatenate([
            self._table.value[rows][prev_tail],
            self._table.value[rows][in_year],
            self._table.value[rows][next_head],
        ])
        if len(values) == 0:
            return None
        return TemporalSlice(
            yday=shifted,
            value=values,
            n_target_obs=int(np.count_nonzero(in_year & (ydays <= DAYS_PER_YEAR))),
            year=year,
            is_edge_year=year in (self._first_target, self._last_target),
        )

    def _doy_slice(self, yday: int) -> SpatialSlice | None:
        half_width = int(self._params.get("doy_window", 7))
        mask = np.isin(self._table.yday, doy_window(yday, half_width))
        mask &= np.isfinite(self._table.x) & np.isfinite(self._table.y)
        if not mask.any():
            return None
        grid_ids, grid_x, grid_y = self._prediction_grid()
        if not grid_ids:
            return None
        return SpatialSlice(
            yday=yday,
            x=self._table.x[mask],
            y=self._table.y[mask],
            value=self._table.value[mask],
            grid_ids=grid_ids,
            grid_x=grid_x,
            grid_y=grid_y,
        )

    def _prediction_grid(self) -> tuple[list[str], np.ndarray, np.ndarray]:
        if self._grid is None:
            self._grid = self._table.pixel_coordinates()
            logger.debug("Prediction grid: %d pixels with coordinates", len(self._grid[0]))
        return self._grid

    def _doy_year_slice(self, year: int, yday: int) -> SpatialYearSlice | None:
        window = int(self._params.get("year_window", 16))
        day = self._day_numbers()
        target = int(day_number(year, yday))
        norms = self._norms()
        pixel = self._pixel_rows()

        obs_norm = norms[pixel, np.minimum(self._table.yday, DAYS_PER_YEAR) - 1]
        mask = (day > target - window) & (day <= target)
        mask &= np.isfinite(self._table.x) & np.isfinite(self._table.y) & np.isfinite(obs_norm)
        if not mask.any():
            return None

        grid_ids, grid_x, grid_y = self._prediction_grid()
        positions = {pid: i for i, pid in enumerate(self._table.pixel_ids())}
        grid_norm = norms[[positions[pid] for pid in grid_ids], yday - 1]
        has_norm = np.isfinite(grid_norm)
        if not has_norm.any():
            return None
        return SpatialYearSlice(
            year=year,
            yday=yday,
            x=self._table.x[mask],
            y=self._table.y[mask],
            value=self._table.value[mask],
            norm=obs_norm[mask],
            grid_ids=[pid for pid, keep in zip(grid_ids, has_norm) if keep],
            grid_x=grid_x[has_norm],
            grid_y=grid_y[has_norm],
            grid_norm=grid_norm[has_norm],
            n_pixels_observed=len(np.unique(pixel[mask])),
            n_pixels_total=len(positions),
        )

    def _day_numbers(self) -> np.ndarray:
        if self._row_day is None:
            self._row_day = day_number(self._table.year, self._table.yday)
        return self._row_day

    def _pixel_rows(self) -> np.ndarray:
        """Position of every row's pixel in ``pixel_ids()``."""
        if self._row_pixel is None:
            ids = np.asarray(self._table.pixel_ids(), dtype=str)
            self._row_pixel = np.searchsorted(ids, self._table.pixel_id.astype(str))
        return self._row_pixel

    def _norms(self) -> np.ndarray:
        """Norm mean per (pixel, day of year); NaN where the norm fit failed.

        Raises:
            CatalogError: If the norms output is not configured or missing.
        """
        if self._norm_table is not None:
            return self._norm_table
        path = self._params.get("norms_path")
        if not path or not Path(path).is_file():
            raise CatalogError(f"DOY norms not found: {path} (run the doy_norm phase first)")

        positions = {pid: i for i, pid in enumerate(self._table.pixel_ids())}
        table = np.full((len(positions), DAYS_PER_YEAR), np.nan)
        n_days = 0
        for row in read_output(path):
            day = int(row["yday"]) - 1
            n_days += 1
            for pid, mean in zip(row["pixel_ids"], row["mean"]):
                if pid in positions and mean is not None:
                    table[positions[pid], day] = float(mean)
        logger.debug("Loaded DOY norms for %d days from %s", n_days, path)
        self._norm_table = table
        return table
