# src/timeseries/models.py - v2
"""Columnar time-series table and the input slices handed to fit functions."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np


@dataclass
class TimeseriesTable:
    """Observations as parallel numpy columns, indexed by pixel."""

    pixel_id: np.ndarray
    year: np.ndarray
    yday: np.ndarray
    value: np.ndarray
    x: np.ndarray
    y: np.ndarray
    _pixel_rows: dict[str, np.ndarray] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        n = len(self.pixel_id)
        for name in ("year", "yday", "value", "x", "y"):
            if len(getattr(self, name)) != n:
                raise ValueError(f"Column {name!r} length mismatch ({len(getattr(self, name))} != {n})")
        self.pixel_id = np.asarray(self.pixel_id, dtype=object)
        self.year = np.asarray(self.year, dtype=np.int64)
        self.yday = np.asarray(self.yday, dtype=np.int64)
        self.value = np.asarray(self.value, dtype=np.float64)
        self.x = np.asarray(self.x, dtype=np.float64)
        self.y = np.asarray(self.y, dtype=np.float64)
        self._pixel_rows = _index_by_pixel(self.pixel_id)

    def __len__(self) -> int:
        return len(self.pixel_id)

    def pixel_ids(self) -> list[str]:
        return sorted(self._pixel_rows)

    def years(self) -> list[int]:
        return sorted({int(v) for v in np.unique(self.year)}) if len(self) else []

    def rows_for_pixel(self, pixel_id: str) -> np.ndarray | None:
        """Row indices of one pixel, or None if the pixel is unknown."""
        return self._pixel_rows.get(pixel_id)

    def pixel_coordinates(self) -> tuple[list[str], np.ndarray, np.ndarray]:
        """First finite (x, y) per pixel, sorted by pixel id; pixels without coordinates are skipped."""
        ids: list[str] = []
        xs: list[float] = []
        ys: list[float] = []
        for pid in self.pixel_ids():
            rows = self._pixel_rows[pid]
            finite = rows[np.isfinite(self.x[rows]) & np.isfinite(self.y[rows])]
            if len(finite) == 0:
                continue
            ids.append(pid)
            xs.append(float(self.x[finite[0]]))
            ys.append(float(self.y[finite[0]]))
        return ids, np.asarray(xs), np.asarray(ys)


def _index_by_pixel(pixel_id: np.ndarray) -> dict[str, np.ndarray]:
    if len(pixel_id) == 0:
        return {}
    ids, inverse = np.unique(pixel_id.astype(str), return_inverse=True)
    order = np.argsort(inverse, kind="stable")
    bounds = np.cumsum(np.bincount(inverse, minlength=len(ids)))[:-1]
    return {str(pid): rows for pid, rows in zip(ids, np.split(order, bounds))}


@dataclass
class TemporalSlice:
    """One pixel's observations along the day-of-year axis."""

    yday: np.ndarray
    value: np.ndarray
    n_target_obs: int
    year: int | None = None
    is_edge_year: bool = False

    @property
    def n_obs(self) -> int:
        return len(self.value)


@dataclass
class SpatialSlice:
    """All pixels' observations in a day-of-year window plus the prediction grid."""

    yday: int
    x: np.ndarray
    y: np.ndarray
    value: np.ndarray
    grid_ids: list[str]
    grid_x: np.ndarray
    grid_y: np.ndarray

    @property
    def n_obs(self) -> int:
        return len(self.value)


@dataclass
class SpatialYearSlice:
    """One year's observations in a trailing window, each paired with its norm.

    ``grid_norm`` is the norm of every grid pixel on the target day; grid
    pixels without a norm are left out of the grid.
    """

    year: int
    yday: int
    x: np.ndarray
    y: np.ndarray
    value: np.ndarray
    norm: np.ndarray
    grid_ids: list[str]
    grid_x: np.ndarray
    grid_y: np.ndarray
    grid_norm: np.ndarray
    n_pixels_observed: int
    n_pixels_total: int

    @property
    def n_obs(self) -> int:
        return len(self.value)


InputSlice = TemporalSlice | SpatialSlice | SpatialYearSlice
