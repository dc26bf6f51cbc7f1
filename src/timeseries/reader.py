# src/timeseries/reader.py - v2
"""Load the aggregated vegetation-index time series from CSV."""

from __future__ import annotations

import csv
import logging
import math
from datetime import date
from pathlib import Path

import numpy as np

from vifit.core.errors import CatalogError
from vifit.timeseries.models import TimeseriesTable

logger = logging.getLogger(__name__)

VALUE_COLUMNS = ("ndvi", "NDVI", "value")
MISSING_TOKENS = {"", "NA", "NaN", "nan", "null", "None"}


def read_timeseries_csv(path: Path | str) -> TimeseriesTable:
    """Read observations from CSV.

    Required columns: ``pixel_id``, a value column (``ndvi``, ``NDVI`` or
    ``value``) and either ``date`` (ISO) or ``year`` + ``yday``. ``x`` and
    ``y`` are optional. Rows with a missing value are dropped.

    Raises:
        CatalogError: If the file is missing, unreadable, malformed or empty.
    """
    path = Path(path)
    if not path.is_file():
        raise CatalogError(f"Time series input not found: {path}")

    pixel_ids: list[str] = []
    years: list[int] = []
    ydays: list[int] = []
    values: list[float] = []
    xs: list[float] = []
    ys: list[float] = []
    dropped = 0

    try:
        with path.open(newline="", encoding="utf-8") as handle:
            reader = csv.DictReader(handle)
            columns = reader.fieldnames or []
            value_col = next((c for c in VALUE_COLUMNS if c in columns), None)
            if "pixel_id" not in columns or value_col is None:
                raise CatalogError(
                    f"{path}: expected columns pixel_id and one of {VALUE_COLUMNS}, got {columns}"
                )
            has_date = "date" in columns
            if not has_date and not {"year", "yday"} <= set(columns):
                raise CatalogError(f"{path}: expected a date column or year + yday columns")

            for line_no, row in enumerate(reader, start=2):
                if any(v is None for v in row.values()):
                    raise CatalogError(
                        f"{path}:{line_no}: short row, expected {len(columns)} fields"
                    )
                raw_value = (row.get(value_col) or "").strip()
                if raw_value in MISSING_TOKENS:
                    dropped += 1
                    continue
                try:
                    if has_date:
                        day = date.fromisoformat(row["date"].strip()[:10])
                        year, yday = day.year, day.timetuple().tm_yday
                    else:
                        year, yday = int(row["year"]), int(row["yday"])
                    value = float(raw_value)
                except (TypeError, ValueError) as exc:
                    raise CatalogError(f"{path}:{line_no}: malformed row: {exc}") from exc
                if not math.isfinite(value):
                    dropped += 1
                    continue
                pixel_ids.append(row["pixel_id"].strip())
                years.append(year)
                ydays.append(yday)
                values.append(value)
                xs.append(_optional_float(row.get("x")))
                ys.append(_optional_float(row.get("y")))
    except UnicodeDecodeError as exc:
        raise CatalogError(f"Time series input {path} is not UTF-8 text: {exc}") from exc
    except OSError as exc:
        raise CatalogError(f"Cannot read time series input {path}: {exc}") from exc

    if not values:
        raise CatalogError(f"Time series input has no usable observations: {path}")

    table = TimeseriesTable(
        pixel_id=np.asarray(pixel_ids, dtype=object),
        year=np.asarray(years),
        yday=np.asarray(ydays),
        value=np.asarray(values),
        x=np.asarray(xs),
        y=np.asarray(ys),
    )
    logger.info(
        "Loaded %d observations (%d pixels, %d dropped) from %s",
        len(table), len(table.pixel_ids()), dropped, path,
    )
    return table


def _optional_float(raw: str | None) -> float:
    if raw is None or raw.strip() in MISSING_TOKENS:
        return math.nan
    try:
        return float(raw)
    except ValueError:
        return math.nan
