# src/anomalies/calculator.py - v2
"""Anomalies of each pixel-year curve against the pixel's long-term norm.

For every day of year::

    anomaly    = year_mean - norm_mean
    anomaly_se = sqrt(year_se**2 + norm_se**2)
    z_score    = anomaly / anomaly_se
    p_value    = 2 * P(Z > |z_score|)

Derivative anomalies compare the rate of change of a pixel-year with the
baseline rate on the same day. Both intervals are read as symmetric normal
intervals at the level they were simulated at; the difference gets the
interval of the combined standard error at that level and is significant
when it excludes zero.

Year rows whose pixel has no baseline are skipped and counted.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

ANOMALY_COLUMNS = (
    "pixel_id", "year", "yday", "year_mean", "norm_mean",
    "anomaly", "anomaly_se", "z_score", "p_value", "is_significant",
)

DERIVATIVE_ANOMALY_COLUMNS = (
    "pixel_id", "year", "yday", "year_deriv", "baseline_deriv",
    "deriv_anomaly", "deriv_anomaly_lwr", "deriv_anomaly_upr", "is_significant",
)


@dataclass
class AnomalyResult:
    rows: list[dict[str, Any]]
    pixel_years: int = 0
    missing_baseline: int = 0


def two_sided_p(z: float) -> float:
    """Two-sided normal p-value."""
    return math.erfc(abs(z) / math.sqrt(2.0))


def _day_anomalies(
    pixel_id: str, year: int, year_row: Mapping[str, Any], norm_row: Mapping[str, Any], alpha: float,
) -> Iterator[dict[str, Any]]:
    curves = zip(year_row["year_mean"], year_row["year_se"], norm_row["norm_mean"], norm_row["norm_se"])
    for yday, (y_mean, y_se, n_mean, n_se) in enumerate(curves, start=1):
        anomaly = y_mean - n_mean
        se = math.sqrt(y_se ** 2 + n_se ** 2)
        z = anomaly / se if se > 0 else math.nan
        p = two_sided_p(z) if not math.isnan(z) else math.nan
        yield {
            "pixel_id": pixel_id,
            "year": year,
            "yday": yday,
            "year_mean": y_mean,
            "norm_mean": n_mean,
            "anomaly": anomaly,
            "anomaly_se": se,
            "z_score": z,
            "p_value": p,
            "is_significant": bool(p < alpha) if not math.isnan(p) else False,
        }


def _derivative_day_anomalies(
    pixel_id: str, year: int, year_row: Mapping[str, Any], norm_row: Mapping[str, Any], _alpha: float,
) -> Iterator[dict[str, Any]]:
    # both intervals share one level, so the combined half-width needs no quantile
    curves = zip(
        year_row["deriv_mean"], year_row["deriv_lwr"], year_row["deriv_upr"],
        norm_row["deriv_mean"], norm_row["deriv_lwr"], norm_row["deriv_upr"],
    )
    for yday, (y_mean, y_lwr, y_upr, b_mean, b_lwr, b_upr) in enumerate(curves, start=1):
        anomaly = y_mean - b_mean
        half_width = math.hypot(y_upr - y_lwr, b_upr - b_lwr) / 2
        lwr, upr = anomaly - half_width, anomaly + half_width
        yield {
            "pixel_id": pixel_id,
            "year": year,
            "yday": yday,
            "year_deriv": y_mean,
            "baseline_deriv": b_mean,
            "deriv_anomaly": anomaly,
            "deriv_anomaly_lwr": lwr,
            "deriv_anomaly_upr": upr,
            "is_significant": bool(lwr > 0 or upr < 0),
        }


def calculate_anomalies(
    baseline_rows: Iterable[Mapping[str, Any]],
    year_rows: Iterable[Mapping[str, Any]],
    alpha: float = 0.05,
) -> AnomalyResult:
    """Long-format anomalies for every (pixel, year, day of year)."""
    return _pair_rows(baseline_rows, year_rows, alpha, _day_anomalies, "Anomalies")


def calculate_derivative_anomalies(
    baseline_rows: Iterable[Mapping[str, Any]],
    year_rows: Iterable[Mapping[str, Any]],
    alpha: float = 0.05,
) -> AnomalyResult:
    """Year derivatives minus baseline derivatives, with combined bounds.

    Takes the outputs of ``baseline_derivatives`` and ``year_derivatives``.
    """
    return _pair_rows(baseline_rows, year_rows, alpha, _derivative_day_anomalies, "Derivative anomalies")


def _pair_rows(
    baseline_rows: Iterable[Mapping[str, Any]],
    year_rows: Iterable[Mapping[str, Any]],
    alpha: float,
    per_day: Callable[..., Iterator[dict[str, Any]]],
    label: str,
) -> AnomalyResult:
    norms = {str(row["pixel_id"]): row for row in baseline_rows}
    result = AnomalyResult(rows=[])
    for row in year_rows:
        pixel_id = str(row["pixel_id"])
        norm = norms.get(pixel_id)
        if norm is None:
            result.missing_baseline += 1
            continue
        result.pixel_years += 1
        result.rows.extend(per_day(pixel_id, int(row["year"]), row, norm, alpha))

    if result.missing_baseline:
        logger.warning("Skipped %d pixel-years without a baseline", result.missing_baseline)
    logger.info(
        "%s: %d pixel-years, %d rows (%d significant at alpha=%s)",
        label, result.pixel_years, len(result.rows),
        sum(1 for r in result.rows if r["is_significant"]), alpha,
    )
    return result
