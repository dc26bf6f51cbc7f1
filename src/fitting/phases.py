# src/fitting/phases.py - v3
"""Fit functions for each processing phase and the phase registry.

Every fit function has the signature ``fit(input_slice, params) -> Outcome``.
Observation-count cutoffs and non-convergence are returned as ``Failure``
values; only unexpected errors propagate (the worker classifies those).
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import numpy as np

from vifit.catalog.catalog import UnitKind, WorkUnitCatalog, build_catalog
from vifit.core.models import Failure, Success
from vifit.fitting.posterior import derivative_summary, posterior_summary
from vifit.fitting.splines import (
    MIN_BASIS,
    SplineBasis,
    SplineFit,
    fit_covariate_tensor_spline,
    fit_penalized_spline,
    fit_tensor_spline,
)
from vifit.timeseries.models import InputSlice, SpatialSlice, SpatialYearSlice, TemporalSlice

FitFunction = Callable[[Any, Mapping[str, Any]], "Success | Failure"]

DAYS = np.arange(1, 366, dtype=np.float64)


@dataclass(frozen=True)
class PhaseSpec:
    """A processing phase: unit kind, output schema and fit function.

    ``requires`` names a phase whose finished output the fits read.
    """

    name: str
    unit_kind: UnitKind
    columns: tuple[str, ...]
    fit: FitFunction
    requires: str | None = None

    @property
    def key_fields(self) -> tuple[str, ...]:
        return {
            "pixel": ("pixel_id",),
            "pixel_year": ("pixel_id", "year"),
            "doy": ("yday",),
            "doy_year": ("year", "yday"),
        }[self.unit_kind]

    @property
    def output_columns(self) -> tuple[str, ...]:
        return self.key_fields + self.columns

    def build_catalog(self, pixel_ids: Iterable[str], years: Iterable[int]) -> WorkUnitCatalog:
        return build_catalog(self.unit_kind, pixel_ids=pixel_ids, years=years)


# === SHARED HELPERS ===


def _require(input_slice: InputSlice | None, kind: type) -> Failure | None:
    if input_slice is None:
        return Failure(reason="insufficient_data", detail="no observations")
    if not isinstance(input_slice, kind):
        return Failure(
            reason="numerical_error",
            detail=f"expected {kind.__name__}, got {type(input_slice).__name__}",
        )
    return None


def _too_few(n: int, minimum: int, what: str = "observations") -> Failure | None:
    if n < minimum:
        return Failure(reason="insufficient_data", detail=f"{n} {what} < {minimum}")
    return None


def _temporal_fit(
    input_slice: TemporalSlice, k: int, cyclic: bool
) -> tuple[SplineFit, SplineBasis] | Failure:
    try:
        fit, basis = fit_penalized_spline(input_slice.yday, input_slice.value, k=k, cyclic=cyclic)
    except np.linalg.LinAlgError as exc:
        return Failure(reason="numerical_error", detail=str(exc))
    if not fit.converged:
        return Failure(reason="non_convergence", detail=f"edf={fit.edf:.3f}, n={fit.n_obs}")
    return fit, basis


def _year_knots(input_slice: TemporalSlice, params: Mapping[str, Any]) -> int:
    k = int(params["gam_knots"])
    if input_slice.is_edge_year:
        k -= 1
    return max(k, MIN_BASIS)


def _check_year_counts(input_slice: TemporalSlice, params: Mapping[str, Any]) -> Failure | None:
    return _too_few(input_slice.n_obs, int(params["min_obs_year"])) or _too_few(
        input_slice.n_target_obs, int(params["min_target_year_obs"]), "in-year observations"
    )


def _derivative_values(
    fit: SplineFit, basis: SplineBasis, n_obs: int, params: Mapping[str, Any]
) -> dict[str, Any]:
    deriv = derivative_summary(
        fit,
        basis.design,
        DAYS,
        n_sims=int(params["n_posterior_sims"]),
        seed=int(params["derivative_seed"]),
        eps=float(params["derivative_eps"]),
        alpha=float(params["alpha"]),
        lo=None if basis.cyclic else basis.lo,
        hi=None if basis.cyclic else basis.hi,
    )
    return {
        "n_obs": n_obs,
        "deriv_mean": deriv.mean.tolist(),
        "deriv_lwr": deriv.lwr.tolist(),
        "deriv_upr": deriv.upr.tolist(),
        "deriv_sig": deriv.significant.tolist(),
    }


# === FIT FUNCTIONS ===


def fit_baseline(input_slice: InputSlice | None, params: Mapping[str, Any]) -> Success | Failure:
    """Long-term cyclic norm of one pixel over the pooled baseline years."""
    failure = _require(input_slice, TemporalSlice) or _too_few(
        input_slice.n_obs, int(params["min_obs_baseline"])
    )
    if failure:
        return failure
    result = _temporal_fit(input_slice, int(params["gam_knots"]), cyclic=True)
    if isinstance(result, Failure):
        return result
    fit, basis = result
    mean, se = fit.predict(basis.design(DAYS))
    return Success(values={
        "n_obs": input_slice.n_obs,
        "edf": fit.edf,
        "norm_mean": mean.tolist(),
        "norm_se": se.tolist(),
    })


def fit_year(input_slice: InputSlice | None, params: Mapping[str, Any]) -> Success | Failure:
    """Curve of one pixel-year fitted on edge-padded observations."""
    failure = _require(input_slice, TemporalSlice) or _check_year_counts(input_slice, params)
    if failure:
        return failure
    k = _year_knots(input_slice, params)
    result = _temporal_fit(input_slice, k, cyclic=False)
    if isinstance(result, Failure):
        return result
    fit, basis = result
    mean, se = fit.predict(basis.design(DAYS))
    return Success(values={
        "n_obs": input_slice.n_obs,
        "n_target_obs": input_slice.n_target_obs,
        "k": k,
        "year_mean": mean.tolist(),
        "year_se": se.tolist(),
    })


def fit_doy_norm(input_slice: InputSlice | None, params: Mapping[str, Any]) -> Success | Failure:
    """Spatial norm surface for one day of year, summarized on the pixel grid."""
    failure = _require(input_slice, SpatialSlice) or _too_few(
        input_slice.n_obs, int(params["min_obs_doy"])
    )
    if failure:
        return failure
    try:
        fit, basis = fit_tensor_spline(
            input_slice.x, input_slice.y, input_slice.value,
            k=int(params["spatial_knots"]),
            grid_x=input_slice.grid_x, grid_y=input_slice.grid_y,
        )
    except np.linalg.LinAlgError as exc:
        return Failure(reason="numerical_error", detail=str(exc))
    if not fit.converged:
        return Failure(reason="non_convergence", detail=f"edf={fit.edf:.3f}, n={fit.n_obs}")
    post = posterior_summary(
        fit,
        basis.design(input_slice.grid_x, input_slice.grid_y),
        n_sims=int(params["n_posterior_sims"]),
        seed=int(params["posterior_seed"]),
    )
    return Success(values={
        "n_obs": input_slice.n_obs,
        "pixel_ids": list(input_slice.grid_ids),
        "mean": post.mean.tolist(),
        "lwr": post.lwr.tolist(),
        "upr": post.upr.tolist(),
    })


def fit_baseline_derivatives(input_slice: InputSlice | None, params: Mapping[str, Any]) -> Success | Failure:
    failure = _require(input_slice, TemporalSlice) or _too_few(
        input_slice.n_obs, int(params["min_obs_baseline"])
    )
    if failure:
        return failure
    result = _temporal_fit(input_slice, int(params["gam_knots"]), cyclic=True)
    if isinstance(result, Failure):
        return result
    fit, basis = result
    return Success(values=_derivative_values(fit, basis, input_slice.n_obs, params))


def fit_year_derivatives(input_slice: InputSlice | None, params: Mapping[str, Any]) -> Success | Failure:
    failure = _require(input_slice, TemporalSlice) or _check_year_counts(input_slice, params)
    if failure:
        return failure
    result = _temporal_fit(input_slice, _year_knots(input_slice, params), cyclic=False)
    if isinstance(result, Failure):
        return result
    fit, basis = result
    return Success(values=_derivative_values(fit, basis, input_slice.n_obs, params))


def fit_doy_year(input_slice: InputSlice | None, params: Mapping[str, Any]) -> Success | Failure:
    """One year's spatial surface on a day of year, with the DOY norm as covariate.

    Fits ``value ~ norm + te(x, y) - 1`` on the trailing window and predicts
    every grid pixel at its own norm for the target day.
    """
    failure = _require(input_slice, SpatialYearSlice) or _too_few(
        input_slice.n_obs, int(params["min_obs_doy"])
    )
    if failure:
        return failure
    needed = input_slice.n_pixels_total * float(params["min_pixel_coverage"])
    if input_slice.n_pixels_observed < needed:
        return Failure(
            reason="insufficient_data",
            detail=f"{input_slice.n_pixels_observed} of {input_slice.n_pixels_total} pixels observed",
        )
    try:
        fit, basis = fit_covariate_tensor_spline(
            input_slice.norm, input_slice.x, input_slice.y, input_slice.value,
            k=int(params["spatial_knots"]),
            grid_x=input_slice.grid_x, grid_y=input_slice.grid_y,
        )
    except np.linalg.LinAlgError as exc:
        return Failure(reason="numerical_error", detail=str(exc))
    if not fit.converged:
        return Failure(reason="non_convergence", detail=f"edf={fit.edf:.3f}, n={fit.n_obs}")

    post = posterior_summary(
        fit,
        basis.design(input_slice.grid_norm, input_slice.grid_x, input_slice.grid_y),
        n_sims=int(params["n_posterior_sims"]),
        seed=int(params["posterior_seed"]),
    )
    resid = input_slice.value - basis.design(input_slice.norm, input_slice.x, input_slice.y) @ fit.coef
    n = input_slice.n_obs
    ss_tot = float(np.sum((input_slice.value - input_slice.value.mean()) ** 2))
    # adjusted R-squared; undefined for a constant response
    r2 = 1.0 - (float(resid @ resid) / (n - fit.edf)) / (ss_tot / (n - 1)) if ss_tot > 0 else None
    return Success(values={
        "n_obs": n,
        "n_pixels": input_slice.n_pixels_observed,
        "norm_coef": float(fit.coef[0]),
        "r2": r2,
        "rmse": float(np.sqrt(np.mean(resid ** 2))),
        "pixel_ids": list(input_slice.grid_ids),
        "mean": post.mean.tolist(),
        "lwr": post.lwr.tolist(),
        "upr": post.upr.tolist(),
    })


# === REGISTRY ===

_DERIV_COLUMNS = ("n_obs", "deriv_mean", "deriv_lwr", "deriv_upr", "deriv_sig")

PHASES: dict[str, PhaseSpec] = {
    spec.name: spec
    for spec in (
        PhaseSpec("baseline", "pixel", ("n_obs", "edf", "norm_mean", "norm_se"), fit_baseline),
        PhaseSpec(
            "year_spline", "pixel_year",
            ("n_obs", "n_target_obs", "k", "year_mean", "year_se"), fit_year,
        ),
        PhaseSpec("doy_norm", "doy", ("n_obs", "pixel_ids", "mean", "lwr", "upr"), fit_doy_norm),
        PhaseSpec("baseline_derivatives", "pixel", _DERIV_COLUMNS, fit_baseline_derivatives),
        PhaseSpec("year_derivatives", "pixel_year", _DERIV_COLUMNS, fit_year_derivatives),
        PhaseSpec(
            "doy_year", "doy_year",
            ("n_obs", "n_pixels", "norm_coef", "r2", "rmse", "pixel_ids", "mean", "lwr", "upr"),
            fit_doy_year,
            requires="doy_norm",
        ),
    )
}


def get_phase(name: str) -> PhaseSpec:
    """Look up a phase by name.

    Raises:
        KeyError: If the phase is unknown.
    """
    try:
        return PHASES[name]
    except KeyError:
        raise KeyError(f"Unknown phase {name!r}; known: {sorted(PHASES)}") from None
