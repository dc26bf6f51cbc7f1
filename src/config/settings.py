# src/config/settings.py - v3
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for run parameters (batching, checkpointing, pool
size) and fit parameters (knots, padding, thresholds, posterior seeds).
Every value a worker needs is handed over explicitly through
``Settings.fit_params()``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from vifit.storage import layout

MAX_WORKERS = 16

PhaseName = Literal[
    "baseline",
    "year_spline",
    "doy_norm",
    "baseline_derivatives",
    "year_derivatives",
    "doy_year",
]


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from .env file (``VIFIT_`` prefix)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="VIFIT_",
        extra="ignore",
    )

    # === Run ===
    phase: PhaseName = "baseline"
    input_path: Path = Path("data/ndvi_timeseries.csv")
    output_dir: Path = Path("output")

    # === Checkpointing ===
    checkpoint_backend: Literal["sqlite", "jsonl"] = "sqlite"
    checkpoint_interval: int = 100
    retry_failed_on_resume: bool = True

    # === Worker pool ===
    n_workers: int = 4
    batch_size: int = 8
    pool_recycle_units: int = 5000
    start_method: Literal["fork", "spawn", "forkserver"] | None = None
    blas_threads_per_worker: int = 1

    # === Progress ===
    progress_every: int = 50

    # === Output ===
    output_format: Literal["csv", "jsonl"] = "csv"

    # === Years ===
    baseline_year_start: int = 2013
    baseline_year_end: int = 2024
    target_year_start: int = 2013
    target_year_end: int = 2024

    # === Temporal splines ===
    gam_knots: int = 12
    edge_padding_days: int = 31
    min_obs_baseline: int = 20
    min_obs_year: int = 15
    min_target_year_obs: int = 10

    # === DOY-looped spatial norms ===
    doy_window: int = 7
    min_obs_doy: int = 50
    spatial_knots: int = 6

    # === DOY-looped year predictions ===
    year_window: int = 16
    min_pixel_coverage: float = 0.33
    norms_path: Path | None = None

    # === Posterior simulation / derivatives ===
    n_posterior_sims: int = 100
    posterior_seed: int = 1034
    derivative_seed: int = 1124
    derivative_eps: float = 1e-4
    alpha: float = 0.05

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "text"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30

    # --- Validators ---

    @field_validator(
        "checkpoint_interval",
        "batch_size",
        "pool_recycle_units",
        "progress_every",
        "n_posterior_sims",
        "blas_threads_per_worker",
        "year_window",
    )
    @classmethod
    def validate_positive(cls, v: int, info) -> int:  # noqa: N805
        if v < 1:
            raise ValueError(f"{info.field_name} must be >= 1")
        return v

    @field_validator("gam_knots", "spatial_knots")
    @classmethod
    def validate_knots(cls, v: int, info) -> int:  # noqa: N805
        if v < 4:
            raise ValueError(f"{info.field_name} must be >= 4")
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        if not 1 <= self.n_workers <= MAX_WORKERS:
            errors.append(f"N_WORKERS must be between 1 and {MAX_WORKERS}")

        if self.baseline_year_start > self.baseline_year_end:
            errors.append("BASELINE_YEAR_START must be <= BASELINE_YEAR_END")

        if self.target_year_start > self.target_year_end:
            errors.append("TARGET_YEAR_START must be <= TARGET_YEAR_END")

        if not 0 <= self.doy_window < 182:
            errors.append("DOY_WINDOW must be in [0, 182)")

        if not 0 <= self.edge_padding_days <= 182:
            errors.append("EDGE_PADDING_DAYS must be in [0, 182]")

        if not 0.0 < self.alpha < 1.0:
            errors.append("ALPHA must be in (0, 1)")

        if not 0.0 < self.min_pixel_coverage <= 1.0:
            errors.append("MIN_PIXEL_COVERAGE must be in (0, 1]")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self

    # --- Helpers ---

    @property
    def baseline_years(self) -> list[int]:
        return list(range(self.baseline_year_start, self.baseline_year_end + 1))

    @property
    def target_years(self) -> list[int]:
        return list(range(self.target_year_start, self.target_year_end + 1))

    @property
    def doy_norms_path(self) -> Path:
        """DOY norms used as covariate by ``doy_year``; the ``doy_norm`` output by default."""
        if self.norms_path is not None:
            return self.norms_path
        return layout.output_path(self.output_dir, "doy_norm", self.output_format)

    def fit_params(self) -> dict[str, Any]:
        """Plain, picklable parameter mapping passed to every worker."""
        return {
            "baseline_years": self.baseline_years,
            "target_years": self.target_years,
            "gam_knots": self.gam_knots,
            "edge_padding_days": self.edge_padding_days,
            "min_obs_baseline": self.min_obs_baseline,
            "min_obs_year": self.min_obs_year,
            "min_target_year_obs": self.min_target_year_obs,
            "doy_window": self.doy_window,
            "min_obs_doy": self.min_obs_doy,
            "spatial_knots": self.spatial_knots,
            "year_window": self.year_window,
            "min_pixel_coverage": self.min_pixel_coverage,
            "norms_path": str(self.doy_norms_path),
            "n_posterior_sims": self.n_posterior_sims,
            "posterior_seed": self.posterior_seed,
            "derivative_seed": self.derivative_seed,
            "derivative_eps": self.derivative_eps,
            "alpha": self.alpha,
        }


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (for testing or CLI flags).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
