# src/pipeline/builder.py - v2
"""Wire an Orchestrator from Settings: input table, catalog, store, provider."""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import partial

from vifit.checkpoint.checkpoint_factory import create_checkpoint_store
from vifit.core.errors import CatalogError
from vifit.config.settings import Settings
from vifit.fitting.phases import get_phase
from vifit.pipeline.orchestrator import Orchestrator
from vifit.timeseries.provider import TimeseriesProvider
from vifit.timeseries.reader import read_timeseries_csv

logger = logging.getLogger(__name__)


def build_orchestrator(
    settings: Settings,
    stop_requested: Callable[[], bool] | None = None,
) -> Orchestrator:
    """Build the orchestrator for ``settings.phase``.

    The input table is read once here to enumerate the catalog. Worker
    processes each read their own copy through ``TimeseriesProvider.from_csv``;
    in-process runs reuse the table already loaded.

    Raises:
        CatalogError: If the input is missing, unreadable or yields no units,
            or if the phase reads an output that does not exist yet.
    """
    phase = get_phase(settings.phase)
    if phase.requires == "doy_norm" and not settings.doy_norms_path.is_file():
        raise CatalogError(
            f"Phase {phase.name!r} needs the doy_norm output at {settings.doy_norms_path}; "
            "run the doy_norm phase first or set NORMS_PATH"
        )
    params = settings.fit_params()
    table = read_timeseries_csv(settings.input_path)
    catalog = phase.build_catalog(table.pixel_ids(), settings.target_years)

    if settings.n_workers > 1:
        provider_factory = partial(TimeseriesProvider.from_csv, settings.input_path, params)
    else:
        provider_factory = partial(TimeseriesProvider, table, params)

    return Orchestrator(
        phase=phase,
        catalog=catalog,
        store=create_checkpoint_store(settings, phase.name),
        provider_factory=provider_factory,
        settings=settings,
        stop_requested=stop_requested,
    )
