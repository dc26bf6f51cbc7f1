# src/catalog/catalog.py - v2
"""Work-unit catalog: enumerate every unit of a phase, compute what remains.

Enumeration order is deterministic (entity, then year, then day of year) so
that resumption and output ordering are reproducible. Units with thin or
missing source data are not filtered here; the fit function classifies them
as failures so that they are never silently absent from the run record.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable, Iterator, Sequence
from typing import Literal

from vifit.core.errors import CatalogError
from vifit.core.models import Batch, WorkUnit

logger = logging.getLogger(__name__)

UnitKind = Literal["pixel", "pixel_year", "doy", "doy_year"]

DAYS_PER_YEAR = 365


class WorkUnitCatalog:
    """Ordered, duplicate-free set of work units for one phase."""

    def __init__(self, units: Iterable[WorkUnit]) -> None:
        unique = {u.token: u for u in units}
        self._units = sorted(unique.values(), key=WorkUnit.sort_key)
        self._order = {u.token: i for i, u in enumerate(self._units)}

    def __len__(self) -> int:
        return len(self._units)

    def __contains__(self, token: object) -> bool:
        return token in self._order

    def enumerate_all(self) -> list[WorkUnit]:
        """Return every unit in deterministic order."""
        return list(self._units)

    def position(self, token: str) -> int:
        """Catalog position of a unit token (used to order output rows)."""
        return self._order[token]

    def unknown_tokens(self, tokens: Iterable[str]) -> list[str]:
        """Tokens that are not part of this catalog."""
        return [t for t in tokens if t not in self._order]

    @staticmethod
    def remaining(
        all_units: Sequence[WorkUnit], completed_tokens: Collection[str]
    ) -> list[WorkUnit]:
        """Units of ``all_units`` whose token is not in ``completed_tokens``.

        Set-based membership, so the cost is linear in the catalog size.
        Input order is preserved.
        """
        done = completed_tokens if isinstance(completed_tokens, (set, frozenset)) else set(completed_tokens)
        return [u for u in all_units if u.token not in done]


def build_catalog(
    kind: UnitKind,
    pixel_ids: Iterable[str] = (),
    years: Iterable[int] = (),
) -> WorkUnitCatalog:
    """Build the catalog for a unit kind.

    Args:
        kind: ``pixel``, ``pixel_year``, ``doy`` or ``doy_year``.
        pixel_ids: Entities present in the input table.
        years: Target years (``pixel_year`` and ``doy_year`` only).

    Raises:
        CatalogError: If the catalog would be empty.
    """
    pixels = sorted(set(pixel_ids))
    year_list = sorted(set(years))

    if kind == "pixel":
        units = [WorkUnit(pixel_id=p) for p in pixels]
    elif kind == "pixel_year":
        units = [WorkUnit(pixel_id=p, year=y) for p in pixels for y in year_list]
    elif kind == "doy":
        units = [WorkUnit(yday=d) for d in range(1, DAYS_PER_YEAR + 1)]
    elif kind == "doy_year":
        units = [WorkUnit(year=y, yday=d) for y in year_list for d in range(1, DAYS_PER_YEAR + 1)]
    else:
        raise CatalogError(f"Unknown unit kind: {kind!r}")

    if not units:
        raise CatalogError(
            f"Empty catalog for unit kind {kind!r} "
            f"({len(pixels)} pixels, {len(year_list)} years)"
        )

    catalog = WorkUnitCatalog(units)
    logger.info("Catalog built: %d %s units", len(catalog), kind)
    return catalog


def iter_batches(
    units: Sequence[WorkUnit], batch_size: int, start_index: int = 0
) -> Iterator[Batch]:
    """Split units into contiguous, non-overlapping batches."""
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    for offset in range(0, len(units), batch_size):
        yield Batch(
            index=start_index + offset // batch_size,
            units=list(units[offset:offset + batch_size]),
        )


def iter_waves(units: Sequence[WorkUnit], wave_size: int) -> Iterator[Sequence[WorkUnit]]:
    """Split units into waves; each wave gets a freshly created worker pool."""
    if wave_size < 1:
        raise ValueError("wave_size must be >= 1")
    for offset in range(0, len(units), wave_size):
        yield units[offset:offset + wave_size]
