#!/usr/bin/env python3
"""composites.py

Cloud-filtered median composites.

- interval composite: median of every clear image in [start, start + 16 d)
- yearly composite: median of that year's interval composites
- baseline: median of every clear image over the whole period

Intervals start every `interval_days` from day 0 up to `span_days` after the
year start and are NOT clamped to the calendar year, so the last window of a
year reads a few days of the next January.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import List, Optional

import numpy as np

from canopy.config import ProductSpec
from canopy.features.cloud_mask import apply_cloud_mask, qa_field_for
from canopy.raster import RasterGrid, TemporalCollection, reduce_grids


def interval_starts(year_start: date, interval_days: int = 16, span_days: int = 365) -> List[date]:
    """Start dates at day offsets 0, interval_days, ... <= span_days."""
    if interval_days <= 0:
        raise ValueError(f"interval_days must be positive, got {interval_days}")
    return [year_start + timedelta(days=d) for d in range(0, span_days + 1, interval_days)]


def _masked_median(collection: TemporalCollection, product: ProductSpec, timestamp: date) -> RasterGrid:
    field = qa_field_for(product.qa_band)
    clear = collection.map(lambda g: apply_cloud_mask(g, field))
    median = clear.reduce("median", band=product.value_band, timestamp=timestamp)
    return median.rescale(product.scale, product.offset)


def interval_composite(
    collection: TemporalCollection,
    product: ProductSpec,
    start: date,
    interval_days: int = 16,
) -> RasterGrid:
    """Scaled median of the clear images in [start, start + interval_days).

    An interval without images gives an all-no-data grid.
    """
    window = collection.filter_date(start, start + timedelta(days=interval_days))
    return _masked_median(window, product, start)


def yearly_composite(
    collection: TemporalCollection,
    product: ProductSpec,
    year: int,
    *,
    interval_days: int = 16,
    span_days: int = 365,
    region_mask: Optional[np.ndarray] = None,
) -> RasterGrid:
    """Median across the year's interval composites, clipped to the region."""
    year_start = date(year, 1, 1)
    intervals = [
        interval_composite(collection, product, start, interval_days)
        for start in interval_starts(year_start, interval_days, span_days)
    ]
    composite = reduce_grids(
        intervals, "median", template=collection.template, band=product.value_band, timestamp=year_start
    )
    if region_mask is not None:
        composite = composite.update_mask(region_mask)
    return composite


def baseline_composite(
    collection: TemporalCollection,
    product: ProductSpec,
    start: date,
    end: date,
    *,
    region_mask: Optional[np.ndarray] = None,
) -> RasterGrid:
    """Long-term reference: scaled median of every clear image in [start, end)."""
    baseline = _masked_median(collection.filter_date(start, end), product, start)
    if region_mask is not None:
        baseline = baseline.update_mask(region_mask)
    return baseline
