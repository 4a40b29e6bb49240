#!/usr/bin/env python3
"""anomalies.py

Per-year anomalies against the baseline, and their Z-scores.

anomaly[year] = composite[year] - baseline
zscore[year]  = anomaly[year] / stddev_over_years(anomaly)

The stddev is the sample stddev (ddof=1) over the years that are valid at
each pixel. Pixels valid in fewer than two years, or whose stddev is at or
below `min_stddev`, are no-data in every year's Z-score.
"""

from __future__ import annotations

from typing import Dict, Mapping

import numpy as np

from canopy.raster import RasterGrid, TemporalCollection, check_aligned


def anomaly(composite: RasterGrid, baseline: RasterGrid) -> RasterGrid:
    """composite - baseline; no-data in either operand gives no-data."""
    check_aligned(composite, baseline)
    return composite.with_values(composite.data - baseline.data, valid=baseline.valid)


def anomaly_collection(composites: Mapping[int, RasterGrid], baseline: RasterGrid) -> TemporalCollection:
    """Difference grids for every year, timestamped at the year start."""
    return TemporalCollection(
        (anomaly(composites[y], baseline) for y in sorted(composites)), template=baseline.spec
    )


def cross_year_stddev(anomalies: TemporalCollection, min_stddev: float = 1e-9) -> RasterGrid:
    """Per-pixel sample stddev across all years; near-zero spread is no-data.

    Needs the complete series: call only once every year's anomaly exists.
    """
    sd = anomalies.reduce("stddev", band="stddev")
    return sd.update_mask(np.nan_to_num(sd.data, nan=0.0) > min_stddev)


def zscore_collection(anomalies: TemporalCollection, min_stddev: float = 1e-9) -> TemporalCollection:
    """Divide each year's anomaly by the cross-year stddev."""
    sd = cross_year_stddev(anomalies, min_stddev=min_stddev)

    def _z(a: RasterGrid) -> RasterGrid:
        check_aligned(a, sd)
        with np.errstate(divide="ignore", invalid="ignore"):
            z = a.data / sd.data
        return a.with_values(z, valid=sd.valid, band="ZScore")

    return anomalies.map(_z)


def by_year(collection: TemporalCollection) -> Dict[int, RasterGrid]:
    return {g.timestamp.year: g for g in collection}
