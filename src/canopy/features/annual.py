#!/usr/bin/env python3
"""annual.py

Region-mean summaries used for the time-series charts.

- annual_means: one value per configured year from a Z-score series
- difference_series: one value per timestamp from a difference series
- merge_annual: year-joined table of the EVI and LST annual means

A year with no valid pixels is reported as None (absent), never 0.

Means are taken at an output scale (1000 m in the reference run): the grid
is first block-averaged from its native resolution to that scale, ignoring
no-data, and the mean is taken over the coarse cells.
"""

from __future__ import annotations

from datetime import date
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from canopy.raster import RasterGrid, TemporalCollection, reduce_grids


METERS_PER_DEGREE = 111_320.0


def coarsen_factor(grid: RasterGrid, scale: Optional[float]) -> int:
    """Integer block size that takes `grid` to roughly `scale` metres per pixel."""
    res = grid.resolution
    if scale is None or res is None:
        return 1
    px = res[0]
    if getattr(grid.crs, "is_geographic", False):
        px *= METERS_PER_DEGREE
    if px <= 0:
        return 1
    return max(1, int(round(scale / px)))


def coarsen(grid: RasterGrid, factor: int) -> np.ndarray:
    """Block means of size factor x factor; partial edge blocks are kept."""
    if factor <= 1:
        return np.array(grid.data)
    h, w = grid.shape
    hp = -(-h // factor) * factor
    wp = -(-w // factor) * factor
    padded = np.full((hp, wp), np.nan)
    padded[:h, :w] = grid.data
    blocks = padded.reshape(hp // factor, factor, wp // factor, factor)
    count = np.isfinite(blocks).sum(axis=(1, 3))
    total = np.nansum(blocks, axis=(1, 3))
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(count > 0, total / count, np.nan)


def region_mean(
    grid: RasterGrid,
    *,
    scale: Optional[float] = None,
    region_mask: Optional[np.ndarray] = None,
) -> Optional[float]:
    """Mean of the valid pixels inside the region, or None if there are none."""
    if region_mask is not None:
        grid = grid.update_mask(region_mask)
    values = coarsen(grid, coarsen_factor(grid, scale))
    values = values[np.isfinite(values)]
    if values.size == 0:
        return None
    return float(values.mean())


def annual_means(
    zscores: TemporalCollection,
    years: Sequence[int],
    *,
    scale: Optional[float] = None,
    region_mask: Optional[np.ndarray] = None,
) -> Dict[int, Optional[float]]:
    """Region-mean Z-score per year; every year in `years` gets an entry."""
    out: Dict[int, Optional[float]] = {}
    for year in years:
        in_year = zscores.filter_date(date(year, 1, 1), date(year + 1, 1, 1))
        if len(in_year) == 0:
            out[year] = None
            continue
        annual = reduce_grids(list(in_year), "mean", template=zscores.template)
        out[year] = region_mean(annual, scale=scale, region_mask=region_mask)
    return out


def difference_series(
    differences: TemporalCollection,
    *,
    scale: Optional[float] = None,
    region_mask: Optional[np.ndarray] = None,
) -> List[Tuple[date, Optional[float]]]:
    """(timestamp, region mean) for each difference grid, in time order."""
    return [
        (g.timestamp, region_mean(g, scale=scale, region_mask=region_mask))
        for g in differences.sorted()
    ]


def merge_annual(
    evi: Dict[int, Optional[float]],
    lst: Dict[int, Optional[float]],
    evi_name: str = "EVI_ZScore",
    lst_name: str = "LST_ZScore",
) -> List[Dict[str, Optional[float]]]:
    """Rows of {year, EVI_ZScore, LST_ZScore}, keyed by the EVI years."""
    return [{"year": year, evi_name: evi[year], lst_name: lst.get(year)} for year in sorted(evi)]
