#!/usr/bin/env python3
"""correlation.py

Per-pixel correlation between two year-aligned Z-score series.

    XX = sum(A * B)
    YY = sqrt(sum(A^2) * sum(B^2))
    r  = XX / YY

Z-scores are already centred and scaled, so this cosine form stands in for
Pearson's r. All three sums run over the years valid in both series, which
keeps |r| <= 1 up to rounding. The result is not clamped.

No-data where fewer than two years are valid in both series or YY == 0.
"""

from __future__ import annotations

from typing import List, Tuple

import numpy as np

from canopy.raster import RasterGrid, TemporalCollection, check_aligned


def _paired(a: TemporalCollection, b: TemporalCollection) -> List[Tuple[RasterGrid, RasterGrid]]:
    ta = sorted(a.timestamps)
    tb = sorted(b.timestamps)
    if ta != tb:
        raise ValueError(f"Z-score series cover different years: {ta} vs {tb}")
    if len(set(ta)) != len(ta):
        raise ValueError(f"Duplicate timestamps in Z-score series: {ta}")
    pairs = [(a.get(t), b.get(t)) for t in ta]
    for ga, gb in pairs:
        check_aligned(ga, gb)
    return pairs


def correlation(a: TemporalCollection, b: TemporalCollection, min_years: int = 2) -> RasterGrid:
    """Correlation grid between series `a` and `b` (symmetric in a, b)."""
    pairs = _paired(a, b)
    if not pairs:
        if a.template is None:
            raise ValueError("Cannot correlate empty series without a grid template")
        return RasterGrid.empty(a.template, band="correlation")

    za = np.stack([ga.data for ga, _ in pairs])
    zb = np.stack([gb.data for _, gb in pairs])
    both = np.isfinite(za) & np.isfinite(zb)
    za = np.where(both, za, 0.0)
    zb = np.where(both, zb, 0.0)

    xx = np.sum(za * zb, axis=0)
    sa2 = np.sum(za * za, axis=0)
    sb2 = np.sum(zb * zb, axis=0)
    yy = np.sqrt(sa2 * sb2)
    n = both.sum(axis=0)

    with np.errstate(divide="ignore", invalid="ignore"):
        r = xx / yy

    ref = pairs[0][0]
    return RasterGrid(
        data=r,
        valid=(n >= min_years) & (yy > 0),
        transform=ref.transform,
        crs=ref.crs,
        band="correlation",
    )
