#!/usr/bin/env python3
"""forest_mask.py

Forest mask from a land-cover classification (MODIS MCD12Q1 LC_Type1 by
default, where classes 1-5 are the forest types).

The classification is first reclassified to 1 (forest) / 0 (anything else,
including no-data), and the mask is the test `reclassified == 1`. It is
applied once, to the final correlation grid only.
"""

from __future__ import annotations

from typing import Iterable

import numpy as np

from canopy.raster import RasterGrid, check_aligned


FOREST_CLASSES = (1, 2, 3, 4, 5)


def reclassify_forest(classification: RasterGrid, forest_classes: Iterable[int] = FOREST_CLASSES) -> RasterGrid:
    """0/1 grid: 1 where the class code is one of `forest_classes`."""
    codes = np.nan_to_num(classification.data, nan=-1).astype(np.int64)
    is_forest = np.isin(codes, list(forest_classes)) & classification.valid
    return RasterGrid(
        data=is_forest.astype(np.float64),
        valid=np.ones(classification.shape, dtype=bool),
        transform=classification.transform,
        crs=classification.crs,
        timestamp=classification.timestamp,
        band="forest",
    )


def apply_forest_mask(grid: RasterGrid, mask_grid: RasterGrid) -> RasterGrid:
    """Keep `grid` where the reclassified mask is 1; no-data elsewhere."""
    check_aligned(grid, mask_grid)
    return grid.update_mask(mask_grid.data == 1)
