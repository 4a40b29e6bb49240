#!/usr/bin/env python3
"""export.py

Optional sink: write a RasterGrid to a single-band GeoTIFF.

Output is float32 with NaN as nodata, tiled and deflate-compressed. The grid
must carry its geotransform; CRS is written when known.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import numpy as np
import rasterio

from canopy.raster import RasterGrid


def _ensure_dir(p: Path) -> None:
    p.mkdir(parents=True, exist_ok=True)


def write_geotiff(grid: RasterGrid, out_path: Path, *, overwrite: bool = False, description: Optional[str] = None) -> bool:
    """Write `grid`; returns False when the file exists and overwrite is off."""
    if grid.transform is None:
        raise ValueError(f"Grid {grid.band!r} has no geotransform; cannot write {out_path}")
    if out_path.exists() and not overwrite:
        print(f"[SKIP] {out_path.name}")
        return False

    h, w = grid.shape
    profile = dict(
        driver="GTiff",
        height=h,
        width=w,
        count=1,
        dtype="float32",
        crs=grid.crs,
        transform=grid.transform,
        nodata=np.nan,
    )
    # GTiff tiles must be multiples of 16; skip tiling for tiny rasters.
    if h >= 256 and w >= 256:
        profile.update(tiled=True, blockxsize=256, blockysize=256)
    profile.update(compress="deflate")

    _ensure_dir(out_path.parent)
    with rasterio.open(out_path, "w", **profile) as dst:
        dst.write(np.where(grid.valid, grid.data, np.nan).astype("float32"), 1)
        dst.set_band_description(1, description or grid.band or "")
    print(f"[EXPORT] {out_path}")
    return True
