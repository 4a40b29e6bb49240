#!/usr/bin/env python3
"""region.py

Region of interest: the bbox every raster read is windowed to, plus an
optional polygon outline that composites are clipped to.

regions YAML:
    bounds: [xmin, ymin, xmax, ymax]          # or per-region bounds under regions:
    polygon: data/interim/vectors/roi.gpkg     # optional GeoPackage / GeoJSON
    polygon_layer: roi                         # optional layer name
    crs: EPSG:4326                             # CRS of bounds (default WGS84)

If only a polygon is given, its total bounds become the bbox.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import geopandas as gpd
import numpy as np
from rasterio.features import geometry_mask

from canopy.config import BBox, aoi_from_regions_yaml
from canopy.raster import GridSpec


@dataclass(frozen=True)
class Region:
    bbox: BBox
    crs: str = "EPSG:4326"
    outline: Optional[gpd.GeoDataFrame] = None

    def mask_for(self, spec: GridSpec) -> Optional[np.ndarray]:
        """True inside the outline on `spec`'s grid; None when there is nothing to clip."""
        if self.outline is None or spec.transform is None:
            return None
        outline = self.outline
        if spec.crs is not None:
            outline = outline.to_crs(spec.crs)
        geoms = [g for g in outline.geometry if g is not None and not g.is_empty]
        if not geoms:
            return np.zeros(spec.shape, dtype=bool)
        return geometry_mask(geoms, out_shape=spec.shape, transform=spec.transform, invert=True)


def load_outline(path: Path, layer: Optional[str] = None, crs: str = "EPSG:4326") -> gpd.GeoDataFrame:
    if not path.exists():
        raise SystemExit(f"Region polygon not found: {path}")
    gdf = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
    if gdf.empty:
        raise SystemExit(f"Region polygon file has zero features: {path}")
    if gdf.crs is None:
        raise SystemExit(f"Region polygon has no CRS: {path}")
    return gdf.to_crs(crs)


def region_from_yaml(regions_yaml: Dict[str, Any]) -> Region:
    """Resolve the Region from a parsed regions YAML."""
    crs = str(regions_yaml.get("crs", "EPSG:4326"))

    outline = None
    polygon = regions_yaml.get("polygon")
    if polygon:
        outline = load_outline(Path(str(polygon)), regions_yaml.get("polygon_layer"), crs=crs)

    bbox = aoi_from_regions_yaml(regions_yaml)
    if bbox is None and outline is not None:
        xmin, ymin, xmax, ymax = (float(v) for v in outline.total_bounds)
        bbox = (xmin, ymin, xmax, ymax)
    if bbox is None:
        raise SystemExit(
            "Could not resolve AOI bounds from regions YAML. "
            "Add top-level 'bounds: [xmin,ymin,xmax,ymax]', per-region bounds under 'regions:', or 'polygon:'"
        )
    return Region(bbox=bbox, crs=crs, outline=outline)
