#!/usr/bin/env python3
"""catalog.py

Local GeoTIFF catalog: the data-access boundary of the pipeline.

Each source in sources.yaml names a glob of GeoTIFFs (one acquisition per
file), a regex that pulls the acquisition date out of the file name, and the
1-based band index of every band we need. A band can also live in its own
set of files (`band_globs`); files are then paired by acquisition date.

    sources:
      mod13q1:
        local_glob: data/raw/modis/MOD13Q1/*.tif
        date_regex: "A(?P<year>\\d{4})(?P<doy>\\d{3})"
        bands: {EVI: 2, SummaryQA: 12}

Reads are window reads of the AOI bbox (same strategy as a COG subset read),
so all products must already sit on one pixel grid.

Raster I/O failures are retried a bounded number of times, then surface as
SourceUnavailableError. Nothing downstream retries.

Required deps: rasterio, numpy
"""

from __future__ import annotations

import glob
import re
import time
from dataclasses import dataclass, field
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import rasterio
from rasterio.errors import RasterioIOError
from rasterio.warp import transform_bounds
from rasterio.windows import from_bounds

from canopy.config import BBox, ProductSpec
from canopy.raster import GridSpec, RasterGrid, TemporalCollection


# All QA bits set: "not clear" under every registered QA field.
QA_FILL = 0xFF


class SourceUnavailableError(RuntimeError):
    """A raster could not be read after the retry budget was spent."""

    def __init__(self, path: Path, attempts: int, cause: Exception):
        super().__init__(f"Failed to read {path} after {attempts} attempt(s): {cause}")
        self.path = path
        self.attempts = attempts


@dataclass(frozen=True)
class SourceSpec:
    source_id: str
    local_glob: str
    date_regex: str
    bands: Dict[str, int]
    band_globs: Dict[str, str] = field(default_factory=dict)


def source_from_yaml(sources_yaml: Dict[str, Any], source_id: str) -> SourceSpec:
    sources = sources_yaml.get("sources", {})
    cfg = sources.get(source_id) if isinstance(sources, dict) else None
    if not isinstance(cfg, dict):
        raise SystemExit(f"sources.yaml missing sources: -> {source_id}")

    local_glob = cfg.get("local_glob")
    if not local_glob:
        raise SystemExit(f"{source_id} config missing local_glob")

    bands = cfg.get("bands")
    if not isinstance(bands, dict) or not bands:
        raise SystemExit(f"{source_id} config missing bands: mapping (name -> 1-based index)")

    band_globs = cfg.get("band_globs") or {}
    if not isinstance(band_globs, dict):
        raise SystemExit(f"{source_id} band_globs must be a mapping")

    return SourceSpec(
        source_id=source_id,
        local_glob=str(local_glob),
        date_regex=str(cfg.get("date_regex", r"A(?P<year>\d{4})(?P<doy>\d{3})")),
        bands={str(k): int(v) for k, v in bands.items()},
        band_globs={str(k): str(v) for k, v in band_globs.items()},
    )


def parse_timestamp(name: str, pattern: str) -> Optional[date]:
    """Acquisition date from a file name.

    The regex needs named groups `year` + `doy` (MODIS A2012001 style) or
    `year` + `month` + `day`. Returns None when the name does not match.
    """
    m = re.search(pattern, name)
    if not m:
        return None
    g = m.groupdict()
    if "year" not in g:
        raise ValueError(f"date_regex must define a 'year' group: {pattern}")
    year = int(g["year"])
    if g.get("doy"):
        return date(year, 1, 1) + timedelta(days=int(g["doy"]) - 1)
    if g.get("month") and g.get("day"):
        return date(year, int(g["month"]), int(g["day"]))
    raise ValueError(f"date_regex must define 'doy' or 'month'+'day' groups: {pattern}")


def _safe_round_window(win):
    """Round window offsets/lengths to integers (GDAL prefers integer windows)."""
    return win.round_offsets().round_lengths()


class GeoTIFFCatalog:
    """`query` / `classification` over local GeoTIFF stacks."""

    def __init__(
        self,
        sources_yaml: Dict[str, Any],
        *,
        region_crs: str = "EPSG:4326",
        retries: int = 3,
        retry_delay: float = 2.0,
    ):
        self.sources_yaml = sources_yaml
        self.region_crs = region_crs
        self.retries = max(1, int(retries))
        self.retry_delay = retry_delay

    # --- discovery ---

    def source(self, source_id: str) -> SourceSpec:
        return source_from_yaml(self.sources_yaml, source_id)

    def list_files(self, source_id: str, band: str) -> Dict[date, Path]:
        """Acquisition date -> file holding `band` for that date."""
        spec = self.source(source_id)
        if band not in spec.bands:
            raise SystemExit(f"Band {band!r} not configured for source {source_id} (have: {sorted(spec.bands)})")
        pattern = spec.band_globs.get(band, spec.local_glob)
        out: Dict[date, Path] = {}
        for p in sorted(Path(x) for x in glob.glob(pattern, recursive=True)):
            ts = parse_timestamp(p.name, spec.date_regex)
            if ts is not None:
                out[ts] = p
        return out

    # --- reads ---

    def _open_with_retry(self, path: Path, reader):
        last: Optional[Exception] = None
        for attempt in range(1, self.retries + 1):
            try:
                with rasterio.open(path) as src:
                    return reader(src)
            except RasterioIOError as e:
                last = e
                if attempt < self.retries:
                    print(f"  - warning: read failed ({e}); retry {attempt}/{self.retries - 1}")
                    time.sleep(self.retry_delay * attempt)
        raise SourceUnavailableError(path, self.retries, last) from last

    def _window(self, src, region: BBox):
        bbox = region
        if src.crs is not None and str(src.crs).upper() != self.region_crs.upper():
            bbox = transform_bounds(self.region_crs, src.crs, *region, densify_pts=21)
        return _safe_round_window(from_bounds(*bbox, transform=src.transform))

    def read_band(self, path: Path, band_index: int, region: BBox, **meta: Any) -> RasterGrid:
        """Window-read one band as a RasterGrid; nodata and NaN are invalid."""
        def _read(src):
            win = self._window(src, region)
            data = src.read(band_index, window=win, out_dtype="float64", boundless=True, fill_value=np.nan)
            return RasterGrid.from_array(
                data, nodata=src.nodata, transform=src.window_transform(win), crs=src.crs, **meta
            )
        return self._open_with_retry(path, _read)

    def read_qa(self, path: Path, band_index: int, region: BBox) -> np.ndarray:
        """Window-read a QA band. Samples outside the file read as QA_FILL (never clear)."""
        def _read(src):
            win = self._window(src, region)
            fill = src.nodata if src.nodata is not None else QA_FILL
            return src.read(band_index, window=win, boundless=True, fill_value=fill)
        return self._open_with_retry(path, _read)

    # --- collaborator contract ---

    def query(self, product: ProductSpec, date_range: Tuple[date, date], region: BBox) -> TemporalCollection:
        """Value band + QA band of every acquisition with start <= date < end."""
        start, end = date_range
        spec = self.source(product.source)
        values = self.list_files(product.source, product.value_band)
        qas = self.list_files(product.source, product.qa_band)

        grids: List[RasterGrid] = []
        for ts in sorted(values):
            if not (start <= ts < end):
                continue
            qa_path = qas.get(ts)
            if qa_path is None:
                print(f"  - warning: no {product.qa_band} file for {product.source} {ts}; skipping")
                continue
            grid = self.read_band(values[ts], spec.bands[product.value_band], region,
                                  timestamp=ts, band=product.value_band)
            qa = self.read_qa(qa_path, spec.bands[product.qa_band], region)
            grids.append(grid.replace(qa=qa))

        template: Optional[GridSpec] = grids[0].spec if grids else None
        return TemporalCollection(grids, template=template)

    def classification(self, source_id: str, band: str, epoch: date, region: BBox) -> RasterGrid:
        """First classification image acquired in the epoch's year."""
        files = self.list_files(source_id, band)
        year_end = date(epoch.year + 1, 1, 1)
        in_epoch = [ts for ts in sorted(files) if epoch <= ts < year_end]
        if not in_epoch:
            raise SystemExit(f"No {source_id} {band} image between {epoch} and {year_end}")
        ts = in_epoch[0]
        return self.read_band(files[ts], self.source(source_id).bands[band], region, timestamp=ts, band=band)
