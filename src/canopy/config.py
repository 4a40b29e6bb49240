#!/usr/bin/env python3
"""canopy.config

Shared configuration utilities for the canopy CLI subsystems.

This module provides the helpers used across canopy.ingest, canopy.features
and canopy.geo: strict YAML loading, AOI bbox resolution, and the typed
product/pipeline settings that drive the EVI/LST correlation run.

Design notes:
- YAML loading is strict: files must exist and be valid mappings.
- Bbox handling supports both top-level and per-region bounds in regions YAML.
- Pipeline settings fall back to the reference scenario (MODIS 2012-2022).
- All functions are pure (no side effects on import).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml


BBox = Tuple[float, float, float, float]


# -----------------------------------------------------------------------------
# YAML loading
# -----------------------------------------------------------------------------

def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return as dict.

    Raises SystemExit on missing file or invalid format (non-mapping).
    Config errors should fail fast.
    """
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


# -----------------------------------------------------------------------------
# Bounding box utilities
# -----------------------------------------------------------------------------
# Used by the catalog (window reads) and geo.region (clip extent).

def coerce_bbox(x: Any) -> Optional[BBox]:
    """Try to coerce [xmin, ymin, xmax, ymax] into a bbox tuple.

    Returns None if input is invalid or missing.
    """
    if x is None:
        return None
    if isinstance(x, (list, tuple)) and len(x) == 4:
        try:
            xmin, ymin, xmax, ymax = map(float, x)
        except (TypeError, ValueError):
            return None
        if xmin >= xmax or ymin >= ymax:
            return None
        return (xmin, ymin, xmax, ymax)
    return None


def union_bbox(bboxes: Iterable[BBox]) -> Optional[BBox]:
    """Compute the bounding box that contains all input bboxes.

    Returns None if input is empty.
    """
    bboxes = list(bboxes)
    if not bboxes:
        return None
    xmin = min(b[0] for b in bboxes)
    ymin = min(b[1] for b in bboxes)
    xmax = max(b[2] for b in bboxes)
    ymax = max(b[3] for b in bboxes)
    return (xmin, ymin, xmax, ymax)


def aoi_from_regions_yaml(regions_yaml: Dict[str, Any]) -> Optional[BBox]:
    """Resolve AOI bbox from a regions YAML dict.

    Accepts either:
    - top-level `bounds: [xmin, ymin, xmax, ymax]`
    - per-region entries with `bounds: [...]` under `regions:`

    If per-region bounds exist, returns their union.
    Returns None if no valid bounds found.
    """
    bbox = coerce_bbox(regions_yaml.get("bounds"))
    if bbox:
        return bbox

    regions = regions_yaml.get("regions")
    if isinstance(regions, list):
        bboxes: List[BBox] = []
        for r in regions:
            if isinstance(r, dict):
                b = coerce_bbox(r.get("bounds"))
                if b:
                    bboxes.append(b)
        return union_bbox(bboxes)

    return None


def format_bbox(b: BBox, precision: int = 5) -> str:
    """Format a bbox tuple as a readable string."""
    return f"[{b[0]:.{precision}f}, {b[1]:.{precision}f}, {b[2]:.{precision}f}, {b[3]:.{precision}f}]"


def parse_date(x: Any, what: str) -> date:
    """Accept a YAML date or an ISO string (YAML may already have parsed it)."""
    if isinstance(x, date):
        return x
    try:
        return date.fromisoformat(str(x))
    except ValueError as e:
        raise SystemExit(f"Invalid date for {what}: {x!r} (expected YYYY-MM-DD)") from e


# -----------------------------------------------------------------------------
# Product / pipeline settings
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ProductSpec:
    """One satellite variable: where it comes from and how to decode it.

    `value = raw * scale + offset` converts the integer encoding to physical
    units (EVI: x0.0001; LST: x0.02 - 273.15 for Kelvin -> Celsius).
    """
    name: str
    source: str
    value_band: str
    qa_band: str
    scale: float = 1.0
    offset: float = 0.0


@dataclass(frozen=True)
class LandCoverSpec:
    source: str = "mcd12q1"
    band: str = "LC_Type1"
    epoch: date = date(2020, 1, 1)
    forest_classes: Tuple[int, ...] = (1, 2, 3, 4, 5)


DEFAULT_EVI = ProductSpec(
    name="EVI", source="mod13q1", value_band="EVI", qa_band="SummaryQA", scale=0.0001
)
DEFAULT_LST = ProductSpec(
    name="LST", source="mod11a1", value_band="LST_Day_1km", qa_band="QC_Day",
    scale=0.02, offset=-273.15,
)


@dataclass(frozen=True)
class PipelineConfig:
    """Settings for one correlation run (reference scenario by default)."""
    start_year: int = 2012
    end_year: int = 2022
    baseline_start: date = date(2012, 1, 1)
    # End is exclusive, so 2022-12-31 itself is not in the baseline.
    baseline_end: date = date(2022, 12, 31)
    interval_days: int = 16
    interval_span_days: int = 365
    evi: ProductSpec = DEFAULT_EVI
    lst: ProductSpec = DEFAULT_LST
    land_cover: LandCoverSpec = field(default_factory=LandCoverSpec)
    aggregate_scale: Optional[float] = 1000.0
    min_stddev: float = 1e-9
    max_workers: int = 4

    @property
    def years(self) -> List[int]:
        return list(range(self.start_year, self.end_year + 1))


def _product_from_dict(d: Any, default: ProductSpec) -> ProductSpec:
    if d is None:
        return default
    if not isinstance(d, dict):
        raise SystemExit(f"Product block for {default.name} must be a mapping")
    return ProductSpec(
        name=str(d.get("name", default.name)),
        source=str(d.get("source", default.source)),
        value_band=str(d.get("value_band", default.value_band)),
        qa_band=str(d.get("qa_band", default.qa_band)),
        scale=float(d.get("scale", default.scale)),
        offset=float(d.get("offset", default.offset)),
    )


def pipeline_config_from_yaml(data: Dict[str, Any], section: str = "pipeline") -> PipelineConfig:
    """Build a PipelineConfig from a parsed pipeline YAML.

    Missing keys take the reference-scenario defaults; a missing section
    yields the defaults unchanged.
    """
    cfg = data.get(section, {})
    if not isinstance(cfg, dict):
        raise SystemExit(f"Expected '{section}:' mapping in pipeline YAML")

    base = PipelineConfig()
    start_year = int(cfg.get("start_year", base.start_year))
    end_year = int(cfg.get("end_year", base.end_year))
    if start_year > end_year:
        raise SystemExit(f"start_year ({start_year}) must be <= end_year ({end_year})")

    lc = cfg.get("land_cover") or {}
    if not isinstance(lc, dict):
        raise SystemExit("land_cover block must be a mapping")
    land_cover = LandCoverSpec(
        source=str(lc.get("source", base.land_cover.source)),
        band=str(lc.get("band", base.land_cover.band)),
        epoch=parse_date(lc.get("epoch", base.land_cover.epoch), "land_cover.epoch"),
        forest_classes=tuple(int(c) for c in lc.get("forest_classes", base.land_cover.forest_classes)),
    )

    scale = cfg.get("aggregate_scale", base.aggregate_scale)

    return PipelineConfig(
        start_year=start_year,
        end_year=end_year,
        baseline_start=parse_date(cfg.get("baseline_start", base.baseline_start), "baseline_start"),
        baseline_end=parse_date(cfg.get("baseline_end", base.baseline_end), "baseline_end"),
        interval_days=int(cfg.get("interval_days", base.interval_days)),
        interval_span_days=int(cfg.get("interval_span_days", base.interval_span_days)),
        evi=_product_from_dict(cfg.get("evi"), base.evi),
        lst=_product_from_dict(cfg.get("lst"), base.lst),
        land_cover=land_cover,
        aggregate_scale=float(scale) if scale is not None else None,
        min_stddev=float(cfg.get("min_stddev", base.min_stddev)),
        max_workers=max(1, int(cfg.get("max_workers", base.max_workers))),
    )


# -----------------------------------------------------------------------------
# Default paths
# -----------------------------------------------------------------------------
# Centralized so all CLIs use the same defaults.

DEFAULT_SOURCES_YAML = Path("config/sources.yaml")
DEFAULT_REGIONS_YAML = Path("config/regions.yaml")
DEFAULT_PIPELINE_YAML = Path("config/pipeline.yaml")
DEFAULT_OUT_DIR = Path("data/processed/correlation")
