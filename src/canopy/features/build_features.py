#!/usr/bin/env python3
"""build_features.py

*how raw MODIS stacks become the EVI/LST stress-correlation map*

Runs the eager pipeline for both variables and joins them:

    query -> baseline ----------------+
          -> yearly composites (pool) -+-> differences -> z-scores --+
                                                                     +-> correlation -> forest mask
    query -> ... (same for LST) ------------------------------------+

Ordering is explicit: the baseline is built before any difference, and
z-scores wait for the complete difference series (the only barrier). Years
are independent, so yearly composites are built on a thread pool.

The catalog is anything with `query(product, date_range, bbox)` and
`classification(source, band, epoch, bbox)`; canopy.ingest.catalog provides
the GeoTIFF one.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from canopy.config import PipelineConfig, ProductSpec
from canopy.features.anomalies import anomaly_collection, zscore_collection
from canopy.features.annual import annual_means, difference_series, merge_annual
from canopy.features.composites import baseline_composite, yearly_composite
from canopy.features.correlation import correlation
from canopy.features.forest_mask import apply_forest_mask, reclassify_forest
from canopy.geo.region import Region
from canopy.raster import RasterGrid, TemporalCollection


@dataclass
class VariableResult:
    product: ProductSpec
    baseline: RasterGrid
    composites: Dict[int, RasterGrid]
    differences: TemporalCollection
    zscores: TemporalCollection
    annual: Dict[int, Optional[float]]
    difference_means: List[Tuple[date, Optional[float]]]


@dataclass
class CorrelationResult:
    correlation: RasterGrid
    unmasked: RasterGrid
    forest: RasterGrid
    evi: VariableResult
    lst: VariableResult

    @property
    def annual_table(self) -> List[Dict[str, Optional[float]]]:
        return annual_table(self.evi, self.lst)


def annual_table(evi: VariableResult, lst: VariableResult) -> List[Dict[str, Optional[float]]]:
    """Year-joined region-mean z-scores, one row per configured year."""
    return merge_annual(
        evi.annual, lst.annual,
        evi_name=f"{evi.product.name}_ZScore", lst_name=f"{lst.product.name}_ZScore",
    )


def query_range(cfg: PipelineConfig) -> Tuple[date, date]:
    """One date range that covers the baseline and every year's intervals."""
    first = min(cfg.baseline_start, date(cfg.start_year, 1, 1))
    # The last interval of the last year runs past span_days.
    last = date(cfg.end_year, 1, 1) + timedelta(days=cfg.interval_span_days + cfg.interval_days)
    return first, max(cfg.baseline_end, last)


def build_variable(catalog: Any, product: ProductSpec, cfg: PipelineConfig, region: Region) -> VariableResult:
    tag = f"[{product.name}]"
    start, end = query_range(cfg)
    print(f"{tag} query {product.source} {start} .. {end}")
    raw = catalog.query(product, (start, end), region.bbox)
    if len(raw) == 0:
        raise SystemExit(f"No {product.source} images between {start} and {end} for this region")
    print(f"{tag} {len(raw)} images")

    clip = region.mask_for(raw.template)

    print(f"{tag} baseline {cfg.baseline_start} .. {cfg.baseline_end}")
    baseline = baseline_composite(raw, product, cfg.baseline_start, cfg.baseline_end, region_mask=clip)

    with ThreadPoolExecutor(max_workers=cfg.max_workers) as pool:
        futures = {
            year: pool.submit(
                yearly_composite, raw, product, year,
                interval_days=cfg.interval_days, span_days=cfg.interval_span_days, region_mask=clip,
            )
            for year in cfg.years
        }
        composites = {year: f.result() for year, f in futures.items()}
    for year in cfg.years:
        print(f"{tag} {year} composite: {composites[year].valid_count} valid pixels")

    differences = anomaly_collection(composites, baseline)
    zscores = zscore_collection(differences, min_stddev=cfg.min_stddev)

    return VariableResult(
        product=product,
        baseline=baseline,
        composites=composites,
        differences=differences,
        zscores=zscores,
        annual=annual_means(zscores, cfg.years, scale=cfg.aggregate_scale, region_mask=clip),
        difference_means=difference_series(differences, scale=cfg.aggregate_scale, region_mask=clip),
    )


def run_variables(catalog: Any, cfg: PipelineConfig, region: Region) -> Tuple[VariableResult, VariableResult]:
    """EVI and LST pipelines up to z-scores and annual means."""
    return build_variable(catalog, cfg.evi, cfg, region), build_variable(catalog, cfg.lst, cfg, region)


def run_correlation(catalog: Any, cfg: PipelineConfig, region: Region) -> CorrelationResult:
    """Full run: both variables, correlation, forest mask."""
    evi, lst = run_variables(catalog, cfg, region)

    print(f"[CORR] {cfg.evi.name} x {cfg.lst.name} over {len(cfg.years)} years")
    unmasked = correlation(evi.zscores, lst.zscores)

    lc = cfg.land_cover
    print(f"[FOREST] {lc.source} {lc.band} epoch {lc.epoch} classes {list(lc.forest_classes)}")
    classification = catalog.classification(lc.source, lc.band, lc.epoch, region.bbox)
    forest = reclassify_forest(classification, lc.forest_classes)
    masked = apply_forest_mask(unmasked, forest)
    print(f"[CORR] {masked.valid_count} forest pixels with a defined correlation")

    return CorrelationResult(correlation=masked, unmasked=unmasked, forest=forest, evi=evi, lst=lst)
