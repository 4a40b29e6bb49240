#!/usr/bin/env python3
"""canopy.features

Feature CLI for canopy: EVI/LST anomaly Z-scores and their correlation.

This is one of the canopy subsystem CLIs:
- canopy.ingest   → local product inventory (verify)
- canopy.features → composites, anomalies, z-scores, correlation (this file)

Examples:
  # Forest-masked correlation map (+ annual table) for the configured AOI
  python -m canopy.features correlate --out-dir data/processed/correlation

  # Also write every year's difference and z-score grids
  python -m canopy.features correlate --export-intermediates

  # Only the annual region-mean z-scores and difference series
  python -m canopy.features annual --csv data/processed/annual_zscores.csv

  # See what would run
  python -m canopy.features --dry-run correlate
"""

from __future__ import annotations

import argparse
import dataclasses
from pathlib import Path
from typing import List, Optional

from canopy.config import (
    load_yaml,
    format_bbox,
    pipeline_config_from_yaml,
    PipelineConfig,
    DEFAULT_SOURCES_YAML,
    DEFAULT_REGIONS_YAML,
    DEFAULT_PIPELINE_YAML,
    DEFAULT_OUT_DIR,
)


# -----------------------------------------------------------------------------
# CLI structure
# -----------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="canopy.features",
        description="EVI/LST anomaly correlation for canopy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # --- Global args ---
    ap.add_argument("--sources-yaml", type=Path, default=DEFAULT_SOURCES_YAML,
                    help=f"Path to sources.yaml (default: {DEFAULT_SOURCES_YAML})")
    ap.add_argument("--regions-yaml", type=Path, default=DEFAULT_REGIONS_YAML,
                    help=f"Path to regions YAML (default: {DEFAULT_REGIONS_YAML})")
    ap.add_argument("--pipeline-yaml", type=Path, default=DEFAULT_PIPELINE_YAML,
                    help=f"Path to pipeline YAML (default: {DEFAULT_PIPELINE_YAML}; reference defaults if missing)")
    ap.add_argument("--dry-run", action="store_true", help="Print planned actions without reading rasters")
    ap.add_argument("--overwrite", action="store_true", help="Overwrite existing output files")
    ap.add_argument("--max-workers", type=int, default=None, help="Threads for per-year composites")
    ap.add_argument("--retries", type=int, default=3, help="Read attempts per raster before giving up")

    sub = ap.add_subparsers(dest="command", required=True)

    # --- correlate ---
    corr = sub.add_parser("correlate", help="Forest-masked EVI/LST z-score correlation map")
    corr.add_argument("--out-dir", type=Path, default=DEFAULT_OUT_DIR,
                      help=f"Output directory (default: {DEFAULT_OUT_DIR})")
    corr.add_argument("--export-intermediates", action="store_true",
                      help="Also write per-year difference and z-score GeoTIFFs")

    # --- annual ---
    ann = sub.add_parser("annual", help="Annual region-mean z-scores and difference series")
    ann.add_argument("--csv", type=Path, default=None, help="Optional path for the merged annual table")

    return ap


# -----------------------------------------------------------------------------
# Shared setup
# -----------------------------------------------------------------------------

def _load_pipeline(args: argparse.Namespace) -> PipelineConfig:
    if args.pipeline_yaml.exists():
        cfg = pipeline_config_from_yaml(load_yaml(args.pipeline_yaml))
    else:
        print(f"[CONFIG] {args.pipeline_yaml} not found; using reference defaults")
        cfg = PipelineConfig()
    if args.max_workers is not None:
        cfg = dataclasses.replace(cfg, max_workers=max(1, args.max_workers))
    return cfg


def _print_plan(cfg: PipelineConfig, bbox) -> None:
    print("[dry-run] Would compute:")
    print(f"  AOI bbox: {format_bbox(bbox)}")
    print(f"  Years: {cfg.start_year}..{cfg.end_year}")
    print(f"  Baseline: {cfg.baseline_start} .. {cfg.baseline_end} (end exclusive)")
    print(f"  Intervals: every {cfg.interval_days} d over {cfg.interval_span_days} d")
    for p in (cfg.evi, cfg.lst):
        print(f"  {p.name}: {p.source}/{p.value_band} x{p.scale} {p.offset:+} (QA {p.qa_band})")
    lc = cfg.land_cover
    print(f"  Forest: {lc.source}/{lc.band} @ {lc.epoch}, classes {list(lc.forest_classes)}")


def _run(args: argparse.Namespace, correlate: bool = True):
    """Load config, build the catalog, run the pipeline. None on dry-run."""
    cfg = _load_pipeline(args)
    regions_yaml = load_yaml(args.regions_yaml)

    # Lazy imports: keep --help fast, avoid loading geopandas/rasterio until needed
    from canopy.geo.region import region_from_yaml

    region = region_from_yaml(regions_yaml)
    if args.dry_run:
        _print_plan(cfg, region.bbox)
        return None

    from canopy.features.build_features import run_correlation, run_variables
    from canopy.ingest.catalog import GeoTIFFCatalog

    print(f"AOI bbox from config: {format_bbox(region.bbox)}")
    catalog = GeoTIFFCatalog(load_yaml(args.sources_yaml), region_crs=region.crs, retries=args.retries)
    if correlate:
        return run_correlation(catalog, cfg, region)
    return run_variables(catalog, cfg, region)


def _write_annual_csv(rows, path: Path, overwrite: bool) -> None:
    import pandas as pd

    if path.exists() and not overwrite:
        print(f"[SKIP] {path.name}")
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows).to_csv(path, index=False)
    print(f"[EXPORT] {path}")


def _print_annual(evi, lst) -> None:
    from canopy.features.build_features import annual_table

    rows = annual_table(evi, lst)
    names = [k for k in rows[0] if k != "year"] if rows else []
    print("Annual mean z-scores:")
    for row in rows:
        vals = ", ".join(f"{n}={'absent' if row[n] is None else f'{row[n]:.3f}'}" for n in names)
        print(f"  {row['year']}: {vals}")
    for var in (evi, lst):
        print(f"{var.product.name} difference series (region mean):")
        for ts, v in var.difference_means:
            print(f"  {ts}: {'absent' if v is None else f'{v:.4f}'}")


# -----------------------------------------------------------------------------
# Command handlers
# -----------------------------------------------------------------------------

def _handle_correlate(args: argparse.Namespace) -> int:
    result = _run(args)
    if result is None:
        print(f"  Output dir: {args.out_dir}")
        return 0

    from canopy.features.anomalies import by_year
    from canopy.geo.export import write_geotiff

    out = args.out_dir
    write_geotiff(result.correlation, out / "Correlation_Forest_Masked.tif", overwrite=args.overwrite,
                  description="Correlation_Forest_Masked")
    if args.export_intermediates:
        for var in (result.evi, result.lst):
            for kind, series in (("Difference", var.differences), ("ZScore", var.zscores)):
                for year, g in sorted(by_year(series).items()):
                    stem = f"{var.product.name}_{kind}_{year}"
                    write_geotiff(g, out / f"{stem}.tif", overwrite=args.overwrite, description=stem)
    _write_annual_csv(result.annual_table, out / "annual_zscores.csv", args.overwrite)
    return 0


def _handle_annual(args: argparse.Namespace) -> int:
    result = _run(args, correlate=False)
    if result is None:
        return 0
    evi, lst = result
    _print_annual(evi, lst)
    if args.csv:
        from canopy.features.build_features import annual_table

        _write_annual_csv(annual_table(evi, lst), args.csv, args.overwrite)
    return 0


# -----------------------------------------------------------------------------
# Main entrypoint
# -----------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    handlers = {
        "correlate": _handle_correlate,
        "annual": _handle_annual,
    }

    handler = handlers.get(args.command)
    if handler is None:
        raise SystemExit(f"Unknown command: {args.command}")

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
