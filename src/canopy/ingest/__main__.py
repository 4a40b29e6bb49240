#!/usr/bin/env python3
"""canopy.ingest

Local product inventory CLI for canopy.

This is one of the canopy subsystem CLIs:
- canopy.ingest   → local product inventory (this file)
- canopy.features → composites, anomalies, z-scores, correlation

The rasters themselves are fetched outside canopy; this only checks that
what sources.yaml points at is present and dated.

Examples:
  python -m canopy.ingest verify --source all
  python -m canopy.ingest verify --source mod13q1 --json
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from canopy.config import load_yaml, DEFAULT_SOURCES_YAML


# -----------------------------
# Verify helpers (lightweight)
# -----------------------------

def _verify_source(source_id: str, sources_yaml: Dict[str, Any]) -> Dict[str, Any]:
    """Presence check for one source.

    Every configured band must match at least one dated file; bands kept in
    separate files must cover the same acquisition dates. This does not open
    the rasters.
    """
    from canopy.ingest.catalog import GeoTIFFCatalog

    sources = sources_yaml.get("sources")
    if not isinstance(sources, dict) or source_id not in sources:
        return {"source": source_id, "ok": False, "reason": "unknown source"}

    catalog = GeoTIFFCatalog(sources_yaml)
    try:
        spec = catalog.source(source_id)
    except SystemExit as e:
        return {"source": source_id, "ok": False, "reason": f"bad config block ({e})"}

    per_band = {band: catalog.list_files(source_id, band) for band in spec.bands}
    counts = {band: len(files) for band, files in per_band.items()}
    result: Dict[str, Any] = {"source": source_id, "ok": all(counts.values()), "counts": counts}

    all_dates = sorted(set().union(*(files.keys() for files in per_band.values())))
    if all_dates:
        result["first"] = str(all_dates[0])
        result["last"] = str(all_dates[-1])

    unpaired = sorted({str(ts) for files in per_band.values() for ts in all_dates if ts not in files})
    if unpaired:
        result["ok"] = False
        result["reason"] = f"{len(unpaired)} date(s) missing a band"
        result["sample"] = unpaired[:5]
    elif not result["ok"]:
        empty = [b for b, n in counts.items() if n == 0]
        result["reason"] = f"no dated files for band(s): {empty}"
    return result


# -----------------------------
# CLI
# -----------------------------

def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="canopy.ingest", description="Local product inventory for canopy")
    ap.add_argument("--sources-yaml", type=Path, default=DEFAULT_SOURCES_YAML,
                    help=f"Path to sources.yaml (default: {DEFAULT_SOURCES_YAML})")

    sub = ap.add_subparsers(dest="command", required=True)

    ver = sub.add_parser("verify", help="Verify that local product files exist for every band")
    ver.add_argument("--source", default="all", help="Source id to verify (or 'all')")
    ver.add_argument("--json", action="store_true", help="Emit JSON to stdout")

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    sources_yaml = load_yaml(args.sources_yaml)

    if args.command == "verify":
        sources = sources_yaml.get("sources")
        if not isinstance(sources, dict):
            raise SystemExit("sources.yaml must contain top-level 'sources:' mapping")

        if args.source == "all":
            results = [_verify_source(sid, sources_yaml) for sid in sorted(sources.keys())]
        else:
            results = [_verify_source(args.source, sources_yaml)]

        ok = all(r.get("ok") for r in results)
        if args.json:
            print(json.dumps({"ok": ok, "results": results}, indent=2))
        else:
            for r in results:
                status = "OK" if r.get("ok") else "MISSING"
                print(f"[{status}] {r['source']}")
                if "reason" in r:
                    print(f"  - reason: {r['reason']}")
                for band, n in r.get("counts", {}).items():
                    print(f"  - {band}: {n} file(s)")
                if "first" in r:
                    print(f"  - dates: {r['first']} .. {r['last']}")
                for s in r.get("sample", []):
                    print(f"    - {s}")
            print(f"Overall: {'OK' if ok else 'NOT OK'}")
        return 0 if ok else 2

    raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":
    raise SystemExit(main())
