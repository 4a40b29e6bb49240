#!/usr/bin/env python3

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import rasterio
import yaml
from rasterio.transform import from_origin

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from canopy.features.__main__ import main

# 2 x 4 grid: row 0 is forest (class 1), row 1 is cropland (class 12).
TRANSFORM = from_origin(10.0, 51.0, 0.25, 0.25)
SHAPE = (2, 4)
YEARS = (2012, 2013, 2014)
EVI_RAW = {2012: 6000, 2013: 4000, 2014: 5000}
LST_RAW = {2012: 15050, 2013: 14950, 2014: 15000}


def _write(path: Path, bands):
    bands = [np.asarray(b, dtype="int16") for b in bands]
    with rasterio.open(
        path, "w", driver="GTiff", height=SHAPE[0], width=SHAPE[1], count=len(bands),
        dtype="int16", crs="EPSG:4326", transform=TRANSFORM,
    ) as dst:
        for i, b in enumerate(bands, start=1):
            dst.write(b, i)


def _dump(path: Path, data) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


@pytest.fixture
def workspace(tmp_path):
    raw = tmp_path / "raw"
    raw.mkdir()
    qa = np.zeros(SHAPE)
    for year in YEARS:
        _write(raw / f"MOD13Q1.A{year}152.tif", [np.full(SHAPE, EVI_RAW[year]), qa])
        _write(raw / f"MOD11A1.A{year}152.tif", [np.full(SHAPE, LST_RAW[year]), qa])
    _write(raw / "MCD12Q1.A2020001.tif", [np.array([[1, 1, 1, 1], [12, 12, 12, 12]])])

    sources = _dump(tmp_path / "sources.yaml", {"sources": {
        "mod13q1": {"local_glob": str(raw / "MOD13Q1.*.tif"), "bands": {"EVI": 1, "SummaryQA": 2}},
        "mod11a1": {"local_glob": str(raw / "MOD11A1.*.tif"), "bands": {"LST_Day_1km": 1, "QC_Day": 2}},
        "mcd12q1": {"local_glob": str(raw / "MCD12Q1.*.tif"), "bands": {"LC_Type1": 1}},
    }})
    regions = _dump(tmp_path / "regions.yaml", {"crs": "EPSG:4326", "bounds": [10.0, 50.5, 11.0, 51.0]})
    pipeline = _dump(tmp_path / "pipeline.yaml", {"pipeline": {
        "start_year": 2012,
        "end_year": 2014,
        "baseline_start": "2012-01-01",
        "baseline_end": "2015-01-01",
        "aggregate_scale": None,
        "max_workers": 1,
    }})
    return tmp_path, [
        "--sources-yaml", str(sources),
        "--regions-yaml", str(regions),
        "--pipeline-yaml", str(pipeline),
    ]


def test_dry_run_writes_nothing(workspace, capsys):
    tmp_path, common = workspace
    out = tmp_path / "out"

    assert main(common + ["--dry-run", "correlate", "--out-dir", str(out)]) == 0
    assert not out.exists()
    printed = capsys.readouterr().out
    assert "Years: 2012..2014" in printed
    assert str(out) in printed


def test_missing_pipeline_yaml_uses_reference_defaults(workspace, capsys):
    tmp_path, common = workspace
    common[common.index("--pipeline-yaml") + 1] = str(tmp_path / "absent.yaml")

    assert main(common + ["--dry-run", "annual"]) == 0
    printed = capsys.readouterr().out
    assert "reference defaults" in printed
    assert "Years: 2012..2022" in printed


def test_correlate_exports_masked_map_and_intermediates(workspace):
    tmp_path, common = workspace
    out = tmp_path / "out"

    assert main(common + ["correlate", "--out-dir", str(out), "--export-intermediates"]) == 0

    expected = {"Correlation_Forest_Masked.tif", "annual_zscores.csv"}
    for name in ("EVI", "LST"):
        for kind in ("Difference", "ZScore"):
            expected |= {f"{name}_{kind}_{year}.tif" for year in YEARS}
    assert {p.name for p in out.iterdir()} == expected

    with rasterio.open(out / "Correlation_Forest_Masked.tif") as src:
        corr = src.read(1)
        assert src.descriptions[0] == "Correlation_Forest_Masked"
    assert corr[0] == pytest.approx([1.0] * 4)
    assert np.isnan(corr[1]).all()

    with rasterio.open(out / "EVI_ZScore_2013.tif") as src:
        assert src.descriptions[0] == "EVI_ZScore_2013"
        assert src.read(1)[0, 0] == pytest.approx(-1.0)

    table = pd.read_csv(out / "annual_zscores.csv")
    assert list(table.columns) == ["year", "EVI_ZScore", "LST_ZScore"]
    assert table["year"].tolist() == list(YEARS)


def test_correlate_skips_existing_outputs(workspace, capsys):
    tmp_path, common = workspace
    out = tmp_path / "out"
    assert main(common + ["correlate", "--out-dir", str(out)]) == 0
    capsys.readouterr()

    assert main(common + ["correlate", "--out-dir", str(out)]) == 0
    printed = capsys.readouterr().out
    assert "[SKIP] Correlation_Forest_Masked.tif" in printed
    assert "[SKIP] annual_zscores.csv" in printed


def test_annual_writes_csv(workspace, capsys):
    tmp_path, common = workspace
    csv = tmp_path / "tables" / "annual.csv"

    assert main(common + ["annual", "--csv", str(csv)]) == 0
    table = pd.read_csv(csv)
    assert table["year"].tolist() == list(YEARS)
    assert table["EVI_ZScore"].tolist() == pytest.approx([1.0, -1.0, 0.0])
    assert "EVI difference series" in capsys.readouterr().out
