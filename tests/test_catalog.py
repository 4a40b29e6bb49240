#!/usr/bin/env python3

from __future__ import annotations

import sys
from datetime import date
from pathlib import Path

import numpy as np
import pytest
import rasterio
from rasterio.errors import RasterioIOError
from rasterio.transform import from_origin

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from canopy.config import ProductSpec
from canopy.features.cloud_mask import apply_cloud_mask, qa_field_for
from canopy.ingest import catalog as cat

BBOX = (10.0, 50.0, 11.0, 51.0)
TRANSFORM = from_origin(10.0, 51.0, 0.25, 0.25)
EVI = ProductSpec(name="EVI", source="mod13q1", value_band="EVI", qa_band="SummaryQA", scale=0.0001)


def _write(path: Path, bands, nodata=None, transform=TRANSFORM):
    bands = [np.asarray(b, dtype="int16") for b in bands]
    h, w = bands[0].shape
    with rasterio.open(
        path, "w", driver="GTiff", height=h, width=w, count=len(bands),
        dtype="int16", crs="EPSG:4326", transform=transform, nodata=nodata,
    ) as dst:
        for i, b in enumerate(bands, start=1):
            dst.write(b, i)


def _sources(tmp_path: Path):
    return {
        "sources": {
            "mod13q1": {
                "local_glob": str(tmp_path / "MOD13Q1.*.tif"),
                "bands": {"EVI": 1, "SummaryQA": 2},
            },
            "mcd12q1": {
                "local_glob": str(tmp_path / "MCD12Q1.*.tif"),
                "bands": {"LC_Type1": 1},
            },
        }
    }


def test_parse_timestamp_day_of_year():
    assert cat.parse_timestamp("MOD13Q1.A2012017.h18v03.tif", r"A(?P<year>\d{4})(?P<doy>\d{3})") == date(2012, 1, 17)
    assert cat.parse_timestamp("readme.txt", r"A(?P<year>\d{4})(?P<doy>\d{3})") is None


def test_parse_timestamp_calendar_date():
    pattern = r"(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})"
    assert cat.parse_timestamp("lst_2016-02-29.tif", pattern) == date(2016, 2, 29)


def test_parse_timestamp_needs_day_groups():
    with pytest.raises(ValueError):
        cat.parse_timestamp("x2012.tif", r"x(?P<year>\d{4})")


def test_source_from_yaml_missing_bands_exits():
    with pytest.raises(SystemExit):
        cat.source_from_yaml({"sources": {"s": {"local_glob": "*.tif"}}}, "s")
    with pytest.raises(SystemExit):
        cat.source_from_yaml({"sources": {}}, "s")


def test_query_reads_values_and_qa_in_date_range(tmp_path):
    evi = np.full((4, 4), 5000)
    evi[0, 0] = -3000
    qa = np.zeros((4, 4))
    qa[1, 1] = 2
    for doy in ("001", "017", "033"):
        _write(tmp_path / f"MOD13Q1.A2012{doy}.tif", [evi, qa], nodata=-3000)

    catalog = cat.GeoTIFFCatalog(_sources(tmp_path))
    coll = catalog.query(EVI, (date(2012, 1, 1), date(2012, 2, 2)), BBOX)

    assert coll.timestamps == [date(2012, 1, 1), date(2012, 1, 17)]
    g = coll.get(date(2012, 1, 17))
    assert g.shape == (4, 4)
    assert g.band == "EVI"
    assert not g.valid[0, 0]
    assert g.data[1, 2] == 5000.0
    assert g.qa[1, 1] == 2
    assert np.allclose(tuple(g.transform)[:6], tuple(TRANSFORM)[:6])
    assert coll.template.matches(g.spec)


def test_query_outside_files_is_empty(tmp_path):
    _write(tmp_path / "MOD13Q1.A2012001.tif", [np.ones((4, 4)), np.zeros((4, 4))])
    catalog = cat.GeoTIFFCatalog(_sources(tmp_path))
    assert len(catalog.query(EVI, (date(2013, 1, 1), date(2014, 1, 1)), BBOX)) == 0


def test_classification_picks_epoch_year(tmp_path):
    _write(tmp_path / "MCD12Q1.A2019001.tif", [np.full((4, 4), 12)])
    _write(tmp_path / "MCD12Q1.A2020001.tif", [np.full((4, 4), 4)])
    catalog = cat.GeoTIFFCatalog(_sources(tmp_path))

    lc = catalog.classification("mcd12q1", "LC_Type1", date(2020, 1, 1), BBOX)
    assert lc.timestamp == date(2020, 1, 1)
    assert np.all(lc.data == 4)

    with pytest.raises(SystemExit):
        catalog.classification("mcd12q1", "LC_Type1", date(2021, 1, 1), BBOX)


def test_read_retries_then_raises(tmp_path, monkeypatch):
    calls = []
    sleeps = []

    def _boom(path, *a, **kw):
        calls.append(path)
        raise RasterioIOError("transient")

    monkeypatch.setattr(cat.rasterio, "open", _boom)
    monkeypatch.setattr(cat.time, "sleep", sleeps.append)

    catalog = cat.GeoTIFFCatalog(_sources(tmp_path), retries=3, retry_delay=0.5)
    with pytest.raises(cat.SourceUnavailableError) as exc:
        catalog.read_band(tmp_path / "MOD13Q1.A2012001.tif", 1, BBOX)

    assert len(calls) == 3
    assert sleeps == [0.5, 1.0]
    assert exc.value.attempts == 3


def test_qa_outside_its_file_is_not_clear(tmp_path):
    # Value band covers the full bbox, the QA file only its western half.
    _write(tmp_path / "EVI.A2012001.tif", [np.full((4, 4), 5000)])
    _write(tmp_path / "QA.A2012001.tif", [np.zeros((4, 2))])
    sources = {"sources": {"mod13q1": {
        "local_glob": str(tmp_path / "EVI.*.tif"),
        "band_globs": {"SummaryQA": str(tmp_path / "QA.*.tif")},
        "bands": {"EVI": 1, "SummaryQA": 1},
    }}}

    g = cat.GeoTIFFCatalog(sources).query(EVI, (date(2012, 1, 1), date(2013, 1, 1)), BBOX).get(date(2012, 1, 1))
    assert g.valid.all()
    assert (g.qa[:, 2:] == cat.QA_FILL).all()

    clear = apply_cloud_mask(g, qa_field_for("SummaryQA"))
    assert clear.valid[:, :2].all()
    assert not clear.valid[:, 2:].any()
