#!/usr/bin/env python3

from __future__ import annotations

import sys
from datetime import date
from pathlib import Path

import numpy as np
import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from canopy.features.anomalies import zscore_collection
from canopy.features.correlation import correlation
from canopy.raster import RasterGrid, TemporalCollection

nan = np.nan


def _series(per_year, start=2012):
    """per_year: list of 2D lists, one per consecutive year."""
    return TemporalCollection([
        RasterGrid.from_array(np.array(v, dtype=float), timestamp=date(start + i, 1, 1))
        for i, v in enumerate(per_year)
    ])


def _scaled(series, k):
    return series.map(lambda g: g.replace(data=g.data * k))


def test_synchronized_series_correlate_to_one():
    a = _series([[[1.0]], [[-1.0]]])
    b = _series([[[1.0]], [[-1.0]]])
    assert correlation(a, b).data[0, 0] == 1.0


def test_anticorrelated_series_correlate_to_minus_one():
    a = _series([[[1.0]], [[-1.0]]])
    b = _series([[[-1.0]], [[1.0]]])
    assert correlation(a, b).data[0, 0] == -1.0


def test_constant_anomaly_series_gives_nodata_end_to_end():
    a = zscore_collection(_series([[[1.0]], [[-1.0]]]))
    b = zscore_collection(_series([[[1.0]], [[1.0]]]))
    r = correlation(a, b)
    assert not r.valid[0, 0]
    assert np.isnan(r.data[0, 0])


def test_correlation_is_symmetric():
    rng = np.random.default_rng(7)
    a = _series([rng.normal(size=(3, 4)) for _ in range(6)])
    b = _series([rng.normal(size=(3, 4)) for _ in range(6)])
    np.testing.assert_allclose(correlation(a, b).data, correlation(b, a).data)


def test_positive_scale_invariance_and_sign_flip():
    rng = np.random.default_rng(11)
    a = _series([rng.normal(size=(2, 2)) for _ in range(5)])
    b = _series([rng.normal(size=(2, 2)) for _ in range(5)])
    r = correlation(a, b).data
    np.testing.assert_allclose(correlation(_scaled(a, 3.5), b).data, r)
    np.testing.assert_allclose(correlation(_scaled(a, -2.0), b).data, -r)


def test_zero_variance_pixel_is_nodata():
    a = _series([[[0.0, 1.0]], [[0.0, 2.0]]])
    b = _series([[[1.0, 1.0]], [[2.0, 2.0]]])
    r = correlation(a, b)
    assert r.valid.tolist() == [[False, True]]
    assert r.data[0, 1] == pytest.approx(1.0)


def test_needs_two_years_valid_in_both_series():
    a = _series([[[1.0, 1.0]], [[nan, -1.0]], [[0.5, 0.5]]])
    b = _series([[[1.0, 1.0]], [[-1.0, nan]], [[nan, 0.2]]])
    r = correlation(a, b)
    assert r.valid.tolist() == [[False, True]]


def test_years_missing_in_one_series_are_dropped_from_all_sums():
    a = _series([[[1.0]], [[-1.0]], [[5.0]]])
    b = _series([[[2.0]], [[-2.0]], [[nan]]])
    r = correlation(a, b)
    assert r.data[0, 0] == pytest.approx(1.0)


def test_mismatched_years_rejected():
    a = _series([[[1.0]], [[-1.0]]], start=2012)
    b = _series([[[1.0]], [[-1.0]]], start=2013)
    with pytest.raises(ValueError):
        correlation(a, b)
