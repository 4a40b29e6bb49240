#!/usr/bin/env python3
"""canopy.raster

In-memory raster types shared by every canopy subsystem.

- RasterGrid: one band on a uniform pixel grid, float samples plus a validity
  mask. Invalid samples are stored as NaN so numpy's nan-aware reducers skip
  them; zero is an ordinary valid value.
- GridSpec: shape + geotransform + CRS, used for alignment checks and for
  building all-no-data grids when a time window is empty.
- TemporalCollection: timestamped grids with date filtering and per-pixel
  reduction along the time axis.

Everything here is immutable once built: arrays are flagged read-only and
every transform returns a new object.

Required deps: numpy (geotransforms are affine.Affine objects from rasterio,
but nothing here imports rasterio).
"""

from __future__ import annotations

import dataclasses
import warnings
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np


REDUCERS = ("median", "mean", "stddev", "sum")


class AlignmentError(ValueError):
    """Grids combined per pixel do not share shape / geotransform / CRS."""


# -----------------------------------------------------------------------------
# Grid geometry
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class GridSpec:
    shape: Tuple[int, int]
    transform: Optional[Any] = None
    crs: Optional[Any] = None

    @property
    def resolution(self) -> Optional[Tuple[float, float]]:
        if self.transform is None:
            return None
        return (abs(self.transform.a), abs(self.transform.e))

    def matches(self, other: "GridSpec") -> bool:
        if tuple(self.shape) != tuple(other.shape):
            return False
        # Grids without georeferencing (synthetic/test data) align on shape alone.
        if self.transform is not None and other.transform is not None:
            if not np.allclose(tuple(self.transform)[:6], tuple(other.transform)[:6], rtol=1e-12, atol=1e-9):
                return False
        if self.crs is not None and other.crs is not None and self.crs != other.crs:
            return False
        return True


def _readonly(a: np.ndarray) -> np.ndarray:
    a.flags.writeable = False
    return a


# -----------------------------------------------------------------------------
# RasterGrid
# -----------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class RasterGrid:
    """A single band of samples with its validity mask.

    `qa` optionally carries the integer quality band read alongside the
    samples; the cloud mask consumes it and drops it.
    """
    data: np.ndarray
    valid: np.ndarray
    transform: Optional[Any] = None
    crs: Optional[Any] = None
    timestamp: Optional[date] = None
    band: Optional[str] = None
    qa: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        data = np.array(self.data, dtype=np.float64)
        if data.ndim != 2:
            raise ValueError(f"RasterGrid expects a 2D array, got shape {data.shape}")
        valid = np.array(self.valid, dtype=bool)
        if valid.shape != data.shape:
            raise ValueError(f"Validity mask shape {valid.shape} != data shape {data.shape}")
        valid &= np.isfinite(data)
        data[~valid] = np.nan
        object.__setattr__(self, "data", _readonly(data))
        object.__setattr__(self, "valid", _readonly(valid))
        if self.qa is not None:
            qa = np.array(self.qa)
            if qa.shape != data.shape:
                raise ValueError(f"QA band shape {qa.shape} != data shape {data.shape}")
            object.__setattr__(self, "qa", _readonly(qa))

    # --- constructors ---

    @classmethod
    def from_array(cls, arr: Any, nodata: Optional[float] = None, **meta: Any) -> "RasterGrid":
        """Wrap a plain array; NaN and `nodata` samples become invalid."""
        data = np.asarray(arr, dtype=np.float64)
        valid = np.isfinite(data)
        if nodata is not None and not np.isnan(nodata):
            valid &= data != nodata
        return cls(data=data, valid=valid, **meta)

    @classmethod
    def empty(cls, spec: GridSpec, **meta: Any) -> "RasterGrid":
        """All-no-data grid on `spec`."""
        return cls(
            data=np.full(spec.shape, np.nan),
            valid=np.zeros(spec.shape, dtype=bool),
            transform=spec.transform,
            crs=spec.crs,
            **meta,
        )

    # --- properties ---

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    @property
    def spec(self) -> GridSpec:
        return GridSpec(shape=self.shape, transform=self.transform, crs=self.crs)

    @property
    def resolution(self) -> Optional[Tuple[float, float]]:
        return self.spec.resolution

    @property
    def valid_count(self) -> int:
        return int(self.valid.sum())

    # --- derivations (all return new grids) ---

    def replace(self, **changes: Any) -> "RasterGrid":
        return dataclasses.replace(self, **changes)

    def with_values(self, data: np.ndarray, valid: Optional[np.ndarray] = None, **changes: Any) -> "RasterGrid":
        """Same geometry and tags, new samples. Validity is ANDed with the current mask."""
        v = self.valid if valid is None else (self.valid & valid)
        return dataclasses.replace(self, data=data, valid=v, **changes)

    def update_mask(self, mask: np.ndarray) -> "RasterGrid":
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != self.shape:
            raise AlignmentError(f"Mask shape {mask.shape} != grid shape {self.shape}")
        return dataclasses.replace(self, valid=self.valid & mask)

    def rescale(self, scale: float, offset: float = 0.0) -> "RasterGrid":
        """Linear unit conversion: value * scale + offset."""
        return dataclasses.replace(self, data=self.data * scale + offset)


def check_aligned(*grids: RasterGrid) -> GridSpec:
    """Return the shared GridSpec or raise AlignmentError."""
    if not grids:
        raise ValueError("check_aligned needs at least one grid")
    ref = grids[0].spec
    for i, g in enumerate(grids[1:], start=1):
        if not ref.matches(g.spec):
            raise AlignmentError(
                f"Grid {i} (shape={g.shape}, res={g.resolution}) is not aligned with "
                f"grid 0 (shape={ref.shape}, res={ref.resolution}); reproject upstream"
            )
    return ref


# -----------------------------------------------------------------------------
# Reducers
# -----------------------------------------------------------------------------

def reduce_grids(
    grids: Sequence[RasterGrid],
    kind: str,
    *,
    template: Optional[GridSpec] = None,
    band: Optional[str] = None,
    timestamp: Optional[date] = None,
) -> RasterGrid:
    """Per-pixel reduction across a sequence of aligned grids.

    No-data inputs are ignored per pixel; the output is no-data only where every
    input is no-data (stddev additionally needs two valid inputs; it is the
    sample stddev, ddof=1). An empty sequence yields an all-no-data grid on
    `template`.
    """
    if kind not in REDUCERS:
        raise ValueError(f"Unknown reducer {kind!r}; expected one of {REDUCERS}")
    grids = list(grids)
    if not grids:
        if template is None:
            raise ValueError("Cannot reduce an empty sequence without a grid template")
        return RasterGrid.empty(template, band=band, timestamp=timestamp)

    spec = check_aligned(*grids)
    if template is not None and not spec.matches(template):
        raise AlignmentError(f"Grids (shape={spec.shape}) do not match template (shape={template.shape})")

    stack = np.stack([g.data for g in grids])
    count = np.isfinite(stack).sum(axis=0)

    # All-NaN pixels trigger numpy RuntimeWarnings; they are masked below.
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        if kind == "median":
            out = np.nanmedian(stack, axis=0)
            valid = count > 0
        elif kind == "mean":
            out = np.nanmean(stack, axis=0)
            valid = count > 0
        elif kind == "stddev":
            out = np.nanstd(stack, axis=0, ddof=1)
            valid = count > 1
        else:
            out = np.nansum(stack, axis=0)
            valid = count > 0

    return RasterGrid(
        data=out,
        valid=valid,
        transform=spec.transform,
        crs=spec.crs,
        timestamp=timestamp,
        band=band if band is not None else grids[0].band,
    )


# -----------------------------------------------------------------------------
# TemporalCollection
# -----------------------------------------------------------------------------

class TemporalCollection:
    """Timestamped grids. Filters operate on timestamp values, not insertion order."""

    def __init__(self, grids: Iterable[RasterGrid] = (), template: Optional[GridSpec] = None):
        grids = tuple(grids)
        for g in grids:
            if g.timestamp is None:
                raise ValueError(f"Grid for band {g.band!r} has no timestamp")
        self._grids: Tuple[RasterGrid, ...] = grids
        self.template: Optional[GridSpec] = template if template is not None else (grids[0].spec if grids else None)

    def __len__(self) -> int:
        return len(self._grids)

    def __iter__(self) -> Iterator[RasterGrid]:
        return iter(self._grids)

    def __repr__(self) -> str:
        return f"TemporalCollection(n={len(self)}, template={self.template})"

    @property
    def timestamps(self) -> List[date]:
        return [g.timestamp for g in self._grids]

    def sorted(self) -> "TemporalCollection":
        return TemporalCollection(sorted(self._grids, key=lambda g: g.timestamp), template=self.template)

    def filter_date(self, start: date, end: date) -> "TemporalCollection":
        """Grids with start <= timestamp < end."""
        return TemporalCollection(
            (g for g in self._grids if start <= g.timestamp < end), template=self.template
        )

    def map(self, fn: Callable[[RasterGrid], RasterGrid]) -> "TemporalCollection":
        return TemporalCollection((fn(g) for g in self._grids), template=self.template)

    def reduce(self, kind: str, *, band: Optional[str] = None, timestamp: Optional[date] = None) -> RasterGrid:
        return reduce_grids(self._grids, kind, template=self.template, band=band, timestamp=timestamp)

    def get(self, timestamp: date) -> Optional[RasterGrid]:
        for g in self._grids:
            if g.timestamp == timestamp:
                return g
        return None
