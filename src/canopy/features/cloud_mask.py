#!/usr/bin/env python3
"""cloud_mask.py

Bit-field cloud filter for MODIS quality bands.

Both products in the reference run encode cloud state in bits 0-1 of their
QA band (MOD13Q1 `SummaryQA`, MOD11A1 `QC_Day`), and only the value 0
("clear") is kept. The field is still selected per product so other bit
layouts can be added in QA_FIELDS without touching the masking code.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from canopy.raster import RasterGrid


@dataclass(frozen=True)
class QAField:
    """A bit field inside an integer QA band: `width` bits starting at `offset`."""
    offset: int = 0
    width: int = 2
    clear_value: int = 0

    def extract(self, qa: np.ndarray) -> np.ndarray:
        bits = np.asarray(qa).astype(np.int64)
        return (bits >> self.offset) & ((1 << self.width) - 1)


QA_FIELDS: Dict[str, QAField] = {
    "SummaryQA": QAField(offset=0, width=2, clear_value=0),
    "QC_Day": QAField(offset=0, width=2, clear_value=0),
}


def qa_field_for(qa_band: str) -> QAField:
    try:
        return QA_FIELDS[qa_band]
    except KeyError:
        raise KeyError(f"No QA bit layout registered for band {qa_band!r}; known: {sorted(QA_FIELDS)}") from None


def clear_mask(qa: np.ndarray, field: QAField) -> np.ndarray:
    """True where the QA field equals its clear value."""
    return field.extract(qa) == field.clear_value


def apply_cloud_mask(grid: RasterGrid, field: Optional[QAField] = None) -> RasterGrid:
    """Mask non-clear pixels of `grid` using the QA band it carries.

    The new mask is ANDed with the existing one; sample values are untouched.
    The QA band is dropped from the result.
    """
    if grid.qa is None:
        raise ValueError(f"Grid {grid.band!r} @ {grid.timestamp} carries no QA band to mask with")
    if field is None:
        field = QAField()
    return grid.update_mask(clear_mask(grid.qa, field)).replace(qa=None)
