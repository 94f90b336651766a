"""Soil erosion hazard and region-level summaries.

The hazard is the RUSLE product ``A = R * K * LS * S`` (t/ha/yr), valid
only where every factor is. The summaries reduce A and the bare soil
frequency over an area of interest for reporting.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd

from erosion_watch import constants as C
from erosion_watch.errors import DomainError
from erosion_watch.raster import Band, Raster, check_same_grid

logger = logging.getLogger(__name__)

AREA_CLASSES = ("never observed bare", "observed bare < 95% of time", "observed bare > 95% of time")


def erosion_hazard(r: Raster, k: Raster, ls: Raster, s: Raster) -> Raster:
    """Annual soil loss ``A`` from single-band R, K, LS and S rasters."""
    grid = check_same_grid(r, k, ls, s)
    factors = [next(iter(x)) for x in (r, k, ls, s)]
    value = np.ones(grid.shape, dtype="float64")
    valid = np.ones(grid.shape, dtype=bool)
    for band in factors:
        value *= band.data.astype("float64")
        valid &= band.validity()
    return Raster(grid, [Band("A", value.astype("float32"), valid)])


def area_breakdown(bsf: Raster, aoi_area_ha: float, aoi_mask: Optional[np.ndarray] = None,
                   permanently_bare: float = C.PERMANENTLY_BARE_FREQUENCY) -> Dict[str, float]:
    """
    Split an area into never / sometimes / (almost) always bare, in hectares.

    Pixel shares are rescaled to the true ``aoi_area_ha`` rather than summed
    pixel areas, which are biased for coarse or reprojected grids.
    Pixels without a valid frequency count as never observed bare.
    """
    band = bsf["bare_soil_frequency"]
    inside = np.ones(bsf.shape, dtype=bool) if aoi_mask is None else np.asarray(aoi_mask, dtype=bool)
    total = int(inside.sum())
    if total == 0:
        raise DomainError("Area of interest covers no pixel")
    freq = np.where(band.validity() & inside, band.data, 0.0)
    sometimes = int(((freq > 0) & (freq < permanently_bare)).sum())
    always = int((freq >= permanently_bare).sum())

    area_sometimes = round(aoi_area_ha * sometimes / total)
    area_always = round(aoi_area_ha * always / total)
    return {
        AREA_CLASSES[0]: aoi_area_ha - area_sometimes - area_always,
        AREA_CLASSES[1]: area_sometimes,
        AREA_CLASSES[2]: area_always,
    }


def auto_histogram(values: np.ndarray, max_buckets: Optional[int] = None,
                   min_bucket_width: Optional[float] = None) -> pd.DataFrame:
    """
    Histogram with automatically chosen buckets.

    The width is the data range split into ``max_buckets``, but never below
    ``min_bucket_width``; buckets start on multiples of the width. NaN
    values are ignored.

    Returns
    -------
    pandas.DataFrame
        Columns ``bucket_start`` and ``count``.
    """
    vals = np.asarray(values, dtype="float64").ravel()
    vals = vals[np.isfinite(vals)]
    if vals.size == 0:
        return pd.DataFrame({"bucket_start": [], "count": []})
    lo, hi = float(vals.min()), float(vals.max())
    span = hi - lo
    if max_buckets:
        width = span / max_buckets
        if min_bucket_width:
            width = max(width, min_bucket_width)
    else:
        width = min_bucket_width or span / 256
    if width <= 0:
        width = 1.0
    start = np.floor(lo / width) * width
    n = max(int(np.floor((hi - start) / width)) + 1, 1)
    edges = start + width * np.arange(n + 1)
    counts, _ = np.histogram(vals, bins=edges)
    return pd.DataFrame({"bucket_start": edges[:-1], "count": counts})


def hazard_statistics(a: Raster, aoi_mask: Optional[np.ndarray] = None) -> Dict[str, float]:
    """Mean hazard (3 decimals) and the upper bound used to scale hazard maps."""
    band = a["A"]
    sel = band.validity() if aoi_mask is None else band.validity() & np.asarray(aoi_mask, dtype=bool)
    vals = band.data[sel].astype("float64")
    if vals.size == 0:
        logger.warning("No valid hazard pixel in the area of interest")
        return {"mean": float("nan"), "p98": float("nan"), "display_max": 1}
    p98 = float(np.percentile(vals, C.HAZARD_DISPLAY_PERCENTILE))
    return {
        "mean": round(float(vals.mean()), 3),
        "p98": p98,
        "display_max": int(np.clip(p98, 0, C.HAZARD_DISPLAY_MAX)) + 1,
    }


def region_histograms(bsf: Raster, a: Raster, aoi_mask: Optional[np.ndarray] = None) -> Dict[str, pd.DataFrame]:
    """Bare soil frequency (%) and log hazard histograms of an area."""
    freq, hazard = bsf["bare_soil_frequency"], a["A"]
    inside = np.ones(bsf.shape, dtype=bool) if aoi_mask is None else np.asarray(aoi_mask, dtype=bool)
    f_vals = freq.data[freq.validity() & inside] * 100.0
    a_vals = hazard.data[hazard.validity() & inside & (hazard.data > 0)]
    return {
        "bare_soil_frequency": auto_histogram(f_vals, max_buckets=20, min_bucket_width=5),
        "log_A": auto_histogram(np.log(a_vals), min_bucket_width=0.1),
    }
