"""Bare soil detection (GEOS3) and bare soil frequency."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np

from erosion_watch import constants as C
from erosion_watch.composites import reduce_stack
from erosion_watch.raster import Band, Raster
from erosion_watch.scene import Scene, SceneCollection

logger = logging.getLogger(__name__)

GEOS3_INPUTS = ("B2", "B3", "B4", "B8", "B11", "B12")


def normalized_difference(a: np.ndarray, b: np.ndarray):
    """(a - b) / (a + b) and a flag of where the denominator is non-zero."""
    denom = a + b
    ok = denom != 0
    out = np.zeros(a.shape, dtype="float64")
    np.divide(a - b, denom, out=out, where=ok)
    return out, ok


def geos3(raster: Raster, sr_band_scale: float = C.SR_BAND_SCALE) -> Band:
    """Grasslands, Exposed Soil and Senescent vegetation (GEOS3) rule.

    Dematte et al. (2020). True where NDVI and NBR2 lie in their bare-soil
    ranges and VNSIR does not exceed 0.9.
    """
    raster.require(GEOS3_INPUTS)
    b2, b3, b4, b8, b11, b12 = (raster[n].data.astype("float64") / sr_band_scale for n in GEOS3_INPUTS)
    ndvi, ok_ndvi = normalized_difference(b8, b4)
    nbr2, ok_nbr2 = normalized_difference(b11, b12)
    vnsir = 1.0 - ((2.0 * b4 - b3 - b2) + 3.0 * (b12 - b8))

    lo, hi = C.GEOS3_NDVI_RANGE
    bare = (ndvi >= lo) & (ndvi <= hi)
    lo, hi = C.GEOS3_NBR2_RANGE
    bare &= (nbr2 >= lo) & (nbr2 <= hi)
    bare &= vnsir <= C.GEOS3_VNSIR_MAX

    valid = raster.validity(GEOS3_INPUTS) & ok_ndvi & ok_nbr2
    return Band("GEOS3", bare & valid, valid)


def bare_observations(masked: SceneCollection, sr_band_scale: float = C.SR_BAND_SCALE) -> SceneCollection:
    """Scenes restricted to their bare pixels, with the ``GEOS3`` band attached."""
    def _bare(scene: Scene) -> Scene:
        band = geos3(scene.raster, sr_band_scale)
        raster = scene.raster.update_mask(band.data).add_bands(band)
        return scene.with_raster(raster)
    return masked.map(_bare)


def analysis_mask(slope_deg: np.ndarray, water: Optional[np.ndarray] = None,
                  builtup: Optional[np.ndarray] = None,
                  max_slope_deg: float = C.MAX_ANALYSIS_SLOPE_DEG) -> np.ndarray:
    """Pixels where erosion is assessed: land, not built-up, slope <= ``max_slope_deg``."""
    with np.errstate(invalid="ignore"):
        mask = np.asarray(slope_deg) <= max_slope_deg
    if water is not None:
        mask &= ~np.asarray(water, dtype=bool)
    if builtup is not None:
        mask &= ~np.asarray(builtup, dtype=bool)
    return mask


def _valid_count(collection: SceneCollection, band: str) -> np.ndarray:
    counts = np.zeros(collection.grid.shape, dtype="int32")
    for scene in collection:
        counts += scene.raster[band].validity()
    return counts


def bare_soil_frequency(masked: SceneCollection, bare: SceneCollection,
                        mask: Optional[np.ndarray] = None, band: str = "B8") -> Raster:
    """Share of valid observations in which a pixel was bare.

    ``band`` is the reflectance band whose validity counts as an
    observation. Pixels never observed, or outside ``mask``, are invalid.
    """
    if len(masked) == 0:
        raise ValueError("Cannot compute bare soil frequency from an empty collection")
    grid = masked.grid
    observed = _valid_count(masked, band)
    bare_count = _valid_count(bare, band) if len(bare) else np.zeros(grid.shape, dtype="int32")
    valid = observed > 0
    if mask is not None:
        valid &= np.asarray(mask, dtype=bool)
    freq = np.zeros(grid.shape, dtype="float32")
    np.divide(bare_count, observed, out=freq, where=observed > 0, casting="unsafe")
    logger.debug("Bare soil frequency: %s pixels observed", int(valid.sum()))
    return Raster(grid, [Band("bare_soil_frequency", freq, valid)])


def bare_soil_mask(bsf: Raster, permanently_bare: float = C.PERMANENTLY_BARE_FREQUENCY) -> Raster:
    """Pixels bare at times but not permanently: ``0 < bsf < permanently_bare``."""
    band = bsf["bare_soil_frequency"]
    keep = (band.data > 0) & (band.data < permanently_bare) & band.validity()
    return Raster(bsf.grid, [Band("bare_soil_mask", keep.astype("uint8"), band.validity())])


def bare_soil_composite(bare: SceneCollection, bands: Sequence[str] = GEOS3_INPUTS, grid=None) -> Raster:
    """Per-pixel median of the bare observations; all-invalid when there are none."""
    return reduce_stack(list(bare), bands, "median", grid=grid)
