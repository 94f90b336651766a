"""Sustainability factor S (the RUSLE cover-management factor).

Follows Karydas & Panagos (2018): ``S = 1 / (L * V)`` with a landscape
heterogeneity term ``L`` from the NIR gradient of a median composite and a
vegetation term ``V`` from the integrated smoothed FCover, weighted by how
often the pixel was bare.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
from scipy import ndimage

from erosion_watch import constants as C
from erosion_watch.config import SustainabilitySettings, TilingSettings
from erosion_watch.raster import Band, Raster
from erosion_watch.raster_ops import convolve, map_tiles
from erosion_watch.scene import SceneCollection

logger = logging.getLogger(__name__)


def landscape_factor(nir: Band, sr_band_scale: float = C.SR_BAND_SCALE) -> Band:
    """``L = 1 + sqrt((|sobel_x| + |sobel_y|) / scale)`` on the NIR band.

    A pixel is valid only when its whole 3x3 neighbourhood is.
    """
    kernel = np.asarray(C.SOBEL_KERNEL)
    data = np.where(nir.validity(), nir.data.astype("float64"), 0.0)
    gx = convolve(data, kernel)
    gy = convolve(data, np.rot90(kernel))
    l_factor = 1.0 + np.sqrt((np.abs(gx) + np.abs(gy)) / sr_band_scale)
    valid = ndimage.binary_erosion(nir.validity(), structure=np.ones((3, 3), bool), border_value=1)
    return Band("L", l_factor, valid)


def landscape_raster(median_composite: Raster, sr_band_scale: float = C.SR_BAND_SCALE,
                     tiling: Optional[TilingSettings] = None) -> Raster:
    """L of the ``B8`` band, tiled with a one pixel halo for the 3x3 Sobel window."""
    t = tiling or TilingSettings()
    nir = median_composite.select(["B8"])
    return map_tiles(lambda tile: Raster(tile.grid, [landscape_factor(tile["B8"], sr_band_scale)]), nir,
                     tile_size=t.tile_size, halo=1, max_workers=t.max_workers, timeout=t.timeout_s)


def pairwise_mean(values: np.ndarray) -> np.ndarray:
    """Mean of the averages of consecutive samples (trapezoid rule, unit spacing)."""
    if values.shape[0] < 2:
        return values.mean(axis=0)
    return (0.5 * (values[1:] + values[:-1])).mean(axis=0)


def integrated_fcover(smoothed: SceneCollection, band: str = "fitted"):
    """Trapezoid mean of the fitted series and the pixels valid throughout."""
    stack = np.stack([s.raster[band].data.astype("float64") for s in smoothed])
    valid = np.logical_and.reduce([s.raster[band].validity() for s in smoothed])
    return np.abs(pairwise_mean(stack)), valid


def vegetation_factor(fcover_integ: np.ndarray, bsf: np.ndarray,
                      settings: Optional[SustainabilitySettings] = None,
                      sr_band_scale: float = C.SR_BAND_SCALE) -> np.ndarray:
    s = settings or SustainabilitySettings()
    weight = np.clip(s.landuse_scale * (1.0 - bsf), *s.landuse_range)
    return np.exp(weight * fcover_integ / sr_band_scale)


def sustainability_from_arrays(l_factor: np.ndarray, v_factor: np.ndarray, bsf: np.ndarray,
                               settings: Optional[SustainabilitySettings] = None):
    """S and its validity; masked where S > max, or the pixel is never or always bare."""
    s = settings or SustainabilitySettings()
    value = 1.0 / (l_factor * v_factor)
    keep = (value <= s.max_sustainability) & (bsf != 0) & (bsf < s.permanently_bare_frequency)
    return value, keep


def factor_s(median_composite: Raster, smoothed: SceneCollection, bsf: Raster,
             settings: Optional[SustainabilitySettings] = None,
             sr_band_scale: float = C.SR_BAND_SCALE, tiling: Optional[TilingSettings] = None) -> Raster:
    """
    S raster from the median composite (``B8``), the smoothed FCover series
    and the bare soil frequency.
    """
    l_band = landscape_raster(median_composite, sr_band_scale, tiling)["L"]
    fcover_integ, fc_valid = integrated_fcover(smoothed)
    freq = bsf["bare_soil_frequency"]
    v = vegetation_factor(fcover_integ, freq.data.astype("float64"), settings, sr_band_scale)
    value, keep = sustainability_from_arrays(l_band.data, v, freq.data.astype("float64"), settings)
    valid = keep & l_band.validity() & fc_valid & freq.validity()
    logger.debug("S factor: %s valid pixels", int(valid.sum()))
    return Raster(bsf.grid, [Band("S", value.astype("float32"), valid)])
