"""Slope length and steepness (LS-factor).

L follows Desmet & Govers (1996) with the rill/interrill ratio ``beta``
of McCool et al.; S is the two-branch RUSLE steepness equation. Both are
pixel-local: the only upstream information is the contributing area,
which is supplied precomputed (e.g. MERIT Hydro ``upa``).

Assumptions
-----------
* Slope is given in degrees and radians, aspect in degrees clockwise from
  north; an aspect outside [0, 360] marks undefined (flat) cells.
* Contributing area is in m2 and clamped to 4000 m2, beyond which the
  slope length equations describe channel rather than sheet/rill flow.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
from scipy import ndimage

from erosion_watch import constants as C
from erosion_watch.errors import DomainError
from erosion_watch.raster import Band, Raster

logger = logging.getLogger(__name__)

TERRAIN_BANDS = ("slope_deg", "slope_rad", "aspect", "contrib_area")


def horn_gradients(dem: np.ndarray, dx_m: float, dy_m: float):
    """3x3 Horn slope (degrees, radians) and aspect (degrees from north).

    Edges reuse the nearest row/column. Aspect is the downslope direction;
    flat cells get aspect -1.
    """
    if dx_m <= 0 or dy_m <= 0:
        raise DomainError(f"Cell size must be positive, got ({dx_m}, {dy_m})")
    z = np.pad(dem.astype("float64"), 1, mode="edge")
    a, b, c = z[:-2, :-2], z[:-2, 1:-1], z[:-2, 2:]
    d, f = z[1:-1, :-2], z[1:-1, 2:]
    g, h, i = z[2:, :-2], z[2:, 1:-1], z[2:, 2:]
    # gradients towards east and north (row 0 is the northern edge)
    dzdx = ((c + 2 * f + i) - (a + 2 * d + g)) / (8 * dx_m)
    dzdy = ((a + 2 * b + c) - (g + 2 * h + i)) / (8 * dy_m)
    slope_rad = np.arctan(np.hypot(dzdx, dzdy))
    aspect = np.degrees(np.arctan2(-dzdx, -dzdy)) % 360.0
    aspect[(dzdx == 0) & (dzdy == 0)] = -1.0
    return np.degrees(slope_rad), slope_rad, aspect


def slope_aspect(dem: Raster, band: Optional[str] = None) -> Raster:
    """Slope and aspect bands from an elevation raster.

    A cell is valid only if its full 3x3 neighbourhood is valid.
    """
    name = band or dem.band_names[0]
    elev = dem[name]
    dx_m, dy_m = dem.grid.cell_size_m()
    slope_deg, slope_rad, aspect = horn_gradients(elev.data, dx_m, dy_m)
    valid = ndimage.binary_erosion(elev.validity(), structure=np.ones((3, 3), bool), border_value=1)
    return Raster(dem.grid, [
        Band("slope_deg", slope_deg.astype("float32"), valid),
        Band("slope_rad", slope_rad.astype("float32"), valid),
        Band("aspect", aspect.astype("float32"), valid),
    ])


def contributing_area_from_upa(upa_km2: np.ndarray, redistribution: float = 9.0) -> np.ndarray:
    """Upstream area in m2 per target cell.

    ``redistribution`` spreads a coarse cell's area over the finer cells it
    was resampled to, e.g. 9 for 90 m MERIT Hydro on a 30 m grid.
    """
    if redistribution <= 0:
        raise DomainError("redistribution must be positive")
    return upa_km2 * C.UPA_KM2_TO_M2 / redistribution


def slope_direction(aspect: np.ndarray) -> np.ndarray:
    """1 for aspects pointing to a cardinal neighbour, sqrt(2) for diagonal ones."""
    aspect = np.asarray(aspect, dtype="float64")
    with np.errstate(invalid="ignore"):
        cardinal = ~np.isfinite(aspect) | (aspect < 0.0) | (aspect > 360.0)
    for lo, hi in C.CARDINAL_ASPECT_BINS:
        if lo > hi:
            cardinal |= (aspect > lo) | (aspect <= hi)
        else:
            cardinal |= (aspect > lo) & (aspect <= hi)
    return np.where(cardinal, 1.0, np.sqrt(2.0))


def slope_length_exponent(slope_rad: np.ndarray) -> np.ndarray:
    """Exponent ``m = beta / (1 + beta)``."""
    sin_s = np.sin(slope_rad)
    beta = np.abs(sin_s / (C.BETA_DENOM_COEF * 3.0 * (np.power(np.abs(sin_s), C.BETA_SIN_EXPONENT)
                                                      + C.BETA_SIN_OFFSET)))
    return beta / (beta + 1.0)


def slope_length_factor(contrib_area: np.ndarray, slope_rad: np.ndarray, aspect: np.ndarray,
                        cell_size: float) -> np.ndarray:
    area = np.clip(contrib_area, 0.0, C.MAX_CONTRIBUTING_AREA_M2)
    m = slope_length_exponent(slope_rad)
    denom = 2.0 * cell_size * slope_direction(aspect) * C.UNIT_PLOT_LENGTH_M
    return np.power(2.0 * area / denom, m) * (m + 1.0)


def slope_steepness_factor(slope_rad: np.ndarray) -> np.ndarray:
    """Mild branch below 9% steepness, steep branch above."""
    sin_s = np.sin(slope_rad)
    return np.where(np.tan(slope_rad) < C.MILD_SLOPE_TAN,
                    C.MILD_S_COEF * sin_s + C.MILD_S_OFFSET,
                    C.STEEP_S_COEF * sin_s + C.STEEP_S_OFFSET)


def ls_factor(contrib_area: np.ndarray, slope_rad: np.ndarray, aspect: np.ndarray, cell_size: float) -> np.ndarray:
    if cell_size <= 0:
        raise DomainError(f"Cell size must be positive, got {cell_size}")
    return (slope_length_factor(contrib_area, slope_rad, aspect, cell_size)
            * slope_steepness_factor(slope_rad))


def factor_ls(terrain: Raster, cell_size: Optional[float] = None) -> Raster:
    """LS raster from ``slope_rad`` (or ``slope_deg``), ``aspect`` and ``contrib_area`` bands."""
    if "slope_rad" not in terrain and "slope_deg" not in terrain:
        terrain.require(["slope_rad"])
    if "slope_rad" in terrain:
        slope = terrain["slope_rad"]
        slope_rad = slope.data.astype("float64")
    else:
        slope = terrain["slope_deg"]
        slope_rad = np.deg2rad(slope.data.astype("float64"))
    names = [slope.name, "aspect", "contrib_area"]
    terrain.require(names)
    if cell_size is None:
        cell_size = float(np.mean(terrain.grid.cell_size_m()))
    valid = terrain.validity(names)
    ls = ls_factor(terrain["contrib_area"].data.astype("float64"), slope_rad,
                   terrain["aspect"].data, cell_size)
    logger.debug("LS factor on %s valid pixels, cell size %.2f m", int(valid.sum()), cell_size)
    return Raster(terrain.grid, [Band("LS", ls.astype("float32"), valid)])
