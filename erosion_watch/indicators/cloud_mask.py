"""Cloud and cloud-shadow masking of Sentinel-2 scenes.

Clouds come from the s2cloudless probability band. Shadows are dark,
non-water pixels lying within a fixed distance of a cloud in the direction
opposite the sun. The combined mask is cleaned with a morphological opening
(erosion then buffered dilation) at a coarser working resolution and
upsampled back to the scene grid.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Optional, Sequence

import numpy as np

from erosion_watch import constants as C
from erosion_watch.config import CloudMaskSettings, TilingSettings
from erosion_watch.raster import Band, Raster
from erosion_watch.raster_ops import block_max, focal_max, focal_min, map_tiles, shift, upsample
from erosion_watch.scene import Scene, SceneCollection

logger = logging.getLogger(__name__)

SCL_WATER = 6
MASK_BANDS = ("clouds", "dark_pixels", "cloud_transform", "shadows", "cloudmask")


def reflectance_bands(names: Sequence[str]) -> list:
    """Sentinel-2 band names (``B2``, ``B8A``...) among ``names``."""
    return [n for n in names if n.startswith("B") and n[1:2].isdigit()]


def working_factor(cell_size_m: float, mask_resolution_m: float) -> int:
    """Integer downsampling factor from the native grid to the mask resolution."""
    return max(int(round(mask_resolution_m / cell_size_m)), 1)


def shadow_offsets(solar_azimuth_deg: float, distance_px: int):
    """(drow, dcol) steps from a cloud towards its shadow, 0..distance_px."""
    # shadows fall opposite the sun; rows grow southwards
    az = np.deg2rad(solar_azimuth_deg + 180.0)
    dcol, drow = np.sin(az), -np.cos(az)
    return [(int(round(d * drow)), int(round(d * dcol))) for d in range(distance_px + 1)]


def project_clouds(clouds: np.ndarray, solar_azimuth_deg: float, distance_px: int) -> np.ndarray:
    """Cells within ``distance_px`` of a cloud along the shadow direction."""
    out = np.zeros(clouds.shape, dtype=bool)
    for drow, dcol in sorted(set(shadow_offsets(solar_azimuth_deg, distance_px))):
        out |= shift(clouds, drow, dcol, fill=False)
    return out


def _water(scene: Scene, water: Optional[np.ndarray]) -> np.ndarray:
    if water is not None:
        return np.asarray(water, dtype=bool)
    if "SCL" in scene.raster:
        scl = scene.raster["SCL"]
        return (scl.data == SCL_WATER) & scl.validity()
    return np.zeros(scene.raster.shape, dtype=bool)


def mask_halo(settings: CloudMaskSettings, factor: int) -> int:
    """Native pixels a tile needs around it: shadow reach plus the opening, in whole blocks."""
    reach = (settings.projection_distance_px + settings.erosion_radius_px
             + int(np.ceil(settings.buffer_m * 2.0 / settings.mask_resolution_m)))
    return reach * factor


def aligned_tile_size(tile_size: int, factor: int) -> int:
    """Largest multiple of ``factor`` not above ``tile_size`` (at least one block)."""
    return max(tile_size // factor, 1) * factor


def cloud_shadow_bands(tile: Raster, solar_azimuth_deg: Optional[float], factor: int,
                       settings: CloudMaskSettings, sr_band_scale: float = C.SR_BAND_SCALE) -> Raster:
    """
    Mask bands of a raster holding ``probability``, ``B8`` and ``water``.

    Works on any window whose origin sits on a multiple of ``factor``, so
    that coarse blocks line up with those of the whole scene.
    """
    s = settings
    shape = tile.shape
    prob = tile["probability"]
    clouds = (prob.data > s.cloud_probability_threshold) & prob.validity()

    nir = tile["B8"]
    water = tile["water"].data.astype(bool)
    dark = (nir.data < s.nir_dark_threshold * sr_band_scale) & nir.validity() & ~water

    if solar_azimuth_deg is None:
        projection = np.zeros(shape, dtype=bool)
    else:
        coarse = project_clouds(block_max(clouds, factor), solar_azimuth_deg, s.projection_distance_px)
        projection = upsample(coarse, factor, shape)
    shadows = projection & dark

    combined = block_max(clouds | shadows, factor)
    opened = focal_max(focal_min(combined, s.erosion_radius_px), s.buffer_m * 2.0 / s.mask_resolution_m)
    cloudmask = upsample(opened, factor, shape)

    return Raster(tile.grid, [
        Band("clouds", clouds.astype("uint8")),
        Band("dark_pixels", dark.astype("uint8")),
        Band("cloud_transform", projection.astype("uint8")),
        Band("shadows", shadows.astype("uint8")),
        Band("cloudmask", cloudmask.astype("uint8")),
    ])


def add_cloud_shadow_mask(scene: Scene, settings: Optional[CloudMaskSettings] = None,
                          sr_band_scale: float = C.SR_BAND_SCALE,
                          water: Optional[np.ndarray] = None,
                          tiling: Optional[TilingSettings] = None) -> Scene:
    """
    Mask clouds and cloud shadows in one scene.

    Parameters
    ----------
    scene : Scene
        Needs ``probability`` (percent) and ``B8``; uses ``SCL`` for water
        when no ``water`` mask is passed.
    settings : CloudMaskSettings, optional
    sr_band_scale : float
        Reflectance scaling of the stored bands.
    water : ndarray of bool, optional
        Water pixels, excluded from the dark-pixel test.
    tiling : TilingSettings, optional
        Tile size and workers. Tiles are rounded to whole mask blocks and
        padded by :func:`mask_halo`.

    Returns
    -------
    Scene
        The scene with reflectance bands masked where clouds or shadows are,
        plus the bands ``clouds``, ``dark_pixels``, ``cloud_transform``,
        ``shadows`` and ``cloudmask`` (1 = cloud or shadow).
    """
    s = settings or CloudMaskSettings()
    t = tiling or TilingSettings()
    raster = scene.raster
    raster.require(["probability", "B8"])

    cell = float(np.mean(raster.grid.cell_size_m()))
    factor = working_factor(cell, s.mask_resolution_m)

    azimuth = scene.number("MEAN_SOLAR_AZIMUTH_ANGLE")
    if azimuth is None:
        logger.info("%r has no solar azimuth; shadows are not detected", scene)

    inputs = raster.select(["probability", "B8"]).add_bands(
        Band("water", _water(scene, water).astype("uint8")))
    bands = map_tiles(partial(cloud_shadow_bands, solar_azimuth_deg=azimuth, factor=factor,
                              settings=s, sr_band_scale=sr_band_scale),
                      inputs, tile_size=aligned_tile_size(t.tile_size, factor), halo=mask_halo(s, factor),
                      max_workers=t.max_workers, timeout=t.timeout_s)
    cloudmask = bands["cloudmask"].data.astype(bool)

    masked = raster.update_mask(~cloudmask, reflectance_bands(raster.band_names)).add_bands(*bands)
    logger.debug("%r: %.1f%% masked", scene, 100.0 * cloudmask.mean())
    return scene.with_raster(masked)


def mask_collection(collection: SceneCollection, settings: Optional[CloudMaskSettings] = None,
                    sr_band_scale: float = C.SR_BAND_SCALE,
                    water: Optional[np.ndarray] = None,
                    tiling: Optional[TilingSettings] = None) -> SceneCollection:
    """Drop very cloudy scenes (``CLOUDY_PIXEL_PERCENTAGE``) and mask the rest."""
    s = settings or CloudMaskSettings()
    kept = collection.filter_metadata("CLOUDY_PIXEL_PERCENTAGE", s.cloudy_pixel_percentage_max)
    if len(kept) < len(collection):
        logger.info("Dropped %s of %s scenes above %s%% cloud cover",
                    len(collection) - len(kept), len(collection), s.cloudy_pixel_percentage_max)
    return kept.map(lambda scene: add_cloud_shadow_mask(scene, s, sr_band_scale, water, tiling))
