"""Fraction of vegetation cover (FCover) from Sentinel-2 reflectance.

Evaluates the SNAP biophysical processor network for Sentinel-2: 11
normalised inputs (8 bands and 3 viewing/illumination cosines), one hidden
layer of 5 tansig neurons and a linear output. Weights are in
:mod:`erosion_watch.constants`.
"""

from __future__ import annotations

import logging

import numpy as np

from erosion_watch import constants as C
from erosion_watch.errors import DomainError
from erosion_watch.raster import Band
from erosion_watch.scene import Scene, SceneCollection

logger = logging.getLogger(__name__)


def normalize(x, lo: float, hi: float):
    return 2.0 * (x - lo) / (hi - lo) - 1.0


def denormalize(y, lo: float, hi: float):
    return 0.5 * (y + 1.0) * (hi - lo) + lo


def tansig(x):
    return 2.0 / (1.0 + np.exp(-2.0 * x)) - 1.0


def mean_incidence_angles(scene: Scene):
    """Mean viewing azimuth and zenith over the network bands.

    Falls back to fixed typical angles when any band lacks them.
    """
    az = [scene.number(f"MEAN_INCIDENCE_AZIMUTH_ANGLE_{b}") for b in C.FCOVER_BANDS]
    zen = [scene.number(f"MEAN_INCIDENCE_ZENITH_ANGLE_{b}") for b in C.FCOVER_BANDS]
    if any(v is None for v in az + zen):
        logger.debug("%r: incomplete viewing geometry, using default angles", scene)
        return C.DEFAULT_INCIDENCE_AZIMUTH_DEG, C.DEFAULT_INCIDENCE_ZENITH_DEG
    return float(np.mean(az)), float(np.mean(zen))


def fcover_network(bands: np.ndarray, view_zenith_deg: float, sun_zenith_deg: float,
                   relative_azimuth_deg: float) -> np.ndarray:
    """
    Evaluate the network.

    Parameters
    ----------
    bands : ndarray
        (8, ...) reflectance in [0, 1] ordered as ``FCOVER_BANDS``.
    view_zenith_deg, sun_zenith_deg, relative_azimuth_deg : float
        Scene-wide angles in degrees.

    Returns
    -------
    ndarray
        FCover in [0, 1] (approximately), shaped like one band.
    """
    shape = bands.shape[1:]
    inputs = [normalize(bands[i], *C.FCOVER_BAND_NORMALISATION[b]) for i, b in enumerate(C.FCOVER_BANDS)]
    inputs.append(np.full(shape, normalize(np.cos(np.deg2rad(view_zenith_deg)), *C.FCOVER_VIEW_ZENITH_NORMALISATION)))
    inputs.append(np.full(shape, normalize(np.cos(np.deg2rad(sun_zenith_deg)), *C.FCOVER_SUN_ZENITH_NORMALISATION)))
    # relative azimuth enters un-normalised
    inputs.append(np.full(shape, np.cos(np.deg2rad(relative_azimuth_deg))))
    x = np.stack(inputs)

    w = np.asarray(C.FCOVER_HIDDEN_WEIGHTS)
    b = np.asarray(C.FCOVER_HIDDEN_BIASES)
    hidden = tansig(np.tensordot(w, x, axes=1) + b.reshape((-1,) + (1,) * len(shape)))
    out = np.tensordot(np.asarray(C.FCOVER_OUTPUT_WEIGHTS), hidden, axes=1) + C.FCOVER_OUTPUT_BIAS
    return denormalize(out, *C.FCOVER_OUTPUT_DENORMALISATION)


def add_fcover(scene: Scene, sr_band_scale: float = C.SR_BAND_SCALE) -> Scene:
    """Add an ``fcover`` band (FCover * ``sr_band_scale``, dtype of ``B4``)."""
    raster = scene.raster
    raster.require(C.FCOVER_BANDS)

    sun_az = scene.number("MEAN_SOLAR_AZIMUTH_ANGLE")
    sun_zen = scene.number("MEAN_SOLAR_ZENITH_ANGLE")
    if sun_az is None or sun_zen is None:
        raise DomainError(f"{scene!r} lacks MEAN_SOLAR_AZIMUTH_ANGLE / MEAN_SOLAR_ZENITH_ANGLE")
    view_az, view_zen = mean_incidence_angles(scene)

    valid = raster.validity(C.FCOVER_BANDS)
    refl = np.stack([raster[b].data.astype("float64") / sr_band_scale for b in C.FCOVER_BANDS])
    if (refl[:, valid] < 0).any():
        raise DomainError(f"{scene!r} has negative reflectance")

    fcover = fcover_network(refl, view_zen, sun_zen, sun_az - view_az) * sr_band_scale
    dtype = raster["B4"].dtype
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        fcover = np.clip(np.round(fcover), info.min, info.max)
    return scene.with_raster(raster.add_bands(Band("fcover", fcover.astype(dtype), valid)))


def fcover_collection(collection: SceneCollection, sr_band_scale: float = C.SR_BAND_SCALE) -> SceneCollection:
    return collection.map(lambda s: add_fcover(s, sr_band_scale))
