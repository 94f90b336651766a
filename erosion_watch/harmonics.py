"""Harmonic regression smoothing of composite time series.

Each pixel is fitted independently with ordinary least squares on

    y(t) = c0 + c1 * t + sum_f [a_f * cos(2 pi f t) + b_f * sin(2 pi f t)],  f = 1..H

where ``t`` is the time in fractional years since the first sample.
Adapted from Kibret, Marohn & Cadisch (2020), who use it to gap-fill and
smooth MODIS EVI series.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from erosion_watch import constants as C
from erosion_watch.errors import DomainError, UnderdeterminedModelError
from erosion_watch.raster import Band, GridSpec, Raster
from erosion_watch.scene import Scene, SceneCollection, TimeLike, to_timestamp

logger = logging.getLogger(__name__)


def regressor_names(harmonics: int) -> List[str]:
    return (["constant", "t"] + [f"cos_{f}" for f in range(1, harmonics + 1)]
            + [f"sin_{f}" for f in range(1, harmonics + 1)])


def fractional_years(timestamps: Sequence[TimeLike], origin: TimeLike) -> np.ndarray:
    origin = to_timestamp(origin)
    return np.array([(to_timestamp(ts) - origin) / pd.Timedelta(days=C.DAYS_PER_YEAR) for ts in timestamps])


def design_matrix(t: np.ndarray, harmonics: int) -> np.ndarray:
    """(samples, 2 + 2H) regressors for times ``t`` in years."""
    t = np.asarray(t, dtype="float64")
    freqs = np.arange(1, harmonics + 1)
    angle = 2.0 * np.pi * t[:, None] * freqs[None, :]
    return np.hstack([np.ones((t.size, 1)), t[:, None], np.cos(angle), np.sin(angle)])


@dataclass
class HarmonicModel:
    """Per-pixel regression coefficients.

    Attributes
    ----------
    coefficients : ndarray
        (2 + 2H, rows, cols), ordered as :func:`regressor_names`.
    valid : ndarray of bool
        Pixels that had enough samples to be fitted.
    origin : pandas.Timestamp
        Time zero of the ``t`` regressor.
    """

    coefficients: np.ndarray
    valid: np.ndarray
    origin: pd.Timestamp
    harmonics: int
    grid: Optional[GridSpec] = None

    @property
    def names(self) -> List[str]:
        return regressor_names(self.harmonics)

    def evaluate(self, timestamps: Sequence[TimeLike]) -> np.ndarray:
        """(time, rows, cols) fitted values; NaN at unfitted pixels."""
        x = design_matrix(fractional_years(timestamps, self.origin), self.harmonics)
        out = np.einsum("tk,khw->thw", x, self.coefficients)
        out[:, ~self.valid] = np.nan
        return out

    def coefficient_raster(self) -> Raster:
        bands = [Band(n, self.coefficients[i].astype("float32"), self.valid) for i, n in enumerate(self.names)]
        return Raster(self.grid, bands)


def fit_harmonic_model(series: SceneCollection, band: str, harmonics: int = C.DEFAULT_HARMONICS) -> HarmonicModel:
    """
    Fit the harmonic model to every pixel of ``band``.

    Raises
    ------
    UnderdeterminedModelError
        When the sample times cannot determine 2 + 2H coefficients at all.
        Single pixels with too few valid samples are only masked.
    """
    if harmonics < 0:
        raise DomainError(f"Number of harmonics must be >= 0, got {harmonics}")
    if len(series) == 0:
        raise UnderdeterminedModelError("Cannot fit a harmonic model to an empty series")

    origin = series.timestamps[0]
    x = design_matrix(fractional_years(series.timestamps, origin), harmonics)
    k = x.shape[1]
    if np.linalg.matrix_rank(x) < k:
        raise UnderdeterminedModelError(
            f"{len(series)} samples cannot determine {k} coefficients ({harmonics} harmonics)")

    y = series.stack(band)  # (t, h, w)
    t, h, w = y.shape
    y = y.reshape(t, -1)
    ok = ~np.isnan(y)
    y0 = np.where(ok, y, 0.0)
    weights = ok.astype("float64")

    xtx = np.einsum("tk,tn,tj->nkj", x, weights, x)
    xty = np.einsum("tk,tn->nk", x, y0)
    solvable = (ok.sum(axis=0) >= k) & (np.linalg.matrix_rank(xtx) == k)

    coefs = np.full((h * w, k), np.nan)
    if solvable.any():
        coefs[solvable] = np.linalg.solve(xtx[solvable], xty[solvable][..., None])[..., 0]
    skipped = int((~solvable).sum())
    if skipped:
        logger.info("Harmonic fit: %s of %s pixels have too few valid samples and stay masked", skipped, h * w)

    return HarmonicModel(
        coefficients=coefs.T.reshape(k, h, w),
        valid=solvable.reshape(h, w),
        origin=origin,
        harmonics=harmonics,
        grid=series.grid,
    )


def harmonic_regression(series: SceneCollection, band: str, harmonics: int = C.DEFAULT_HARMONICS,
                        valid_range: Tuple[float, float] = C.FCOVER_VALID_RANGE) -> SceneCollection:
    """
    Smoothed series with the bands ``fitted``, ``band``, ``fittedp`` and ``fittedn``.

    ``fitted`` is clamped to ``valid_range``; ``fittedp``/``fittedn`` hold
    the fitted value of the previous/next sample and are 0 at the ends of
    the series.
    """
    model = fit_harmonic_model(series, band, harmonics)
    fitted = np.clip(model.evaluate(series.timestamps), *valid_range)
    zeros = np.zeros((1,) + fitted.shape[1:])
    filled = np.nan_to_num(fitted, nan=0.0)
    previous = np.concatenate([zeros, filled[:-1]])
    following = np.concatenate([filled[1:], zeros])

    valid = model.valid
    out = []
    for i, scene in enumerate(series):
        raster = Raster(scene.grid, [
            Band("fitted", filled[i].astype("float32"), valid),
            scene.raster[band],
            Band("fittedp", previous[i].astype("float32"), valid),
            Band("fittedn", following[i].astype("float32"), valid),
        ])
        out.append(scene.with_raster(raster))
    return SceneCollection(out)
