"""Temporal compositing of scene collections.

A span of time is cut into contiguous intervals of roughly equal length
(calendar aware, see :func:`extract_time_ranges`); the scenes of each
interval are reduced to a single raster stamped with the interval
midpoint. The resulting series has one raster per interval, masked where
an interval had no usable observation.
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Sequence

import numpy as np
import pandas as pd

from erosion_watch import constants as C
from erosion_watch.errors import DomainError
from erosion_watch.raster import Band, GridSpec, Raster
from erosion_watch.scene import Scene, SceneCollection, TimeLike, to_timestamp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeInterval:
    """Half-open interval ``[start, end)``."""

    start: pd.Timestamp
    end: pd.Timestamp

    @property
    def midpoint(self) -> pd.Timestamp:
        return self.start + (self.end - self.start) / 2

    @property
    def days(self) -> float:
        return (self.end - self.start) / pd.Timedelta(days=1)

    def __contains__(self, ts: TimeLike) -> bool:
        ts = to_timestamp(ts)
        return self.start <= ts < self.end


class TimeIntervalSet:
    """Ordered, abutting intervals covering ``[start, end)``."""

    def __init__(self, intervals: Sequence[TimeInterval]):
        self._intervals = list(intervals)
        for prev, nxt in zip(self._intervals, self._intervals[1:]):
            if prev.end != nxt.start:
                raise DomainError(f"Intervals are not contiguous: {prev} / {nxt}")

    def __len__(self) -> int:
        return len(self._intervals)

    def __iter__(self) -> Iterator[TimeInterval]:
        return iter(self._intervals)

    def __getitem__(self, idx: int) -> TimeInterval:
        return self._intervals[idx]

    def __repr__(self) -> str:
        return f"TimeIntervalSet(n={len(self)}, {self.start} -> {self.end})"

    @property
    def start(self) -> pd.Timestamp:
        return self._intervals[0].start

    @property
    def end(self) -> pd.Timestamp:
        return self._intervals[-1].end


def extract_time_ranges(start: TimeLike, end: TimeLike, interval_days: float) -> TimeIntervalSet:
    """
    Split ``[start, end)`` into about ``interval_days``-long intervals.

    The interval count is ``days / interval_days`` rounded half up. Each interval
    spans a whole number of months (``rel_delta``) divided by the number of
    intervals per month, measured from its own start, so 60-day intervals
    over a calendar year land on the first of every other month. A last end
    short of ``end`` is extended to it; one past ``end`` is kept, so the set
    always holds the rounded count.

    Examples
    --------
    >>> [str(i.start.date()) for i in extract_time_ranges("2019-01-01", "2020-01-01", 60)]
    ['2019-01-01', '2019-03-01', '2019-05-01', '2019-07-01', '2019-09-01', '2019-11-01']
    """
    start, end = to_timestamp(start), to_timestamp(end)
    if interval_days <= 0:
        raise DomainError(f"Interval length must be positive, got {interval_days}")
    if end <= start:
        raise DomainError(f"Empty time span: {start} -> {end}")

    days = (end - start) / pd.Timedelta(days=1)
    # halves round up
    n = max(int(math.floor(days / interval_days + 0.5)), 1)
    per_month = max(int(math.floor(C.AVERAGE_MONTH_DAYS / interval_days + 0.5)), 1)
    rel_delta = int(math.ceil(days / (C.AVERAGE_MONTH_DAYS * n)))

    intervals: List[TimeInterval] = []
    cur = start
    for _ in range(n):
        step = (cur + pd.DateOffset(months=rel_delta) - cur) / per_month
        nxt = cur + step
        intervals.append(TimeInterval(cur, nxt))
        cur = nxt
    last = intervals[-1]
    if last.end < end:
        intervals[-1] = TimeInterval(last.start, end)
    elif last.end > end:
        logger.info("%s intervals run %.1f days past %s", n, (last.end - end) / pd.Timedelta(days=1), end.date())
    return TimeIntervalSet(intervals)


# --- Reducers -----------------------------------------------------------------
# Each takes a (time, band, rows, cols) float stack with NaN at invalid samples
# and returns (band, rows, cols) values with NaN where nothing was reduced.

def _nan_reduce(func, stack: np.ndarray) -> np.ndarray:
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        return func(stack, axis=0)


def _median(stack, **_):
    return _nan_reduce(np.nanmedian, stack)


def _mean(stack, **_):
    return _nan_reduce(np.nanmean, stack)


def _sum(stack, **_):
    out = np.nansum(stack, axis=0)
    out[np.isnan(stack).all(axis=0)] = np.nan
    return out


def _count(stack, **_):
    return (~np.isnan(stack)).sum(axis=0).astype("float64")


def _max_band(stack, band_index: int = 0, **_):
    """All bands from the sample maximising one band (quality mosaic)."""
    key = np.where(np.isnan(stack[:, band_index]), -np.inf, stack[:, band_index])
    best = np.argmax(key, axis=0)
    out = np.take_along_axis(stack, best[None, None], axis=0)[0]
    out[:, np.isnan(stack[:, band_index]).all(axis=0)] = np.nan
    return out


def geometric_median(stack: np.ndarray, max_iter: int = C.GEOMEDIAN_MAX_ITER,
                     eps: float = C.GEOMEDIAN_EPS) -> np.ndarray:
    """Per-pixel multivariate median across bands (Weiszfeld iterations).

    Only samples valid in every band take part. Roberts, Mueller & McIntyre
    (2017) show it keeps the spectral relationships between bands that a
    per-band median breaks.
    """
    t, b = stack.shape[:2]
    x = stack.reshape(t, b, -1)
    ok = ~np.isnan(x).any(axis=1)  # (t, n)
    x0 = np.where(ok[:, None], x, 0.0)
    n_ok = ok.sum(axis=0)
    has = n_ok > 0
    m = np.where(has, x0.sum(axis=0) / np.maximum(n_ok, 1), np.nan)  # (b, n)
    for _ in range(max_iter):
        d = np.sqrt(((x0 - m[None]) ** 2).sum(axis=1))  # (t, n)
        w = np.where(ok, 1.0 / np.maximum(d, eps), 0.0)
        wsum = w.sum(axis=0)
        m_new = np.where(has, (w[:, None] * x0).sum(axis=0) / np.maximum(wsum, eps), np.nan)
        delta = np.nanmax(np.abs(m_new - m)) if has.any() else 0.0
        m = m_new
        if delta < eps:
            break
    return m.reshape(stack.shape[1:])


def _geomedian(stack, **_):
    return geometric_median(stack)


REDUCERS: Dict[str, Callable[..., np.ndarray]] = {
    "median": _median,
    "geomedian": _geomedian,
    "sum": _sum,
    "mean": _mean,
    "count": _count,
    "max_band": _max_band,
}


def reduce_stack(scenes: Sequence[Scene], bands: Sequence[str], reducer: str = "median",
                 band_name: Optional[str] = None, grid: Optional[GridSpec] = None) -> Raster:
    """
    Reduce scenes to one raster with ``bands``.

    ``band_name`` is the ranking band of ``max_band``. Without scenes the
    result is fully masked on ``grid``.
    """
    if reducer not in REDUCERS:
        raise DomainError(f"Unknown reducer '{reducer}' (choose from {sorted(REDUCERS)})")
    bands = list(bands)
    kwargs = {}
    if reducer == "max_band":
        if band_name not in bands:
            raise DomainError(f"max_band needs its ranking band in {bands}, got {band_name!r}")
        kwargs["band_index"] = bands.index(band_name)

    if not scenes:
        if grid is None:
            raise ValueError("A grid is needed to build an empty composite")
        return Raster.masked_like(grid, bands)

    grid = scenes[0].grid
    stack = np.stack([s.raster.float_stack(bands) for s in scenes])
    out = REDUCERS[reducer](stack, **kwargs)
    result = []
    for i, name in enumerate(bands):
        valid = ~np.isnan(out[i])
        dtype = "int32" if reducer == "count" else "float32"
        result.append(Band(name, np.where(valid, out[i], 0).astype(dtype), valid))
    return Raster(grid, result)


class CompositeSeries(SceneCollection):
    """One composite per interval, stamped with the interval midpoint."""

    def __init__(self, scenes, intervals: TimeIntervalSet):
        super().__init__(scenes)
        self.intervals = intervals
        if len(self) != len(intervals):
            raise DomainError(f"{len(self)} composites for {len(intervals)} intervals")


def aggregate_stack(collection: SceneCollection, bands: Sequence[str], interval: TimeInterval,
                    reducer: str = "median", band_name: Optional[str] = None,
                    grid: Optional[GridSpec] = None) -> Scene:
    """Composite of the scenes acquired in ``interval``."""
    scenes = list(collection.filter_date(interval.start, interval.end))
    if not scenes:
        logger.info("No usable scene in %s -> %s; composite is masked",
                    interval.start.date(), interval.end.date())
    raster = reduce_stack(scenes, bands, reducer, band_name=band_name, grid=grid)
    meta = {"interval_start": interval.start, "interval_end": interval.end, "scene_count": len(scenes)}
    return Scene(raster, interval.midpoint, meta, scene_id=f"composite_{interval.start.date()}")


def harmonized_series(collection: SceneCollection, bands: Sequence[str], intervals: TimeIntervalSet,
                      reducer: str = "median", band_name: Optional[str] = None,
                      grid: Optional[GridSpec] = None) -> CompositeSeries:
    """Equally spaced composites, one per interval, in time order."""
    if grid is None and len(collection):
        grid = collection.grid
    composites = [aggregate_stack(collection, bands, iv, reducer, band_name, grid) for iv in intervals]
    logger.debug("Built %s %s composites", len(composites), reducer)
    return CompositeSeries(composites, intervals)
