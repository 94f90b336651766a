"""Acquisitions and time-ordered collections of acquisitions."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from shapely.geometry import box

from erosion_watch.raster import GridSpec, Raster, check_same_grid

TimeLike = Union[str, pd.Timestamp, np.datetime64]


def to_timestamp(value: TimeLike) -> pd.Timestamp:
    """Timezone-aware UTC timestamp; naive values are taken as UTC."""
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


@dataclass(frozen=True, eq=False)
class Scene:
    """A raster acquired at one instant, with its acquisition metadata.

    ``metadata`` uses the Sentinel-2 property names, e.g.
    ``MEAN_SOLAR_AZIMUTH_ANGLE`` or ``MEAN_INCIDENCE_ZENITH_ANGLE_B8A``.
    The cloud probability (percent) is expected as the ``probability`` band.
    """

    raster: Raster
    timestamp: pd.Timestamp
    metadata: Mapping[str, Any] = field(default_factory=dict)
    scene_id: str = ""

    def __post_init__(self):
        object.__setattr__(self, "timestamp", to_timestamp(self.timestamp))

    @property
    def grid(self) -> GridSpec:
        return self.raster.grid

    def number(self, key: str) -> Optional[float]:
        """Numeric metadata value, or None when missing or NaN."""
        val = self.metadata.get(key)
        if val is None:
            return None
        try:
            v = float(val)
        except (TypeError, ValueError):
            return None
        if np.isnan(v):
            return None
        return v

    def with_raster(self, raster: Raster) -> "Scene":
        return replace(self, raster=raster)

    def __repr__(self) -> str:
        return f"Scene({self.scene_id or self.timestamp.isoformat()}, bands={self.raster.band_names})"


class SceneCollection:
    """Scenes ordered by acquisition time."""

    def __init__(self, scenes: Iterable[Scene] = ()):
        self._scenes: List[Scene] = sorted(scenes, key=lambda s: s.timestamp)

    def __len__(self) -> int:
        return len(self._scenes)

    def __iter__(self) -> Iterator[Scene]:
        return iter(self._scenes)

    def __getitem__(self, idx: int) -> Scene:
        return self._scenes[idx]

    def __repr__(self) -> str:
        return f"SceneCollection(n={len(self)})"

    @property
    def timestamps(self) -> List[pd.Timestamp]:
        return [s.timestamp for s in self._scenes]

    @property
    def grid(self) -> GridSpec:
        return check_same_grid(*[s.raster for s in self._scenes])

    def filter_date(self, start: TimeLike, end: TimeLike) -> "SceneCollection":
        """Scenes acquired in [start, end)."""
        start, end = to_timestamp(start), to_timestamp(end)
        return SceneCollection(s for s in self._scenes if start <= s.timestamp < end)

    def filter_bounds(self, bounds: Tuple[float, float, float, float]) -> "SceneCollection":
        """Scenes whose footprint intersects (west, south, east, north)."""
        area = box(*bounds)
        return SceneCollection(s for s in self._scenes if box(*s.grid.bounds).intersects(area))

    def filter_metadata(self, key: str, less_than: float) -> "SceneCollection":
        """Scenes whose numeric ``key`` is below ``less_than``; scenes without it are kept."""
        kept = []
        for s in self._scenes:
            v = s.number(key)
            if v is None or v < less_than:
                kept.append(s)
        return SceneCollection(kept)

    def map(self, func: Callable[[Scene], Scene]) -> "SceneCollection":
        return SceneCollection(func(s) for s in self._scenes)

    def select(self, names: Sequence[str]) -> "SceneCollection":
        return self.map(lambda s: s.with_raster(s.raster.select(names)))

    def stack(self, band: str) -> np.ndarray:
        """(time, rows, cols) float64 stack of one band, NaN where invalid."""
        if not self._scenes:
            raise ValueError("Cannot stack an empty collection")
        return np.stack([s.raster[band].as_float() for s in self._scenes])
