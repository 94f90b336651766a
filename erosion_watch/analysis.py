# erosion_watch/analysis.py
import logging
from typing import Dict, Mapping, Optional

import geopandas as gpd
import numpy as np
import pandas as pd
from rasterio.features import geometry_mask

from erosion_watch import constants as C
from erosion_watch.raster import GridSpec, Raster
from erosion_watch.raster_ops import sample_raster_at_points
from erosion_watch.scene import SceneCollection, TimeLike, to_timestamp

logger = logging.getLogger(__name__)


def aoi_mask(aoi, grid: GridSpec) -> np.ndarray:
    """Pixels whose centre falls inside ``aoi`` (a shapely geometry in the grid CRS)."""
    return geometry_mask([aoi], out_shape=grid.shape, transform=grid.transform, invert=True)


def _zonal_mean(raster: Raster, band: str, inside: np.ndarray) -> Optional[float]:
    b = raster[band]
    sel = b.validity() & inside
    if not sel.any():
        return None
    return float(b.data[sel].astype("float64").mean())


def _round(v: Optional[float], ndigits: int = 3) -> Optional[float]:
    return None if v is None else round(v, ndigits)


def summarize_aoi(aoi, layers: Mapping[str, Raster]) -> Dict[str, Optional[float]]:
    """
    Mean slope steepness (%), bare soil frequency (%) and erosion hazard in ``aoi``.
    Layers: ``slope_deg``, ``bare_soil_frequency`` and ``A`` rasters on one grid.
    Missing values come back as None.
    """
    grid = layers["A"].grid
    inside = aoi_mask(aoi, grid)

    slope = layers["slope_deg"]["slope_deg"]
    sel = slope.validity() & inside
    slope_pct = float(np.mean(np.tan(np.deg2rad(slope.data[sel].astype("float64"))) * 100.0)) if sel.any() else None
    bsf = _zonal_mean(layers["bare_soil_frequency"], "bare_soil_frequency", inside)

    return {
        "slope_percent": _round(slope_pct),
        "bare_soil_frequency_percent": _round(None if bsf is None else bsf * 100.0),
        "A_mean": _round(_zonal_mean(layers["A"], "A", inside)),
    }


def aoi_time_series(fitted_series: SceneCollection, bare_series: SceneCollection, aoi,
                    from_date: TimeLike, band: str = "fcover") -> pd.DataFrame:
    """
    Per composite: day of the period, mean smoothed FCover and mean FCover
    of bare observations. Composites without a bare observation get
    BARE_OBSERVATION_FALLBACK so they stay off a plot's data range.
    """
    origin = to_timestamp(from_date)
    grid = fitted_series.grid
    inside = aoi_mask(aoi, grid)
    bare_by_time = {s.timestamp: s for s in bare_series}

    rows = []
    for scene in fitted_series:
        bare_scene = bare_by_time.get(scene.timestamp)
        bare_mean = _zonal_mean(bare_scene.raster, band, inside) if bare_scene is not None else None
        rows.append({
            "timestamp": scene.timestamp,
            "doy": int((scene.timestamp - origin) / pd.Timedelta(days=1)),
            "fcover_smooth": _zonal_mean(scene.raster, "fitted", inside),
            "fcover_bare": C.BARE_OBSERVATION_FALLBACK if bare_mean is None else bare_mean,
        })
    return pd.DataFrame(rows)


def sample_layers_at_points(points: gpd.GeoDataFrame, layers: Mapping[str, Raster]) -> gpd.GeoDataFrame:
    """
    One column per layer with its first band sampled at each point.
    Points are reprojected to each layer's CRS; pixels outside or invalid give None.
    """
    out = points.copy()
    for name, raster in layers.items():
        gdf = points
        if raster.grid.crs is not None and points.crs is not None:
            gdf = points.to_crs(raster.grid.crs)
        try:
            out[name] = sample_raster_at_points(gdf, raster, raster.band_names[0])
        except Exception as e:
            raise RuntimeError(f"[stage:sample_{name}] {e}") from e
    return out
