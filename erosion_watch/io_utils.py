import logging
import os
from typing import Optional, Tuple

import geopandas as gpd
import pandas as pd
from shapely.geometry import Point

from erosion_watch.raster_ops import read_raster, reproject_like
from erosion_watch.scene import Scene, SceneCollection

logger = logging.getLogger(__name__)

# Manifest columns that are not scene metadata
MANIFEST_COLUMNS = ("path", "timestamp", "probability_path", "scene_id", "bands")

# Equal-area CRS for hectare computations
AREA_CRS = "EPSG:6933"


def _lonlat_columns(df: pd.DataFrame) -> Tuple[str, str]:
    lower = {c.lower(): c for c in df.columns}
    lon = next((lower[k] for k in ("lon", "lng", "longitude", "x") if k in lower), None)
    lat = next((lower[k] for k in ("lat", "latitude", "y") if k in lower), None)
    if lat is None or lon is None:
        raise ValueError("Point table needs longitude/latitude columns (lon/lat, longitude/latitude or x/y)")
    return lon, lat


def load_points(path, crs: Optional[str] = None) -> gpd.GeoDataFrame:
    """
    Sampling sites from a vector file or a CSV of WGS84 coordinates.

    Every site gets a ``site_id`` (kept when present). Points are returned
    in ``crs``, or EPSG:4326.
    """
    name = str(getattr(path, "name", path))
    if name.lower().endswith(".csv"):
        df = pd.read_csv(path)
        lon, lat = _lonlat_columns(df)
        geom = [Point(xy) for xy in zip(df[lon].astype(float), df[lat].astype(float))]
        gdf = gpd.GeoDataFrame(df, geometry=geom, crs="EPSG:4326")
    else:
        gdf = gpd.read_file(path)
        if gdf.crs is None:
            gdf = gdf.set_crs(4326)
    if gdf.empty:
        raise ValueError(f"{name}: no points")
    if "site_id" not in gdf.columns:
        gdf["site_id"] = [f"site_{i + 1}" for i in range(len(gdf))]
    return gdf.to_crs(crs or 4326)


def load_aoi(path: str, crs: Optional[str] = None) -> Tuple[object, float]:
    """Union of all features in a vector file and its true area in hectares.

    The geometry is returned in ``crs`` (or the file's CRS).
    """
    gdf = gpd.read_file(path)
    if gdf.empty:
        raise ValueError(f"{path}: no features")
    if gdf.crs is None:
        gdf = gdf.set_crs(4326)
    area_ha = float(gdf.to_crs(AREA_CRS).geometry.union_all().area) / 1e4
    if crs is not None:
        gdf = gdf.to_crs(crs)
    return gdf.geometry.union_all(), round(area_ha, 2)


def _scene_metadata(row: pd.Series) -> dict:
    return {k: v for k, v in row.items() if k not in MANIFEST_COLUMNS and not pd.isna(v)}


def load_scene_collection(manifest: str) -> SceneCollection:
    """
    Scenes listed in a CSV manifest.

    Columns: ``path`` (multi-band reflectance GeoTIFF), ``timestamp``, and
    optionally ``probability_path`` (cloud probability, percent),
    ``scene_id`` and ``bands`` (``;``-separated band names when the file
    has no band descriptions). Every other column (e.g.
    ``MEAN_SOLAR_AZIMUTH_ANGLE``) becomes scene metadata. Relative paths
    are resolved against the manifest's directory.
    """
    base = os.path.dirname(os.path.abspath(manifest))
    df = pd.read_csv(manifest)
    missing = [c for c in ("path", "timestamp") if c not in df.columns]
    if missing:
        raise ValueError(f"{manifest}: missing columns {missing}")

    scenes = []
    for _, row in df.iterrows():
        path = os.path.join(base, row["path"])
        names = None
        if "bands" in df.columns and isinstance(row["bands"], str):
            names = row["bands"].split(";")
        raster = read_raster(path, band_names=names)
        prob_path = row.get("probability_path")
        if isinstance(prob_path, str) and prob_path:
            prob = read_raster(os.path.join(base, prob_path), band_names=["probability"])
            if prob.grid != raster.grid:
                prob = reproject_like(prob, raster.grid)
            raster = raster.add_bands(prob)
        scene_id = row.get("scene_id") if isinstance(row.get("scene_id"), str) else os.path.basename(path)
        scenes.append(Scene(raster, row["timestamp"], _scene_metadata(row), scene_id=scene_id))
    logger.info("Loaded %s scenes from %s", len(scenes), manifest)
    return SceneCollection(scenes)
