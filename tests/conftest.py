# tests/conftest.py
import numpy as np
import pytest
from rasterio.crs import CRS
from rasterio.transform import from_origin

from erosion_watch.raster import Band, GridSpec, Raster
from erosion_watch.raster_ops import write_raster
from erosion_watch.scene import Scene, SceneCollection

S2_BANDS = ("B2", "B3", "B4", "B5", "B6", "B7", "B8", "B8A", "B11", "B12")

# Reflectance * 10000 of a green, vegetated pixel
VEGETATION = {"B2": 400, "B3": 700, "B4": 500, "B5": 1200, "B6": 2500, "B7": 3000,
              "B8": 3500, "B8A": 3600, "B11": 2000, "B12": 1000}

# Reflectance * 10000 of a dry bare soil pixel (GEOS3 positive)
BARE_SOIL = {"B2": 1000, "B3": 1300, "B4": 1600, "B5": 1800, "B6": 1900, "B7": 2000,
             "B8": 2100, "B8A": 2150, "B11": 2600, "B12": 2300}


def default_metadata():
    meta = {
        "MEAN_SOLAR_AZIMUTH_ANGLE": 140.0,
        "MEAN_SOLAR_ZENITH_ANGLE": 35.0,
        "CLOUDY_PIXEL_PERCENTAGE": 5.0,
    }
    for b in ("B3", "B4", "B5", "B6", "B7", "B8A", "B11", "B12"):
        meta[f"MEAN_INCIDENCE_AZIMUTH_ANGLE_{b}"] = 100.0
        meta[f"MEAN_INCIDENCE_ZENITH_ANGLE_{b}"] = 8.0
    return meta


@pytest.fixture
def grid():
    """20 x 20 grid of 10 m pixels in UTM 37N."""
    return GridSpec(transform=from_origin(500000.0, 100000.0, 10.0, 10.0), shape=(20, 20),
                    crs=CRS.from_epsg(32637))


@pytest.fixture
def make_raster(grid):
    """Build a raster from name -> scalar or array."""
    def _make(values, valid=None, dtype="float64"):
        bands = []
        for name, v in values.items():
            arr = np.asarray(v, dtype=dtype)
            if arr.ndim == 0:
                arr = np.full(grid.shape, arr, dtype=dtype)
            bands.append(Band(name, arr, valid))
        return Raster(grid, bands)
    return _make


@pytest.fixture
def make_scene(grid):
    """Build a Sentinel-2 like scene with reflectance bands and cloud probability."""
    def _make(timestamp, reflectance=None, probability=0.0, metadata=None, scene_id=""):
        refl = dict(VEGETATION)
        refl.update(reflectance or {})
        bands = []
        for name in S2_BANDS:
            arr = np.asarray(refl[name])
            if arr.ndim == 0:
                arr = np.full(grid.shape, arr)
            bands.append(Band(name, arr.astype("uint16")))
        prob = np.asarray(probability, dtype="float32")
        if prob.ndim == 0:
            prob = np.full(grid.shape, prob, dtype="float32")
        bands.append(Band("probability", prob))
        meta = default_metadata() if metadata is None else metadata
        return Scene(Raster(grid, bands), timestamp, meta, scene_id=scene_id)
    return _make


@pytest.fixture
def monthly_collection(make_scene):
    """One clear vegetated scene on the 15th of every month of 2019."""
    return SceneCollection(make_scene(f"2019-{m:02d}-15") for m in range(1, 13))


SOIL = {"clay": 20.0, "sand": 15.0, "silt": 50.0, "OM": 2.0, "bulk_density": 1.3,
        "cfvo": 0.1, "ksat": 30.0, "hydrologic_group": 2.0}


@pytest.fixture
def seasonal_collection(make_scene, grid):
    """Monthly scenes of 2019; the left half of the grid is bare from June to August."""
    scenes = []
    for m in range(1, 13):
        refl = {}
        if m in (6, 7, 8):
            for k, v in BARE_SOIL.items():
                arr = np.full(grid.shape, VEGETATION[k])
                arr[:, :10] = v
                refl[k] = arr
        scenes.append(make_scene(f"2019-{m:02d}-15", reflectance=refl, scene_id=f"S2_2019{m:02d}15"))
    return SceneCollection(scenes)


@pytest.fixture
def static_layers(make_raster, grid):
    """DEM falling 0.1 m/m towards the east, contributing area, soil and erosivity."""
    cols = np.arange(grid.width) * 10.0
    dem = np.tile(200.0 - 0.1 * cols, (grid.height, 1))
    return {
        "dem": make_raster({"elevation": dem}),
        "contrib_area": make_raster({"contrib_area": 500.0}),
        "soil": make_raster(SOIL),
        "rainfall_erosivity": make_raster({"R": 600.0}),
    }


@pytest.fixture
def site_files(tmp_path, seasonal_collection, static_layers):
    """The synthetic site written to GeoTIFFs plus a scene manifest."""
    layers = {}
    for name, raster in static_layers.items():
        path = tmp_path / f"{name}.tif"
        write_raster(raster, str(path))
        layers[name] = str(path)

    lines = ["path,timestamp,probability_path,scene_id,MEAN_SOLAR_AZIMUTH_ANGLE,"
             "MEAN_SOLAR_ZENITH_ANGLE,CLOUDY_PIXEL_PERCENTAGE"]
    for scene in seasonal_collection:
        refl, prob = f"{scene.scene_id}.tif", f"{scene.scene_id}_prob.tif"
        write_raster(scene.raster.select(S2_BANDS), str(tmp_path / refl), dtype="uint16", nodata=0)
        write_raster(scene.raster.select(["probability"]), str(tmp_path / prob))
        lines.append(f"{refl},{scene.timestamp.date()},{prob},{scene.scene_id},140.0,35.0,5.0")
    manifest = tmp_path / "scenes.csv"
    manifest.write_text("\n".join(lines) + "\n", encoding="utf-8")
    layers["scenes"] = str(manifest)
    return layers
