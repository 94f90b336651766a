"""RUSLE soil erosion hazard pipeline.

Combines terrain (LS), soil (K), rainfall erosivity (R) and the
Sentinel-2 derived sustainability factor (S) into the annual soil loss
``A = R * K * LS * S`` for the exposed croplands and grasslands of a site.

All rasters are processed on the grid of the imagery; static layers are
resampled onto it by :func:`run_site_pipeline`.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import numpy as np
from rasterio.enums import Resampling

from erosion_watch.analysis import aoi_mask, aoi_time_series, sample_layers_at_points, summarize_aoi
from erosion_watch.composites import extract_time_ranges, harmonized_series, reduce_stack
from erosion_watch.config import PipelineSettings, load_settings
from erosion_watch.errors import DomainError, ErosionWatchError
from erosion_watch.harmonics import harmonic_regression
from erosion_watch.indicators.bare_soil import (
    analysis_mask,
    bare_observations,
    bare_soil_composite,
    bare_soil_frequency,
    bare_soil_mask,
)
from erosion_watch.indicators.cloud_mask import mask_collection
from erosion_watch.indicators.erosion import area_breakdown, erosion_hazard, hazard_statistics, region_histograms
from erosion_watch.indicators.fcover import fcover_collection
from erosion_watch.indicators.soil_erodibility import (
    CATEGORICAL_SOIL_BANDS,
    assemble_covariates,
    classification_grids,
    factor_k,
)
from erosion_watch.indicators.sustainability import factor_s
from erosion_watch.indicators.terrain import contributing_area_from_upa, factor_ls, slope_aspect
from erosion_watch.io_utils import load_aoi, load_points, load_scene_collection
from erosion_watch.logger import setup_logger
from erosion_watch.raster import Band, Raster, check_same_grid
from erosion_watch.raster_ops import map_tiles, read_raster, reproject_like, write_raster
from erosion_watch.scene import SceneCollection

logger = logging.getLogger(__name__)

OUTPUT_LAYERS = ("K", "LS", "R", "S", "A", "bare_soil_frequency", "bare_soil_mask", "bare_soil_composite",
                 "median_composite", "soil_classes")

# Layers sampled at the sites of a point file
POINT_LAYERS = ("K", "LS", "S", "A", "bare_soil_frequency")

SOIL_CLASS_RESAMPLING = {name: Resampling.nearest for name in CATEGORICAL_SOIL_BANDS}


@dataclass
class RusleInputs:
    """
    Co-registered inputs of one site.

    ``contrib_area`` holds either ``contrib_area`` (m2) or MERIT Hydro
    ``upa`` (km2). ``soil`` holds the prepared covariates of
    :data:`~erosion_watch.indicators.soil_erodibility.SOIL_BANDS`.
    """

    dem: Raster
    contrib_area: Raster
    soil: Raster
    rainfall_erosivity: Raster
    scenes: SceneCollection
    water_mask: Optional[Raster] = None
    builtup_mask: Optional[Raster] = None
    aoi: Any = None
    aoi_area_ha: Optional[float] = None


@contextmanager
def stage(name: str):
    """Re-raise unexpected failures as ``RuntimeError("[stage:<name>] ...")``.

    Package errors carry their own meaning and propagate unchanged.
    """
    try:
        yield
    except ErosionWatchError:
        raise
    except Exception as e:
        raise RuntimeError(f"[stage:{name}] {e}") from e


def _flag(raster: Optional[Raster]) -> Optional[np.ndarray]:
    if raster is None:
        return None
    band = next(iter(raster))
    return (band.data > 0) & band.validity()


def _terrain_tile(tile: Raster) -> Raster:
    terrain = slope_aspect(tile.select(["elevation"]))
    terrain = terrain.add_bands(tile["contrib_area"])
    return terrain.add_bands(factor_ls(terrain))


def run_rusle_pipeline(inputs: RusleInputs, settings: Optional[PipelineSettings] = None) -> Dict[str, Any]:
    s = settings or PipelineSettings()
    scale = s.sr_band_scale
    rasters = [inputs.dem, inputs.contrib_area, inputs.soil, inputs.rainfall_erosivity]
    rasters += [sc.raster for sc in inputs.scenes]
    grid = check_same_grid(*rasters)
    water = _flag(inputs.water_mask)
    builtup = _flag(inputs.builtup_mask)

    # 1) Terrain and LS, tiled with a halo for the 3x3 slope window
    with stage("terrain"):
        area = inputs.contrib_area
        if "contrib_area" in area:
            contrib = area["contrib_area"]
        else:
            upa = next(iter(area))
            contrib = Band("contrib_area", contributing_area_from_upa(upa.data.astype("float64"),
                                                                      s.terrain.upa_redistribution), upa.valid)
        dem = next(iter(inputs.dem)).renamed("elevation")
        stack = Raster(grid, [dem, contrib])
        t = s.tiling
        terrain = map_tiles(_terrain_tile, stack, tile_size=t.tile_size, halo=max(t.halo, 1),
                            max_workers=t.max_workers, timeout=t.timeout_s)
        ls = terrain.select(["LS"])

    # 2) Soil erodibility
    with stage("soil_erodibility"):
        k = factor_k(inputs.soil)
        soil_classes = classification_grids(inputs.soil)

    # 3) Imagery: masking, bare soil, composites
    with stage("imagery"):
        c = s.composites
        scenes = inputs.scenes.filter_date(c.start_date, c.end_date)
        if len(scenes) == 0:
            raise DomainError(f"No scene between {c.start_date} and {c.end_date}")
        masked = mask_collection(scenes, s.cloud_mask, scale, water, tiling=s.tiling)
        intervals = extract_time_ranges(c.start_date, c.end_date, c.interval_days)
        median = reduce_stack(list(masked), c.bands, "median", grid=grid)

        bare = bare_observations(masked, scale)
        mask = analysis_mask(terrain["slope_deg"].data, water, builtup, s.terrain.max_slope_deg)
        mask &= terrain["slope_deg"].validity()
        bsf = bare_soil_frequency(masked, bare, mask)
        bsf_mask = bare_soil_mask(bsf, s.sustainability.permanently_bare_frequency)
        bare_composite = bare_soil_composite(bare, c.bands, grid=grid)

    # 4) FCover series and harmonic smoothing
    with stage("fcover"):
        fcover = fcover_collection(masked, scale)
        h = s.harmonics
        fcover_series = harmonized_series(fcover, [h.band], intervals, c.reducer, band_name=h.band, grid=grid)
        fcover_smooth = harmonic_regression(fcover_series, h.band, h.harmonics, h.valid_range)
        # FCover of the bare observations only, for the area drill-down
        bare_fcover = harmonized_series(bare_observations(fcover, scale), [h.band], intervals, c.reducer,
                                        band_name=h.band, grid=grid)

    # 5) Sustainability and hazard
    with stage("hazard"):
        sf = factor_s(median, fcover_smooth, bsf, s.sustainability, scale, tiling=s.tiling)
        r = Raster(grid, [next(iter(inputs.rainfall_erosivity)).renamed("R")])
        a = erosion_hazard(r, k, ls, sf)

    # 6) Statistics over the area of interest
    with stage("statistics"):
        inside = aoi_mask(inputs.aoi, grid) if inputs.aoi is not None else None
        stats: Dict[str, Any] = {"hazard": hazard_statistics(a, inside),
                                 "histograms": region_histograms(bsf, a, inside)}
        if inputs.aoi_area_ha is not None:
            stats["area_breakdown"] = area_breakdown(bsf, inputs.aoi_area_ha, inside,
                                                     s.sustainability.permanently_bare_frequency)
        time_series = None
        if inputs.aoi is not None:
            layers = {"slope_deg": terrain, "bare_soil_frequency": bsf, "A": a}
            stats["aoi_summary"] = summarize_aoi(inputs.aoi, layers)
            time_series = aoi_time_series(fcover_smooth, bare_fcover, inputs.aoi, c.start_date, band=h.band)

    logger.info("RUSLE pipeline done: mean A %s t/ha/yr over %s scenes", stats["hazard"]["mean"], len(scenes))
    return {
        "K": k,
        "LS": ls,
        "R": r,
        "S": sf,
        "A": a,
        "terrain": terrain.select(["slope_deg", "aspect"]),
        "bare_soil_frequency": bsf,
        "bare_soil_mask": bsf_mask,
        "bare_soil_composite": bare_composite,
        "median_composite": median,
        "soil_classes": soil_classes,
        "fcover_series": fcover_series,
        "fcover_smooth": fcover_smooth,
        "bare_fcover_series": bare_fcover,
        "aoi_time_series": time_series,
        "statistics": stats,
    }


def _read_layer(site_cfg: Mapping[str, str], key: str, grid, resampling=Resampling.bilinear,
                required: bool = True, band_resampling: Optional[Mapping[str, Resampling]] = None) -> Optional[Raster]:
    path = site_cfg.get(key)
    if not path:
        if required:
            raise ValueError(f"Site configuration must define '{key}'")
        return None
    with stage(f"read_{key}"):
        raster = read_raster(path)
        if raster.grid != grid:
            raster = reproject_like(raster, grid, resampling, band_resampling)
    return raster


def run_site_pipeline(site_cfg: Mapping[str, Any], settings_path: Optional[str] = "config/rusle.yaml",
                      out_dir: Optional[str] = None) -> Dict[str, Any]:
    """
    Run the pipeline for layers given as file paths.

    Keys: ``scenes`` (CSV manifest), ``dem``, ``contrib_area``,
    ``rainfall_erosivity``, ``soil`` (prepared covariates) or
    ``soilgrids``/``isda``/``hydraulics`` (source products), and optionally
    ``water_mask``, ``builtup_mask``, ``aoi`` (vector file) and ``points``
    (sites to sample, see :func:`~erosion_watch.io_utils.load_points`).
    Layers are resampled onto the imagery grid. With ``out_dir`` the output layers
    are written there as GeoTIFFs.
    """
    settings = load_settings(settings_path)
    setup_logger(level=settings.log_level)

    if not site_cfg.get("scenes"):
        raise ValueError("Site configuration must define 'scenes'")
    with stage("read_scenes"):
        scenes = load_scene_collection(site_cfg["scenes"])
    if len(scenes) == 0:
        raise DomainError(f"{site_cfg['scenes']} lists no scene")
    grid = scenes.grid

    if site_cfg.get("soil"):
        soil = _read_layer(site_cfg, "soil", grid, band_resampling=SOIL_CLASS_RESAMPLING)
    else:
        with stage("soil_covariates"):
            products = {key: _read_layer(site_cfg, key, grid, required=False)
                        for key in ("soilgrids", "isda")}
            products["hydraulics"] = _read_layer(site_cfg, "hydraulics", grid, Resampling.nearest, required=False)
            if products["hydraulics"] is None:
                raise ValueError("Site configuration must define 'soil' or 'hydraulics' with 'soilgrids'/'isda'")
            soil = assemble_covariates(settings.region, products["soilgrids"], products["isda"],
                                       products["hydraulics"])

    aoi, aoi_area_ha = None, None
    if site_cfg.get("aoi"):
        with stage("read_aoi"):
            aoi, aoi_area_ha = load_aoi(site_cfg["aoi"], crs=grid.crs)

    inputs = RusleInputs(
        dem=_read_layer(site_cfg, "dem", grid),
        contrib_area=_read_layer(site_cfg, "contrib_area", grid),
        soil=soil,
        rainfall_erosivity=_read_layer(site_cfg, "rainfall_erosivity", grid),
        scenes=scenes,
        water_mask=_read_layer(site_cfg, "water_mask", grid, Resampling.nearest, required=False),
        builtup_mask=_read_layer(site_cfg, "builtup_mask", grid, Resampling.nearest, required=False),
        aoi=aoi,
        aoi_area_ha=aoi_area_ha,
    )
    results = run_rusle_pipeline(inputs, settings)

    if site_cfg.get("points"):
        with stage("sample_points"):
            points = load_points(site_cfg["points"], crs=grid.crs)
            results["points"] = sample_layers_at_points(points, {n: results[n] for n in POINT_LAYERS})

    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
        with stage("write_outputs"):
            for name in OUTPUT_LAYERS:
                write_raster(results[name], os.path.join(out_dir, f"{name}.tif"))
    return results
