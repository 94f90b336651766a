"""YAML run configuration.

Every section maps onto a dataclass whose defaults come from
:mod:`erosion_watch.constants`, so an empty file is a valid configuration.
Keys that no dataclass declares are rejected instead of being ignored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from erosion_watch import constants as C

logger = logging.getLogger(__name__)


@dataclass
class CloudMaskSettings:
    cloud_probability_threshold: float = C.CLOUD_PROBABILITY_THRESHOLD
    cloudy_pixel_percentage_max: float = C.CLOUDY_PIXEL_PERCENTAGE_MAX
    nir_dark_threshold: float = C.NIR_DARK_THRESHOLD
    projection_distance_px: int = C.CLOUD_PROJECTION_DISTANCE_PX
    buffer_m: float = C.CLOUD_BUFFER_M
    mask_resolution_m: float = C.MASK_RESOLUTION_M
    erosion_radius_px: int = C.OPENING_EROSION_RADIUS_PX


@dataclass
class CompositeSettings:
    start_date: str = "2019-01-01"
    end_date: str = "2020-01-01"
    interval_days: int = C.DEFAULT_INTERVAL_DAYS
    reducer: str = "median"
    bands: Tuple[str, ...] = ("B2", "B3", "B4", "B8", "B11", "B12")


@dataclass
class HarmonicSettings:
    harmonics: int = C.DEFAULT_HARMONICS
    band: str = "fcover"
    valid_range: Tuple[float, float] = C.FCOVER_VALID_RANGE


@dataclass
class TerrainSettings:
    upa_redistribution: float = 9.0
    max_slope_deg: float = C.MAX_ANALYSIS_SLOPE_DEG


@dataclass
class SustainabilitySettings:
    landuse_scale: float = C.LANDUSE_SCALE
    landuse_range: Tuple[float, float] = C.LANDUSE_RANGE
    max_sustainability: float = C.MAX_SUSTAINABILITY
    permanently_bare_frequency: float = C.PERMANENTLY_BARE_FREQUENCY


@dataclass
class TilingSettings:
    tile_size: int = 512
    halo: int = 8
    max_workers: int = 4
    timeout_s: Optional[float] = None


@dataclass
class PipelineSettings:
    sr_band_scale: float = C.SR_BAND_SCALE
    region: str = ""
    log_level: str = "INFO"
    cloud_mask: CloudMaskSettings = field(default_factory=CloudMaskSettings)
    composites: CompositeSettings = field(default_factory=CompositeSettings)
    harmonics: HarmonicSettings = field(default_factory=HarmonicSettings)
    terrain: TerrainSettings = field(default_factory=TerrainSettings)
    sustainability: SustainabilitySettings = field(default_factory=SustainabilitySettings)
    tiling: TilingSettings = field(default_factory=TilingSettings)


_SECTIONS = {
    "cloud_mask": CloudMaskSettings,
    "composites": CompositeSettings,
    "harmonics": HarmonicSettings,
    "terrain": TerrainSettings,
    "sustainability": SustainabilitySettings,
    "tiling": TilingSettings,
}


def _build(cls, values: Mapping[str, Any], where: str):
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValueError(f"Unknown keys in '{where}': {unknown}")
    kwargs = {}
    for k, v in values.items():
        # YAML has no tuples; keep the declared tuple shape
        if isinstance(v, list):
            v = tuple(v)
        kwargs[k] = v
    return cls(**kwargs)


def settings_from_dict(cfg: Optional[Mapping[str, Any]]) -> PipelineSettings:
    cfg = dict(cfg or {})
    sections = {}
    for name, cls in _SECTIONS.items():
        section = cfg.pop(name, None) or {}
        if not isinstance(section, Mapping):
            raise ValueError(f"Section '{name}' must be a mapping, got {type(section).__name__}")
        sections[name] = _build(cls, section, name)
    top = _build(PipelineSettings, cfg, "top level")
    for name, value in sections.items():
        setattr(top, name, value)
    return top


def load_settings(path: Optional[str] = None) -> PipelineSettings:
    """Read settings from a YAML file; ``None`` gives the defaults."""
    if path is None:
        return PipelineSettings()
    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    logger.debug("Loaded settings from %s", path)
    return settings_from_dict(cfg)


def load_site(path: str) -> Dict[str, Any]:
    """Site description: layer paths (``layers``) plus optional ``aoi``, ``points`` and ``settings``."""
    with open(path, "r", encoding="utf-8") as f:
        site = yaml.safe_load(f) or {}
    if "layers" not in site:
        raise ValueError(f"{path}: site file needs a 'layers' mapping")
    return site
