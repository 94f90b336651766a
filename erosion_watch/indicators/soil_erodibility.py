"""Soil erodibility (K-factor).

Implements the RUSLE nomograph equation (Renard et al., 1997) on gridded
soil covariates:

    K = [2.1e-4 * M^1.14 * (12 - OM) + 3.25 * (s - 2) + 2.5 * (p - 3)] / 100 * 0.1317

where ``M`` is the textural factor, ``s`` a structure class derived from
texture and packing density, and ``p`` a permeability class derived from
the hydrologic soil group and the coarse-fragment adjusted saturated
hydraulic conductivity.

Classification helpers work on plain NumPy arrays; :func:`factor_k` wraps
them for :class:`~erosion_watch.raster.Raster` inputs. Cells of the lookup
tables that are not defined resolve to ``UNCLASSIFIED`` (0), which still
enters the K equation. That is a known approximation of the published
tables, not an error.

Two covariate products are supported: SoilGrids 2.0 (global, 250 m) and
iSDAsoil (Africa, 30 m). :func:`select_covariate_source` picks one from a
region name.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, fields
from typing import Sequence

import numpy as np

from erosion_watch import constants as C
from erosion_watch.errors import DomainError
from erosion_watch.raster import Band, Raster

logger = logging.getLogger(__name__)

SOIL_BANDS = ("clay", "sand", "silt", "OM", "bulk_density", "cfvo", "ksat", "hydrologic_group")

# Class codes; resampled with nearest neighbour, never blended
CATEGORICAL_SOIL_BANDS = ("hydrologic_group",)

STRATA = ("0-5cm", "5-15cm", "15-30cm")


class CovariateSource(enum.Enum):
    SOILGRIDS = "soilgrids"  # global, 250 m
    ISDA = "isda"  # Africa, 30 m


def select_covariate_source(region: str) -> CovariateSource:
    """High-resolution covariates for supported regions, global ones otherwise."""
    if region in C.HIGH_RES_SOIL_REGIONS:
        return CovariateSource.ISDA
    return CovariateSource.SOILGRIDS


@dataclass
class SoilInputs:
    """Co-registered soil covariate arrays.

    Attributes
    ----------
    clay, sand, silt, om : np.ndarray
        Content in percent.
    bulk_density : np.ndarray
        Bulk density in t/m3.
    cfvo : np.ndarray
        Coarse fragment volume fraction in [0, 1].
    ksat : np.ndarray
        Saturated hydraulic conductivity.
    hydrologic_group : np.ndarray
        HiHydroSoil hydrologic soil group codes (1, 14, 2, 24, 3, 34, 4).
    """

    clay: np.ndarray
    sand: np.ndarray
    silt: np.ndarray
    om: np.ndarray
    bulk_density: np.ndarray
    cfvo: np.ndarray
    ksat: np.ndarray
    hydrologic_group: np.ndarray

    @classmethod
    def from_raster(cls, covariates: Raster) -> "SoilInputs":
        covariates.require(SOIL_BANDS)
        arr = {name: covariates[name].data.astype("float64") for name in SOIL_BANDS}
        return cls(
            clay=arr["clay"],
            sand=arr["sand"],
            silt=arr["silt"],
            om=arr["OM"],
            bulk_density=arr["bulk_density"],
            cfvo=arr["cfvo"],
            ksat=arr["ksat"],
            hydrologic_group=arr["hydrologic_group"],
        )


# --- classification ---------------------------------------------------------

def packing_density(bulk_density: np.ndarray, clay: np.ndarray) -> np.ndarray:
    return bulk_density + C.PACKING_DENSITY_CLAY_COEF * clay


def organic_om_threshold(clay: np.ndarray) -> np.ndarray:
    """OM content above which a soil is organic, linear in clay and clamped."""
    return np.interp(clay, C.ORGANIC_CLAY_POINTS, C.ORGANIC_OM_POINTS)


def texture_class(clay: np.ndarray, sand: np.ndarray, om: np.ndarray) -> np.ndarray:
    """Texture class codes 1-5, or 9 for organic soils.

    Mineral classes are tested from finest to coarsest so that exactly one
    code applies; the organic test overrides any mineral class.
    """
    clay = np.asarray(clay, dtype="float64")
    sand = np.asarray(sand, dtype="float64")
    conditions = [
        clay > 60,
        (clay >= 35) & (clay <= 60),
        (clay < 18) & (sand > 65),
        (clay < 35) & (sand > 15),
        (clay < 35) & (sand <= 15),
    ]
    codes = [C.TEXTURE_VERY_FINE, C.TEXTURE_FINE, C.TEXTURE_COARSE, C.TEXTURE_MEDIUM, C.TEXTURE_MEDIUM_FINE]
    out = np.select(conditions, codes, default=C.UNCLASSIFIED).astype("int16")
    organic = np.asarray(om, dtype="float64") >= organic_om_threshold(clay)
    out[organic] = C.TEXTURE_ORGANIC
    return out


def packing_density_band(pack_density: np.ndarray) -> np.ndarray:
    """0 for < 1.40, 1 for [1.40, 1.75], 2 for > 1.75."""
    lo, hi = C.PACKING_DENSITY_BREAKS
    return np.where(pack_density < lo, 0, np.where(pack_density <= hi, 1, 2)).astype("int8")


def structure_class(texture: np.ndarray, pack_density: np.ndarray) -> np.ndarray:
    """Structure class from (texture, packing density band); undefined cells give 0."""
    pd_band = packing_density_band(pack_density)
    out = np.full(texture.shape, C.UNCLASSIFIED, dtype="int16")
    for tex, per_band in C.STRUCTURE_TABLE.items():
        for band_idx, code in enumerate(per_band):
            out[(texture == tex) & (pd_band == band_idx)] = code
    return out


def adjusted_ksat(ksat: np.ndarray, cfvo: np.ndarray) -> np.ndarray:
    """Ksat reduced by the rock fragment fraction (Brakensiek et al., 1986)."""
    return ksat * (1.0 - cfvo)


def permeability_class(hydrologic_group: np.ndarray, ksat_adj: np.ndarray) -> np.ndarray:
    """Permeability class 1 (fast) to 6 (very slow); unmatched pairs give 0."""
    group = np.rint(hydrologic_group).astype("int64")
    out = np.full(group.shape, C.UNCLASSIFIED, dtype="int16")
    for code, groups, lower, upper in C.PERMEABILITY_RULES:
        hit = np.isin(group, groups) & (ksat_adj > lower) & (ksat_adj <= upper)
        out[hit] = code
    return out


def textural_factor(clay: np.ndarray, sand: np.ndarray, silt: np.ndarray) -> np.ndarray:
    return (sand + silt) * (100.0 - clay)


def k_equation(m: np.ndarray, om: np.ndarray, structure: np.ndarray, permeability: np.ndarray) -> np.ndarray:
    k = (C.K_M_COEF * np.power(m, C.K_M_EXPONENT) * (C.K_OM_REF - om)
         + C.K_STRUCTURE_COEF * (structure - C.K_STRUCTURE_REF)
         + C.K_PERMEABILITY_COEF * (permeability - C.K_PERMEABILITY_REF))
    return k / 100.0 * C.K_US_TO_SI


def classify(inputs: SoilInputs):
    """Return (texture, structure, permeability) class arrays."""
    texture = texture_class(inputs.clay, inputs.sand, inputs.om)
    structure = structure_class(texture, packing_density(inputs.bulk_density, inputs.clay))
    permeability = permeability_class(inputs.hydrologic_group, adjusted_ksat(inputs.ksat, inputs.cfvo))
    return texture, structure, permeability


def k_factor(inputs: SoilInputs) -> np.ndarray:
    """Soil erodibility for each pixel."""
    if np.any(textural_factor(inputs.clay, inputs.sand, inputs.silt) < 0):
        raise DomainError("Negative textural factor: check clay/sand/silt percentages")
    _, structure, permeability = classify(inputs)
    m = textural_factor(inputs.clay, inputs.sand, inputs.silt)
    return k_equation(m, inputs.om, structure, permeability)


def factor_k(covariates: Raster) -> Raster:
    """K-factor raster (band ``K``) from a covariate raster with :data:`SOIL_BANDS`."""
    inputs = SoilInputs.from_raster(covariates)
    valid = covariates.validity(SOIL_BANDS)
    k = np.zeros(covariates.shape, dtype="float32")
    if np.any(valid):
        sub = SoilInputs(**{f.name: getattr(inputs, f.name)[valid] for f in fields(SoilInputs)})
        k[valid] = k_factor(sub).astype("float32")
    logger.debug("K factor computed on %s valid pixels", int(valid.sum()))
    return Raster(covariates.grid, [Band("K", k, valid)])


def classification_grids(covariates: Raster) -> Raster:
    """Texture, structure and permeability class grids as integer bands."""
    inputs = SoilInputs.from_raster(covariates)
    valid = covariates.validity(SOIL_BANDS)
    texture, structure, permeability = classify(inputs)
    return Raster(covariates.grid, [
        Band("texture_class", texture, valid),
        Band("structure_class", structure, valid),
        Band("permeability_class", permeability, valid),
    ])


# --- covariate preparation --------------------------------------------------

def _strata_mean(raster: Raster, names: Sequence[str]) -> Band:
    raster.require(names)
    data = sum(raster[n].data.astype("float64") for n in names) / len(names)
    return Band(names[0], data, raster.validity(names))


def _soilgrids_mean(raster: Raster, prop: str) -> Band:
    return _strata_mean(raster, [f"{prop}_{s}_mean" for s in STRATA])


def soilgrids_covariates(raster: Raster) -> Raster:
    """Texture, OM and bulk density from SoilGrids 2.0 mean layers.

    Expects bands named like ``clay_0-5cm_mean``; the three top strata are
    averaged. Sand and silt are capped (20% and 70%) to keep only the very
    fine fraction, OM at 4% to avoid underestimating erodibility in
    OM-rich soils.
    """
    clay = _soilgrids_mean(raster, "clay")
    sand = _soilgrids_mean(raster, "sand")
    silt = _soilgrids_mean(raster, "silt")
    soc = _soilgrids_mean(raster, "soc")
    bdod = _soilgrids_mean(raster, "bdod")
    bands = [
        Band("clay", clay.data / 10.0, clay.valid),  # g/kg -> %
        Band("sand", np.clip(sand.data / 10.0, 0.0, C.SAND_MAX_PCT), sand.valid),
        Band("silt", np.clip(silt.data / 10.0, 0.0, C.SILT_MAX_PCT), silt.valid),
        Band("OM", np.clip(soc.data / 100.0 * C.SOC_TO_SOM, 0.0, C.OM_MAX_PCT), soc.valid),
        Band("bulk_density", bdod.data / 100.0, bdod.valid),  # cg/cm3 -> t/m3
    ]
    return Raster(raster.grid, bands)


def isda_covariates(raster: Raster) -> Raster:
    """Texture, OM and bulk density from iSDAsoil layers.

    Expects bands ``clay_content``, ``sand_content``, ``silt_content``,
    ``carbon_organic`` and ``bulk_density``. Missing pixels are filled with 0
    and kept valid, as in the published product.
    """
    names = ["clay_content", "sand_content", "silt_content", "carbon_organic", "bulk_density"]
    raster.require(names)
    arr = {n: np.where(raster[n].validity(), raster[n].data.astype("float64"), 0.0) for n in names}
    bands = [
        Band("clay", arr["clay_content"]),
        Band("sand", np.clip(arr["sand_content"], 0.0, C.SAND_MAX_PCT)),
        Band("silt", np.clip(arr["silt_content"], 0.0, C.SILT_MAX_PCT)),
        Band("OM", np.clip(arr["carbon_organic"] / 10.0 * C.SOC_TO_SOM, 0.0, C.OM_MAX_PCT)),
        Band("bulk_density", arr["bulk_density"]),
    ]
    return Raster(raster.grid, bands)


def hihydrosoil_ksat(raster: Raster) -> Band:
    """Mean top-soil Ksat from HiHydroSoil v2.0 bands ``Ksat_<stratum>`` (scaled by 1e4)."""
    b = _strata_mean(raster, [f"Ksat_{s}" for s in STRATA])
    return Band("ksat", b.data / 1e4, b.valid)


def soilgrids_cfvo(raster: Raster) -> Band:
    """Coarse fragment fraction in [0, 1] from SoilGrids ``cfvo`` layers."""
    b = _soilgrids_mean(raster, "cfvo")
    return Band("cfvo", b.data / 10000.0, b.valid)


def assemble_covariates(region: str, soilgrids: Raster, isda: Raster, hydraulics: Raster) -> Raster:
    """Full covariate raster for :func:`factor_k`.

    ``hydraulics`` carries ``hydrologic_group``, the HiHydroSoil Ksat strata
    and the SoilGrids cfvo strata. All inputs must share one grid.
    """
    source = select_covariate_source(region)
    logger.info("Soil covariates for %s: %s", region, source.value)
    if source is CovariateSource.ISDA:
        texture = isda_covariates(isda)
    else:
        texture = soilgrids_covariates(soilgrids)
    hydraulics.require(["hydrologic_group"])
    return texture.add_bands(
        soilgrids_cfvo(hydraulics),
        hihydrosoil_ksat(hydraulics),
        hydraulics["hydrologic_group"],
    )
