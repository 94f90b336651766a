"""Empirical constants of the published models used by the pipeline.

Thresholds, classification breakpoints and network weights are kept in one
place and versioned together. Changing any value here changes results, so
bump ``CONSTANTS_VERSION`` with it.

References
----------
* K factor: Renard et al. (1997), RUSLE handbook; packing density and
  texture classes from Jones, Spoor & Thomasson (2003); structure proxy
  from Panagos et al. (2014); organic soils from Huang et al. (2009);
  permeability classes from USDA (1983) and HiHydroSoil v2.0.
* LS factor: Desmet & Govers (1996); steepness from Renard et al. (1997).
* Cloud masking: s2cloudless defaults.
* GEOS3: Dematte et al. (2020).
* FCover: SNAP biophysical processor network (Sentinel-2, 11 inputs).
* S factor: Karydas & Panagos (2018).
"""

from __future__ import annotations

import math
from typing import Dict, Tuple

CONSTANTS_VERSION = "1.0.0"

NODATA = -9999.0

# Sentinel-2 surface reflectance is stored as reflectance * 10000.
SR_BAND_SCALE = 10000.0

# --- K factor ---------------------------------------------------------------

PACKING_DENSITY_CLAY_COEF = 0.009
PACKING_DENSITY_BREAKS = (1.40, 1.75)

SAND_MAX_PCT = 20.0
SILT_MAX_PCT = 70.0
OM_MAX_PCT = 4.0
SOC_TO_SOM = 1.72

# Organic override: OM threshold interpolated between (clay, OM) pairs.
ORGANIC_CLAY_POINTS = (0.0, 50.0)
ORGANIC_OM_POINTS = (20.0, 30.0)

TEXTURE_COARSE = 1
TEXTURE_MEDIUM = 2
TEXTURE_MEDIUM_FINE = 3
TEXTURE_FINE = 4
TEXTURE_VERY_FINE = 5
TEXTURE_ORGANIC = 9
TEXTURE_CODES = (
    TEXTURE_COARSE,
    TEXTURE_MEDIUM,
    TEXTURE_MEDIUM_FINE,
    TEXTURE_FINE,
    TEXTURE_VERY_FINE,
    TEXTURE_ORGANIC,
)

UNCLASSIFIED = 0

# (texture class) -> structure class for packing density <1.40, [1.40, 1.75], >1.75.
# Texture 9 has no value for dense soils; it falls back to UNCLASSIFIED.
STRUCTURE_TABLE: Dict[int, Tuple[int, int, int]] = {
    TEXTURE_COARSE: (4, 3, 2),
    TEXTURE_MEDIUM: (3, 2, 2),
    TEXTURE_MEDIUM_FINE: (2, 2, 1),
    TEXTURE_FINE: (2, 1, 1),
    TEXTURE_VERY_FINE: (2, 1, 1),
    TEXTURE_ORGANIC: (4, 3, UNCLASSIFIED),
}

# (permeability class, hydrologic groups, Ksat lower bound exclusive, Ksat upper bound inclusive)
PERMEABILITY_RULES: Tuple[Tuple[int, Tuple[int, ...], float, float], ...] = (
    (1, (1,), 146.304, math.inf),
    (2, (1, 14), 48.768, 146.304),
    (3, (2, 24), 12.192, 48.768),
    (4, (3,), 4.8768, 12.192),
    (5, (34,), 2.4384, 4.8768),
    (6, (4,), -math.inf, 2.4384),
)

K_M_COEF = 2.1e-4
K_M_EXPONENT = 1.14
K_OM_REF = 12.0
K_STRUCTURE_COEF = 3.25
K_STRUCTURE_REF = 2.0
K_PERMEABILITY_COEF = 2.5
K_PERMEABILITY_REF = 3.0
K_US_TO_SI = 0.1317

# Regions served by the high-resolution iSDAsoil covariates (GAUL level 0 names).
HIGH_RES_SOIL_REGIONS = frozenset([
    'Abyei', 'Algeria', 'Angola', 'Benin', 'Botswana', 'Burkina Faso', 'Burundi', 'Cameroon',
    'Cape Verde', 'Central African Republic', 'Chad', 'Comoros', 'Congo', "Côte d'Ivoire",
    'Democratic Republic of the Congo', 'Djibouti', 'Egypt', 'Eritrea', 'Ethiopia',
    'Equatorial Guinea', 'Gabon', 'Gambia', 'Ghana', 'Guinea', 'Guinea-Bissau', 'Kenya', 'Lesotho',
    'Liberia', 'Libya', 'Madagascar', 'Malawi', 'Mali', 'Mauritania', 'Mauritius', 'Morocco',
    'Mozambique', 'Namibia', 'Niger', 'Nigeria', 'Rwanda', 'Sao Tome and Principe', 'Senegal',
    'Seychelles', 'Sierra Leone', 'Somalia', 'South Africa', 'South Sudan', 'Sudan', 'Swaziland',
    'Togo', 'Tunisia', 'Uganda', 'United Republic of Tanzania', 'Western Sahara', 'Zambia',
    'Zimbabwe',
])

# --- LS factor --------------------------------------------------------------

MAX_CONTRIBUTING_AREA_M2 = 4000.0
UPA_KM2_TO_M2 = 1.0e6
BETA_DENOM_COEF = 0.0896
BETA_SIN_EXPONENT = 0.8
BETA_SIN_OFFSET = 0.56
UNIT_PLOT_LENGTH_M = 22.13
MILD_SLOPE_TAN = 0.09
MILD_S_COEF, MILD_S_OFFSET = 10.8, 0.03
STEEP_S_COEF, STEEP_S_OFFSET = 16.8, -0.5

# Aspect bins (lower exclusive, upper inclusive; degrees clockwise from north) where one
# step to the downslope neighbour is a cardinal move. The first bin wraps through north.
CARDINAL_ASPECT_BINS = ((337.5, 22.5), (67.5, 112.5), (157.5, 202.5), (247.5, 292.5))

MAX_ANALYSIS_SLOPE_DEG = 26.6

# --- Cloud / shadow mask ----------------------------------------------------

CLOUD_PROBABILITY_THRESHOLD = 40.0
CLOUDY_PIXEL_PERCENTAGE_MAX = 60.0
NIR_DARK_THRESHOLD = 0.15
CLOUD_PROJECTION_DISTANCE_PX = 10
CLOUD_BUFFER_M = 50.0
MASK_RESOLUTION_M = 60.0
OPENING_EROSION_RADIUS_PX = 2

# --- GEOS3 bare soil --------------------------------------------------------

GEOS3_NDVI_RANGE = (-0.25, 0.25)
GEOS3_NBR2_RANGE = (-0.3, 0.1)
GEOS3_VNSIR_MAX = 0.9
PERMANENTLY_BARE_FREQUENCY = 0.95

# --- FCover network ---------------------------------------------------------

FCOVER_BANDS = ('B3', 'B4', 'B5', 'B6', 'B7', 'B8A', 'B11', 'B12')

# band -> (min, max) used to normalise into [-1, 1]
FCOVER_BAND_NORMALISATION: Dict[str, Tuple[float, float]] = {
    'B3': (0.0, 0.253061520472),
    'B4': (0.0, 0.290393577911),
    'B5': (0.0, 0.305398915249),
    'B6': (0.00663797254225, 0.608900395798),
    'B7': (0.0139727270189, 0.753827384323),
    'B8A': (0.0266901380821, 0.782011770669),
    'B11': (0.0163880741923, 0.493761397883),
    'B12': (0.0, 0.49302598446),
}
FCOVER_VIEW_ZENITH_NORMALISATION = (0.918595400582, 0.999999999991)
FCOVER_SUN_ZENITH_NORMALISATION = (0.342022871159, 0.936206429175)
FCOVER_OUTPUT_DENORMALISATION = (0.000181230723879, 0.999638214715)

DEFAULT_INCIDENCE_AZIMUTH_DEG = 102.5
DEFAULT_INCIDENCE_ZENITH_DEG = 10.4

# Rows are hidden neurons; columns follow FCOVER_BANDS then
# (cos view zenith, cos sun zenith, cos relative azimuth).
FCOVER_HIDDEN_WEIGHTS = (
    (-0.156854264841, 0.124234528462, 0.235625516229, -1.8323910258, -0.217188969888,
     5.06933958064, -0.887578008155, -1.0808468167, -0.0323167041864, -0.224476137359,
     -0.195523962947),
    (-0.220824927842, 1.28595395487, 0.703139486363, -1.34481216665, -1.96881267559,
     -1.45444681639, 1.02737560043, -0.12494641532, 0.0802762437265, -0.198705918577,
     0.108527100527),
    (-0.409688743281, 1.08858884766, 0.36284522554, 0.0369390509705, -0.348012590003,
     -2.0035261881, 0.0410357601757, 1.22373853174, -0.0124082778287, -0.282223364524,
     0.0994993117557),
    (-0.188970957866, -0.0358621840833, 0.00551248528107, 1.35391570802, -0.739689896116,
     -2.21719530107, 0.313216124198, 1.5020168915, 1.21530490195, -0.421938358618,
     1.48852484547),
    (2.49293993709, -4.40511331388, -1.91062012624, -0.703174115575, -0.215104721138,
     -0.972151494818, -0.930752241278, 1.2143441876, -0.521665460192, -0.445755955598,
     0.344111873777),
)
FCOVER_HIDDEN_BIASES = (-1.45261652206, -1.70417477557, 1.02168965849, -0.498002810205, -3.88922154789)
FCOVER_OUTPUT_WEIGHTS = (0.23080586765, -0.333655484884, -0.499418292325, 0.0472484396749, -0.0798516540739)
FCOVER_OUTPUT_BIAS = -0.0967998147811

# --- Time series ------------------------------------------------------------

AVERAGE_MONTH_DAYS = 30.4375
DAYS_PER_YEAR = 365.25
DEFAULT_INTERVAL_DAYS = 30
DEFAULT_HARMONICS = 4
FCOVER_VALID_RANGE = (0.0, SR_BAND_SCALE)
GEOMEDIAN_MAX_ITER = 50
GEOMEDIAN_EPS = 1e-4

# --- S factor ---------------------------------------------------------------

LANDUSE_SCALE = 10.0
LANDUSE_RANGE = (5.0, 8.0)
MAX_SUSTAINABILITY = 0.9

SOBEL_KERNEL = ((-1.0, 0.0, 1.0), (-2.0, 0.0, 2.0), (-1.0, 0.0, 1.0))

# --- Region summaries -------------------------------------------------------

HAZARD_DISPLAY_PERCENTILE = 98
HAZARD_DISPLAY_MAX = 14
BARE_OBSERVATION_FALLBACK = 11000.0
