"""In-memory georeferenced rasters.

A :class:`Raster` is an ordered set of named :class:`Band` arrays sharing one
:class:`GridSpec`. Each band may carry a boolean validity mask (``True`` means
valid); a band without a mask is valid everywhere. Rasters are treated as
immutable: every method returns a new raster and never writes into the
arrays it was built from.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from rasterio.crs import CRS
from rasterio.transform import Affine, array_bounds

from erosion_watch.errors import DomainError


def m_per_deg(lat: float) -> Tuple[float, float]:
    """Metres per degree of latitude and longitude at ``lat``."""
    mlat = 111320.0
    mlon = 111320.0 * np.cos(np.deg2rad(lat))
    return mlat, mlon


@dataclass(frozen=True)
class GridSpec:
    """Grid geometry shared by all bands of a raster."""

    transform: Affine
    shape: Tuple[int, int]
    crs: Optional[CRS] = None

    @property
    def height(self) -> int:
        return int(self.shape[0])

    @property
    def width(self) -> int:
        return int(self.shape[1])

    @property
    def res(self) -> Tuple[float, float]:
        return abs(self.transform.a), abs(self.transform.e)

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        """(west, south, east, north) in grid CRS units."""
        return array_bounds(self.height, self.width, self.transform)

    @property
    def is_geographic(self) -> bool:
        return bool(self.crs is not None and self.crs.is_geographic)

    def cell_size_m(self) -> Tuple[float, float]:
        """Pixel size (dx, dy) in metres.

        Geographic grids are converted at the latitude of the grid centre.
        """
        dx, dy = self.res
        if not self.is_geographic:
            return dx, dy
        west, south, east, north = self.bounds
        mlat, mlon = m_per_deg(0.5 * (south + north))
        return dx * mlon, dy * mlat

    def window(self, row_off: int, col_off: int, height: int, width: int) -> "GridSpec":
        transform = self.transform * Affine.translation(col_off, row_off)
        return GridSpec(transform=transform, shape=(height, width), crs=self.crs)


@dataclass(frozen=True, eq=False)
class Band:
    name: str
    data: np.ndarray
    valid: Optional[np.ndarray] = None

    def __post_init__(self):
        if self.data.ndim != 2:
            raise DomainError(f"Band '{self.name}' must be 2-D, got shape {self.data.shape}")
        if self.valid is not None and self.valid.shape != self.data.shape:
            raise DomainError(f"Band '{self.name}' validity mask shape {self.valid.shape} "
                              f"does not match data shape {self.data.shape}")

    @property
    def dtype(self) -> np.dtype:
        return self.data.dtype

    def validity(self) -> np.ndarray:
        if self.valid is None:
            return np.ones(self.data.shape, dtype=bool)
        return self.valid.astype(bool)

    def masked(self) -> np.ma.MaskedArray:
        return np.ma.MaskedArray(self.data, mask=~self.validity())

    def as_float(self) -> np.ndarray:
        """Data as float64 with NaN at invalid pixels."""
        out = self.data.astype("float64")
        out[~self.validity()] = np.nan
        return out

    def renamed(self, name: str) -> "Band":
        return replace(self, name=name)


BandLike = Union[Band, "Raster"]


class Raster:
    """Named bands on a shared grid."""

    def __init__(self, grid: GridSpec, bands: Iterable[Band] = ()):
        self.grid = grid
        self._bands: Dict[str, Band] = {}
        for band in bands:
            if band.data.shape != tuple(grid.shape):
                raise DomainError(f"Band '{band.name}' shape {band.data.shape} "
                                  f"does not match grid shape {tuple(grid.shape)}")
            self._bands[band.name] = band

    # --- construction -------------------------------------------------------

    @classmethod
    def from_arrays(cls, grid: GridSpec, arrays: Mapping[str, np.ndarray],
                    valid: Optional[np.ndarray] = None) -> "Raster":
        """Build a raster from name -> array, sharing an optional validity mask."""
        return cls(grid, [Band(name, np.asarray(arr), valid) for name, arr in arrays.items()])

    @classmethod
    def masked_like(cls, grid: GridSpec, band_names: Sequence[str],
                    dtypes: Optional[Mapping[str, np.dtype]] = None) -> "Raster":
        """An all-invalid raster with the given band set."""
        dtypes = dtypes or {}
        bands = []
        for name in band_names:
            dtype = dtypes.get(name, "float32")
            bands.append(Band(name, np.zeros(grid.shape, dtype=dtype), np.zeros(grid.shape, dtype=bool)))
        return cls(grid, bands)

    # --- access -------------------------------------------------------------

    @property
    def band_names(self) -> List[str]:
        return list(self._bands)

    @property
    def shape(self) -> Tuple[int, int]:
        return tuple(self.grid.shape)

    def __contains__(self, name: str) -> bool:
        return name in self._bands

    def __getitem__(self, name: str) -> Band:
        try:
            return self._bands[name]
        except KeyError:
            raise KeyError(f"Band '{name}' not in raster (bands: {self.band_names})") from None

    def __iter__(self) -> Iterator[Band]:
        return iter(self._bands.values())

    def __len__(self) -> int:
        return len(self._bands)

    def __repr__(self) -> str:
        return f"Raster(shape={self.shape}, bands={self.band_names})"

    def validity(self, names: Optional[Sequence[str]] = None) -> np.ndarray:
        """Pixels valid in every selected band."""
        names = self.band_names if names is None else names
        out = np.ones(self.shape, dtype=bool)
        for name in names:
            out &= self[name].validity()
        return out

    def float_stack(self, names: Sequence[str]) -> np.ndarray:
        """(bands, rows, cols) float64 stack with NaN at invalid pixels."""
        return np.stack([self[name].as_float() for name in names])

    # --- transforms ---------------------------------------------------------

    def select(self, names: Sequence[str]) -> "Raster":
        return Raster(self.grid, [self[name] for name in names])

    def rename(self, mapping: Mapping[str, str]) -> "Raster":
        return Raster(self.grid, [b.renamed(mapping.get(b.name, b.name)) for b in self])

    def add_bands(self, *others: BandLike) -> "Raster":
        """New raster with extra bands; same-name bands are overwritten."""
        bands = dict(self._bands)
        for other in others:
            items = list(other) if isinstance(other, Raster) else [other]
            if isinstance(other, Raster) and other.grid != self.grid:
                raise DomainError("Cannot combine rasters on different grids")
            for band in items:
                bands[band.name] = band
        return Raster(self.grid, bands.values())

    def with_band(self, name: str, data: np.ndarray, valid: Optional[np.ndarray] = None) -> "Raster":
        return self.add_bands(Band(name, data, valid))

    def update_mask(self, mask: np.ndarray, names: Optional[Sequence[str]] = None) -> "Raster":
        """AND ``mask`` into the validity of the selected bands (all by default)."""
        names = set(self.band_names if names is None else names)
        mask = np.asarray(mask, dtype=bool)
        bands = []
        for band in self:
            if band.name in names:
                band = Band(band.name, band.data, band.validity() & mask)
            bands.append(band)
        return Raster(self.grid, bands)

    def window(self, row_off: int, col_off: int, height: int, width: int) -> "Raster":
        rows = slice(row_off, row_off + height)
        cols = slice(col_off, col_off + width)
        grid = self.grid.window(row_off, col_off, height, width)
        bands = []
        for band in self:
            valid = None if band.valid is None else band.valid[rows, cols]
            bands.append(Band(band.name, band.data[rows, cols], valid))
        return Raster(grid, bands)

    def require(self, names: Sequence[str]) -> None:
        missing = [n for n in names if n not in self]
        if missing:
            raise DomainError(f"Raster is missing required bands: {missing}")


def check_same_grid(*rasters: Raster) -> GridSpec:
    """Return the shared grid, or raise if the rasters are not co-registered."""
    grid = rasters[0].grid
    for r in rasters[1:]:
        if r.grid.shape != grid.shape or r.grid.transform != grid.transform:
            raise DomainError(f"Rasters are not co-registered: {grid} vs {r.grid}")
    return grid
