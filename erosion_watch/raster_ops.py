# erosion_watch/raster_ops.py
import logging
from concurrent.futures import ThreadPoolExecutor, wait, FIRST_EXCEPTION
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import rasterio
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.transform import rowcol
from rasterio.vrt import WarpedVRT
from rasterio.warp import reproject
from scipy import ndimage

from erosion_watch.constants import NODATA
from erosion_watch.errors import TileProcessingError
from erosion_watch.raster import Band, GridSpec, Raster

logger = logging.getLogger(__name__)


# --- Open a reader, optionally warped to a target CRS ---
def open_reader(path: str, crs: Optional[str] = None, resampling: Resampling = Resampling.bilinear):
    """
    Returns (src, reader) where src is the original dataset handle and
    reader is either src or a WarpedVRT to ``crs``.
    Carries src_nodata so masked pixels survive the warp.
    """
    src = rasterio.open(path)
    if crs and src.crs and src.crs != CRS.from_user_input(crs):
        vrt = WarpedVRT(src, crs=crs, resampling=resampling, src_nodata=src.nodata)
        return src, vrt
    return src, src


def read_raster(path: str, band_names: Optional[Sequence[str]] = None, crs: Optional[str] = None,
                resampling: Resampling = Resampling.bilinear) -> Raster:
    """Read every band of a file into a Raster; nodata pixels become invalid.

    Band names default to the file's band descriptions, then to ``b1..bn``.
    """
    src, reader = open_reader(path, crs=crs, resampling=resampling)
    try:
        data = reader.read()
        valid = reader.read_masks() > 0
        names = list(band_names) if band_names else [
            d or f"b{i + 1}" for i, d in enumerate(reader.descriptions)
        ]
        if len(names) != data.shape[0]:
            raise ValueError(f"{path}: {data.shape[0]} bands but {len(names)} names given")
        grid = GridSpec(transform=reader.transform, shape=(reader.height, reader.width), crs=reader.crs)
        bands = [Band(n, data[i], valid[i]) for i, n in enumerate(names)]
    finally:
        if reader is not src:
            reader.close()
        src.close()
    logger.debug("Read %s (%s bands, %sx%s)", path, len(bands), grid.height, grid.width)
    return Raster(grid, bands)


def write_raster(raster: Raster, path: str, dtype: str = "float32", nodata: float = NODATA) -> None:
    """Write all bands to a GeoTIFF, filling invalid pixels with ``nodata``."""
    grid = raster.grid
    with rasterio.open(
        path, "w",
        driver="GTiff",
        height=grid.height,
        width=grid.width,
        count=len(raster),
        dtype=dtype,
        transform=grid.transform,
        crs=grid.crs,
        nodata=nodata,
    ) as ds:
        for i, band in enumerate(raster, start=1):
            arr = band.data.astype(dtype)
            arr[~band.validity()] = nodata
            ds.write(arr, i)
            ds.set_band_description(i, band.name)


def reproject_like(raster: Raster, grid: GridSpec, resampling: Resampling = Resampling.bilinear,
                   band_resampling: Optional[Mapping[str, Resampling]] = None) -> Raster:
    """Resample every band onto ``grid``; pixels without source data become invalid.

    ``band_resampling`` overrides ``resampling`` per band name, e.g. nearest
    for class codes that must not be blended.
    """
    overrides = band_resampling or {}
    bands = []
    for band in raster:
        src = band.as_float()
        dst = np.full(grid.shape, np.nan, dtype="float64")
        reproject(
            source=src,
            destination=dst,
            src_transform=raster.grid.transform,
            src_crs=raster.grid.crs,
            src_nodata=np.nan,
            dst_transform=grid.transform,
            dst_crs=grid.crs or raster.grid.crs,
            dst_nodata=np.nan,
            resampling=overrides.get(band.name, resampling),
        )
        valid = ~np.isnan(dst)
        bands.append(Band(band.name, np.where(valid, dst, 0.0).astype(band.dtype), valid))
    return Raster(grid, bands)


# --- Generic single-band sampling with invalid masking ---
def sample_raster_at_points(gdf, raster: Raster, band: str) -> List[Optional[float]]:
    """Sample ``band`` at each point geometry (points must be in the raster CRS)."""
    b = raster[band]
    valid = b.validity()
    vals = []
    for geom in gdf.geometry:
        r, c = rowcol(raster.grid.transform, geom.x, geom.y)
        if 0 <= r < raster.grid.height and 0 <= c < raster.grid.width and valid[r, c]:
            vals.append(float(b.data[r, c]))
        else:
            vals.append(None)
    return vals


# --- Focal primitives ---
def disk(radius: float) -> np.ndarray:
    """Circular footprint of the given pixel radius."""
    r = max(int(np.ceil(radius)), 0)
    y, x = np.ogrid[-r:r + 1, -r:r + 1]
    return (x * x + y * y) <= radius * radius


def focal_min(mask: np.ndarray, radius: float) -> np.ndarray:
    if radius <= 0:
        return mask.copy()
    return ndimage.binary_erosion(mask, structure=disk(radius), border_value=1)


def focal_max(mask: np.ndarray, radius: float) -> np.ndarray:
    if radius <= 0:
        return mask.copy()
    return ndimage.binary_dilation(mask, structure=disk(radius))


def convolve(arr: np.ndarray, kernel: Sequence[Sequence[float]]) -> np.ndarray:
    return ndimage.convolve(arr.astype("float64"), np.asarray(kernel, dtype="float64"), mode="nearest")


def shift(arr: np.ndarray, drow: int, dcol: int, fill=0) -> np.ndarray:
    """Shift contents by (drow, dcol) pixels, filling uncovered cells."""
    out = np.full_like(arr, fill)
    h, w = arr.shape
    src_r = slice(max(-drow, 0), h - max(drow, 0))
    src_c = slice(max(-dcol, 0), w - max(dcol, 0))
    dst_r = slice(max(drow, 0), h - max(-drow, 0))
    dst_c = slice(max(dcol, 0), w - max(-dcol, 0))
    if src_r.start < src_r.stop and src_c.start < src_c.stop:
        out[dst_r, dst_c] = arr[src_r, src_c]
    return out


def block_max(mask: np.ndarray, factor: int) -> np.ndarray:
    """Downsample a boolean mask by ``factor``; a coarse cell is set if any fine cell is."""
    if factor <= 1:
        return mask.copy()
    h, w = mask.shape
    ph, pw = -h % factor, -w % factor
    padded = np.pad(mask, ((0, ph), (0, pw)), constant_values=False)
    return padded.reshape(padded.shape[0] // factor, factor, padded.shape[1] // factor, factor).any(axis=(1, 3))


def upsample(arr: np.ndarray, factor: int, shape: Tuple[int, int]) -> np.ndarray:
    """Nearest-neighbour upsample by ``factor`` cropped to ``shape``."""
    if factor <= 1:
        return arr[:shape[0], :shape[1]].copy()
    out = np.repeat(np.repeat(arr, factor, axis=0), factor, axis=1)
    return out[:shape[0], :shape[1]]


# --- Tiling ---
Window = Tuple[int, int, int, int]


def iter_windows(shape: Tuple[int, int], tile_size: int, halo: int = 0) -> Iterator[Tuple[Window, Window]]:
    """
    Yields (core, padded) windows as (row_off, col_off, height, width).
    ``padded`` extends ``core`` by ``halo`` pixels, clipped to the grid.
    """
    h, w = shape
    for r0 in range(0, h, tile_size):
        for c0 in range(0, w, tile_size):
            rh, cw = min(tile_size, h - r0), min(tile_size, w - c0)
            pr0, pc0 = max(r0 - halo, 0), max(c0 - halo, 0)
            pr1, pc1 = min(r0 + rh + halo, h), min(c0 + cw + halo, w)
            yield (r0, c0, rh, cw), (pr0, pc0, pr1 - pr0, pc1 - pc0)


def map_tiles(func: Callable[[Raster], Raster], raster: Raster, tile_size: int = 512, halo: int = 0,
              max_workers: int = 4, timeout: Optional[float] = None) -> Raster:
    """
    Apply ``func`` tile by tile on a thread pool and mosaic the tile cores.

    ``halo`` must cover the radius of any focal operation inside ``func``.
    The result is only returned once every tile completed; a failed or
    timed-out tile raises TileProcessingError and nothing is merged.
    """
    windows = list(iter_windows(raster.shape, tile_size, halo))
    if len(windows) == 1:
        return func(raster)

    results: Dict[int, Raster] = {}
    pool = ThreadPoolExecutor(max_workers=max_workers)
    try:
        futures = {pool.submit(func, raster.window(*padded)): i for i, (_, padded) in enumerate(windows)}
        done, not_done = wait(futures, timeout=timeout, return_when=FIRST_EXCEPTION)
        if not_done:
            failed = [f for f in done if f.exception() is not None]
            if failed:
                raise TileProcessingError(f"Tile {futures[failed[0]]} failed: {failed[0].exception()}") \
                    from failed[0].exception()
            raise TileProcessingError(f"{len(not_done)} of {len(windows)} tiles did not complete in {timeout}s")
        for fut in done:
            exc = fut.exception()
            if exc is not None:
                raise TileProcessingError(f"Tile {futures[fut]} failed: {exc}") from exc
            results[futures[fut]] = fut.result()
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    first = results[0]
    data = {b.name: np.zeros(raster.shape, dtype=b.dtype) for b in first}
    valid = {b.name: np.ones(raster.shape, dtype=bool) for b in first}
    for i, ((r0, c0, rh, cw), (pr0, pc0, _, _)) in enumerate(windows):
        tile = results[i]
        rr, cc = slice(r0 - pr0, r0 - pr0 + rh), slice(c0 - pc0, c0 - pc0 + cw)
        for b in tile:
            data[b.name][r0:r0 + rh, c0:c0 + cw] = b.data[rr, cc]
            valid[b.name][r0:r0 + rh, c0:c0 + cw] = b.validity()[rr, cc]
    logger.debug("Mosaicked %s tiles of size %s (halo %s)", len(windows), tile_size, halo)
    return Raster(raster.grid, [Band(name, data[name], valid[name]) for name in data])
