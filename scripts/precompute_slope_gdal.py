#!/usr/bin/env python3
"""Helper to preprocess a DEM into slope (degrees) and aspect rasters for the LS factor.
Requires: gdal (gdaldem, gdalwarp) in PATH.
"""
import subprocess as sp
import argparse
from pathlib import Path
import sys

def run(cmd):
    print("+", " ".join(cmd)); sys.stdout.flush()
    sp.check_call(cmd)

def build_commands(dem, out_dir, reproject_to=None, geographic=False):
    """gdal commands and the (slope, aspect) outputs they produce."""
    dem = Path(dem); out_dir = Path(out_dir)
    cmds = []
    src = dem
    # 0) optional reprojection of the DEM itself, so slope uses metric cells
    if reproject_to:
        src = out_dir / (dem.stem + f"_{reproject_to.replace(':','_')}.tif")
        cmds.append(["gdalwarp", "-t_srs", reproject_to, "-r", "bilinear", str(dem), str(src)])

    slope_deg = out_dir / (dem.stem + "_slope_deg.tif")
    aspect = out_dir / (dem.stem + "_aspect.tif")
    # geographic DEMs need the degree -> metre ratio
    scale = ["-s", "111120"] if geographic and not reproject_to else []

    # 1) slope in degrees
    cmds.append(["gdaldem", "slope", str(src), str(slope_deg), "-compute_edges"] + scale)
    # 2) aspect in degrees clockwise from north; flats get -9999
    cmds.append(["gdaldem", "aspect", str(src), str(aspect), "-compute_edges"])
    return cmds, slope_deg, aspect

def main(argv=None):
    ap = argparse.ArgumentParser(description="Create slope (degrees) and aspect rasters from a DEM using GDAL.")
    ap.add_argument("dem", help="Path to DEM GeoTIFF")
    ap.add_argument("--out_dir", default=".", help="Output directory")
    ap.add_argument("--reproject_to", default=None, help="Target projected CRS (e.g., EPSG:32637). Optional.")
    ap.add_argument("--geographic", action="store_true", help="DEM is in degrees (EPSG:4326) and is not reprojected")
    args = ap.parse_args(argv)

    out_dir = Path(args.out_dir); out_dir.mkdir(parents=True, exist_ok=True)
    cmds, slope_deg, aspect = build_commands(args.dem, out_dir, args.reproject_to, args.geographic)
    for cmd in cmds:
        run(cmd)
    print("Slope raster (degrees):", slope_deg)
    print("Aspect raster (degrees):", aspect)
    return 0

if __name__ == "__main__":
    sys.exit(main())
