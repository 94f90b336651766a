# tools/self_check.py
import sys, json, argparse
from erosion_watch.config import load_site
from erosion_watch.pipelines.rusle_pipeline import run_site_pipeline

def _jsonable(stats):
    out = {k: v for k, v in stats.items() if k != "histograms"}
    out["histograms"] = {k: df.to_dict(orient="list") for k, df in stats.get("histograms", {}).items()}
    return out

def main(argv=None):
    ap = argparse.ArgumentParser(description="Run the RUSLE pipeline for one site and print its statistics.")
    ap.add_argument("site", help="Site YAML with a 'layers' mapping (dem, contrib_area, soil, rainfall_erosivity, scenes, ...)")
    ap.add_argument("--settings", default="config/rusle.yaml", help="Run settings YAML")
    ap.add_argument("--out_dir", default=None, help="Write K, LS, S, A ... GeoTIFFs here")
    args = ap.parse_args(argv)

    site = load_site(args.site)
    layers = dict(site["layers"])
    for key in ("aoi", "points"):
        if site.get(key):
            layers[key] = site[key]

    try:
        out = run_site_pipeline(layers, settings_path=site.get("settings", args.settings), out_dir=args.out_dir)
        print(json.dumps(_jsonable(out["statistics"]), indent=2, default=str))
        if "points" in out:
            print(out["points"].drop(columns=["geometry"], errors="ignore").to_string(index=False), file=sys.stderr)
        return 0
    except Exception as e:
        print(f"FAILED {e}")
        return 2

if __name__ == "__main__":
    sys.exit(main())
