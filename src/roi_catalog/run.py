#!/usr/bin/env python3
"""
Command line orchestrator for ROI extraction and tile CRS maintenance.

Routes to the task selected with --task:
- query: extract plots listed in a CSV file from a tile catalog
- crs: print (and optionally set) the reference system of a tile
- params: print the effective parameter configuration

Usage:
    roi-catalog --task query --catalog /path/to/tiles --plots plots.csv --output_dir /path/to/output
    roi-catalog --task crs --tile /path/to/tile.laz --epsg 26917
    roi-catalog --task params --param workers=4
"""

import argparse
import csv
import json
import sys
from pathlib import Path
from typing import List, Optional

from .catalog import Catalog
from .crs import describe, get_crs, set_crs
from .parameters import QueryConfig, load_params, print_params
from .roi_query import roi_query


TINDEX_EXTS = (".gpkg", ".shp", ".geojson")


def load_catalog(source: Path, verbose: bool = True) -> Catalog:
    """Build a catalog from a tile directory, a tile index or a single tile."""
    if source.is_dir():
        return Catalog.from_directory(source, verbose=verbose)
    if not source.exists():
        raise FileNotFoundError(f"Catalog source does not exist: {source}")
    if source.suffix.lower() in TINDEX_EXTS:
        return Catalog.from_tindex(source)
    return Catalog.from_files([source], verbose=verbose)


def read_plots(csv_path: Path) -> dict:
    """
    Read plot definitions from a CSV file.

    Columns: x, y, r and optionally r2 (half height, rectangles) and name.

    Returns:
        Dictionary with x, y, r, r2 and roinames lists (r2/roinames may be None)
    """
    with csv_path.open(newline="") as f:
        reader = csv.DictReader(f)
        columns = [c.strip().lower() for c in (reader.fieldnames or [])]
        missing = {"x", "y", "r"} - set(columns)
        if missing:
            raise ValueError(f"Plot file {csv_path} is missing columns: {', '.join(sorted(missing))}")
        rows = [{k.strip().lower(): (v or "").strip() for k, v in row.items() if k} for row in reader]

    plots = {
        "x": [float(row["x"]) for row in rows],
        "y": [float(row["y"]) for row in rows],
        "r": [float(row["r"]) for row in rows],
        "r2": [float(row["r2"]) for row in rows] if "r2" in columns else None,
        "roinames": [row["name"] for row in rows] if "name" in columns else None,
    }
    return plots


def run_query_task(args, params):
    """
    Run the query task: extract every plot of the CSV and write one LAS per plot.
    """
    if not args.catalog:
        print("Error: --catalog is required for query task")
        sys.exit(1)
    if not args.plots:
        print("Error: --plots is required for query task")
        sys.exit(1)
    if not args.output_dir:
        print("Error: --output_dir is required for query task")
        sys.exit(1)

    catalog_source = Path(args.catalog)
    plots_path = Path(args.plots)
    output_dir = Path(args.output_dir)

    if not plots_path.exists():
        print(f"Error: Plot file does not exist: {plots_path}")
        sys.exit(1)

    try:
        config = QueryConfig.from_params(params)

        print("=" * 60)
        print("Running Query Task")
        print("=" * 60)
        print(f"Catalog: {catalog_source}")
        print(f"Plots: {plots_path}")
        print(f"Output directory: {output_dir}")
        print(f"Workers: {config.workers} ({config.pool})")
        print()

        catalog = load_catalog(catalog_source, verbose=config.verbose)
        plots = read_plots(plots_path)
        results = roi_query(catalog, config=config, **plots)

        output_dir.mkdir(parents=True, exist_ok=True)
        summary = []
        written = 0
        for i, (name, points) in enumerate(results):
            entry = {
                "name": name,
                "x": plots["x"][i],
                "y": plots["y"][i],
                "r": plots["r"][i],
                "r2": plots["r2"][i] if plots["r2"] is not None else None,
                "points": len(points) if points is not None else None,
                "file": None,
            }
            if points is not None and len(points) > 0:
                out_file = points.write_las(output_dir / f"{name}.las")
                entry["file"] = out_file.name
                written += 1
            summary.append(entry)

        summary_path = output_dir / "query_summary.json"
        with summary_path.open("w") as f:
            json.dump({"catalog": str(catalog_source), "crs": str(catalog.crs), "rois": summary}, f, indent=2)

        if args.plot:
            from .plot_catalog import plot_catalog
            from .roi import build_rois
            rois = build_rois(plots["x"], plots["y"], plots["r"], plots["r2"], plots["roinames"])
            plot_catalog(catalog, rois, Path(args.plot), results=results)

        print()
        print("=" * 60)
        print("Query Task Complete")
        print("=" * 60)
        print(f"ROI files written: {written}/{len(results)}")
        print(f"Summary: {summary_path}")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


def run_crs_task(args, params):
    """
    Run the crs task: print the tile reference system, setting it first when
    --epsg or --wkt is given.
    """
    if not args.tile:
        print("Error: --tile is required for crs task")
        sys.exit(1)

    tile = Path(args.tile)
    if not tile.exists():
        print(f"Error: Tile does not exist: {tile}")
        sys.exit(1)

    strict = args.strict or QueryConfig.from_params(params).strict_crs

    try:
        if args.epsg is not None or args.wkt:
            descriptor = args.epsg if args.epsg is not None else args.wkt
            if set_crs(tile, descriptor, strict=strict):
                print(f"  ✓ Reference system written to {tile.name}")
            else:
                print(f"  ✗ Reference system not written to {tile.name}")

        label, name = describe(get_crs(tile, strict=strict))
        print(f"{tile.name}: {label} ({name})")

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        description="ROI extraction from tiled LAS/LAZ catalogs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Extract circular plots (CSV columns: x,y,r,name)
  roi-catalog --task query --catalog /path/to/tiles --plots plots.csv --output_dir /path/to/output

  # Rectangular plots from a tile index, 4 worker processes
  roi-catalog --task query --catalog tindex.gpkg --plots rects.csv --output_dir out --workers 4

  # Read or set a tile reference system
  roi-catalog --task crs --tile tile.laz
  roi-catalog --task crs --tile tile.laz --epsg 26917

  # View current parameters
  roi-catalog --task params --config my_params.py --param workers=8
        """
    )

    # Parameter configuration
    parser.add_argument("--config", type=Path,
                        help="Custom config file (Python file with QUERY_PARAMS, CRS_PARAMS)")
    parser.add_argument("--param", action="append", default=[],
                        help="Parameter override, e.g. workers=4 or crs.strict=true (repeatable)")

    parser.add_argument("--task", type=str, choices=["query", "crs", "params"], required=True,
                        help="Task to run")

    # Query task arguments
    parser.add_argument("--catalog", type=str, help="Tile directory, tile index (.gpkg/.shp) or single tile")
    parser.add_argument("--plots", type=str, help="CSV file with x,y,r[,r2][,name] columns")
    parser.add_argument("--output_dir", type=str, help="Output directory for ROI files")
    parser.add_argument("--workers", type=int, help="Number of parallel workers (default: 1)")
    parser.add_argument("--pool", type=str, choices=["process", "thread"], help="Worker pool kind")
    parser.add_argument("--select", type=str, help="Extra dimensions to load, comma separated ('*' = all)")
    parser.add_argument("--plot", type=str, help="Write an overview PNG of tiles and ROIs")

    # CRS task arguments
    parser.add_argument("--tile", type=str, help="Tile file (crs task)")
    parser.add_argument("--epsg", type=int, help="EPSG code to write")
    parser.add_argument("--wkt", type=str, help="WKT text to write")
    parser.add_argument("--strict", action="store_true", help="Fail on unknown EPSG codes or invalid WKT")

    args = parser.parse_args(argv)

    # Build parameter overrides from CLI arguments
    param_overrides = list(args.param)
    if args.workers is not None:
        param_overrides.append(f"workers={args.workers}")
    if args.pool is not None:
        param_overrides.append(f"pool={args.pool}")
    if args.select is not None:
        param_overrides.append(f"select={args.select}")
    if args.strict:
        param_overrides.append("crs.strict=true")

    try:
        params = load_params(
            config_file=args.config,
            param_overrides=param_overrides if param_overrides else None,
            use_env=True
        )
    except (ValueError, FileNotFoundError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.task == "params":
        print_params(params)
        return

    # Show parameter summary if config or CLI overrides were provided
    if args.config or args.param:
        print()
        print_params(params)
        print()

    if args.task == "query":
        run_query_task(args, params)
    elif args.task == "crs":
        run_crs_task(args, params)


if __name__ == "__main__":
    main()
