#!/usr/bin/env python3
"""
00_extract_street_features.py

Extract per-neighborhood street geometry features, one state at a time.

Pipeline Step: 00

For every state street file, segments are exploded and projected, nodes are
built from snapped segment endpoints, and segment curvature, intersection
degree, three-way share, right-angle share and out-street share are
summarized for every neighborhood polygon of that state.

Inputs:
    - data/raw/streets/{STATE}_streets.gpkg (street centerlines)
    - data/raw/footprints_blockgroup_msa.shp (neighborhood polygons)
    - configs/params.yml (street_features)
    - configs/sources.yml (neighborhoods, streets)

Outputs:
    - data/interim/state_features/{STATE}_features.parquet
    - data/interim/state_features/{STATE}_features_metadata.json

Usage:
    python scripts/00_extract_street_features.py [STATE ...] [--force]

A state is skipped when its metadata sidecar shows unchanged inputs (a
shapefile with its companion files) and street_features parameters,
unless --force is given.

QA Checks:
    - CRS present on neighborhoods and streets
    - No empty neighborhood geometries, no missing GEOID or state
    - Unique neighborhood IDs per state
    - Street features schema
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import argparse
import logging

import geopandas as gpd

from garden_city.paths import paths, ensure_dir, resolve_source_path
from garden_city.logging_utils import (
    get_logger, log_step_start, log_step_end, log_output_written, get_run_id
)
from garden_city.io_utils import atomic_write_parquet, read_vector, read_yaml
from garden_city.hashing import (
    check_hashes_match, dataset_files, sidecar_path_for, write_metadata_sidecar
)
from garden_city.geography import make_neighborhood_id
from garden_city.qa import (
    check_crs, check_no_empty_geoms, check_no_nulls, check_unique_ids, raise_on_failures
)
from garden_city.schemas import validate_schema, SCHEMA_STREET_FEATURES
from garden_city.street_features import extract_state_features


SCRIPT_NAME = "00_extract_street_features"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Extract street features per state")
    parser.add_argument("states", nargs="*", help="Two-letter state codes (default: all files)")
    parser.add_argument("--force", action="store_true", help="Re-extract unchanged states")
    return parser.parse_args(argv)


def load_neighborhoods(sources: dict, logger: logging.Logger) -> gpd.GeoDataFrame:
    """Read neighborhood polygons and attach the ft_blc_state key."""
    cfg = sources["neighborhoods"]
    path = resolve_source_path(cfg["path"])
    logger.info(f"Reading neighborhoods: {path}")

    hoods = read_vector(path)
    raise_on_failures([
        check_crs(hoods, logger),
        check_no_empty_geoms(hoods, logger),
        check_no_nulls(hoods, [cfg["geoid_column"], cfg["state_column"]], logger),
    ])

    hoods["ft_blc_state"] = make_neighborhood_id(hoods[cfg["geoid_column"]],
                                                 hoods[cfg["state_column"]])
    hoods["state"] = hoods[cfg["state_column"]].astype(str).str.upper()
    logger.info(f"Loaded {len(hoods):,} neighborhoods in {hoods['state'].nunique()} states")
    return hoods[["ft_blc_state", "state", "geometry"]]


def find_state_files(sources: dict, states: list[str]) -> dict[str, Path]:
    """State code -> street file, optionally restricted to `states`."""
    cfg = sources["streets"]
    directory = resolve_source_path(cfg["directory"])
    if not directory.exists():
        raise FileNotFoundError(f"Street directory not found: {directory}")

    files = {
        f.stem.split("_")[0].upper(): f
        for f in sorted(directory.glob(cfg["pattern"]))
    }
    if states:
        wanted = {s.upper() for s in states}
        missing = wanted - set(files)
        if missing:
            raise FileNotFoundError(f"No street file for states: {sorted(missing)}")
        files = {s: f for s, f in files.items() if s in wanted}
    return files


def process_state(
    state: str,
    street_file: Path,
    hoods: gpd.GeoDataFrame,
    params: dict,
    neighborhoods_path: Path,
    run_id: str,
    force: bool,
    logger: logging.Logger,
) -> str:
    """Extract and write one state. Returns "written", "skipped" or "empty"."""
    output_dir = ensure_dir(paths.interim_state_features)
    out_path = output_dir / f"{state}_features.parquet"
    input_files = dataset_files(street_file) + dataset_files(neighborhoods_path)
    feature_params = params["street_features"]

    if not force and out_path.exists() and check_hashes_match(
        sidecar_path_for(out_path), input_files, parameters=feature_params
    ):
        logger.info(f"{state}: inputs unchanged, skipping")
        return "skipped"

    state_hoods = hoods[hoods["state"] == state]
    if state_hoods.empty:
        logger.warning(f"{state}: no neighborhoods in this state")
        return "empty"

    segments = read_vector(street_file)
    raise_on_failures([
        check_crs(segments, logger),
        check_unique_ids(state_hoods, "ft_blc_state", logger),
    ])

    features = extract_state_features(
        segments, state_hoods, id_col="ft_blc_state",
        params=feature_params, state=state, logger=logger,
    )
    if features.empty:
        logger.warning(f"{state}: no neighborhood contains a street segment")
        return "empty"

    validate_schema(features, SCHEMA_STREET_FEATURES)

    atomic_write_parquet(out_path, features)
    log_output_written(logger, out_path, row_count=len(features), state=state)
    write_metadata_sidecar(
        output_path=out_path,
        run_id=run_id,
        input_files=input_files,
        parameters=feature_params,
        row_count=len(features),
        extra={"state": state, "n_input_segments": len(segments)},
    )
    return "written"


# =============================================================================
# MAIN
# =============================================================================

def main(argv: list[str] | None = None):
    """Main entry point for 00_extract_street_features."""
    args = parse_args(argv)

    run_id = get_run_id()
    logger = get_logger(SCRIPT_NAME, run_id)

    logger.info("=" * 60)
    logger.info(f"Starting {SCRIPT_NAME}")
    logger.info(f"Run ID: {run_id}")
    logger.info("=" * 60)

    try:
        params = read_yaml(paths.params_yml)
        sources = read_yaml(paths.sources_yml)

        state_files = find_state_files(sources, args.states)
        logger.info(f"States to process: {list(state_files)}")
        if not state_files:
            logger.error("No street files found")
            return 1

        hoods = load_neighborhoods(sources, logger)
        neighborhoods_path = resolve_source_path(sources["neighborhoods"]["path"])

        log_step_start(logger, "extract_states", n_states=len(state_files))
        status = {}
        for state, street_file in state_files.items():
            status[state] = process_state(
                state, street_file, hoods, params, neighborhoods_path,
                run_id, args.force, logger,
            )
        log_step_end(logger, "extract_states", **{
            s: sum(1 for v in status.values() if v == s) for s in ("written", "skipped", "empty")
        })

        logger.info("=" * 60)
        logger.info(f"{SCRIPT_NAME} completed successfully")
        logger.info(f"   Written: {[s for s, v in status.items() if v == 'written']}")
        logger.info(f"   Skipped: {[s for s, v in status.items() if v == 'skipped']}")
        logger.info("=" * 60)

        return 0

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        logger.error("Place the raw data package under data/raw/ (see configs/sources.yml).")
        return 1

    except Exception as e:
        logger.exception(f"Pipeline failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
