#!/usr/bin/env python3
"""
01_assemble_neighborhoods.py

Assemble one row per neighborhood: geographic keys, centroid coordinates,
distance to the nearest city center, street features, geography controls
and construction vintage.

Pipeline Step: 01

Inputs:
    - data/raw/footprints_blockgroup_msa.shp (neighborhood polygons)
    - data/raw/geography/city_centers.csv
    - data/interim/state_features/*_features.parquet (step 00)
    - geography sources listed in configs/sources.yml (elevation/slope,
      ecozone, county-to-metro, median year built)

Outputs:
    - data/processed/neighborhoods/neighborhoods.parquet
    - data/processed/neighborhoods/neighborhoods_metadata.json

QA Checks:
    - CRS present on neighborhood polygons
    - No empty neighborhood geometries, no missing GEOID or state
    - Unique ft_blc_state (hard failure)
    - Centroids within contiguous US bounds (warning)
    - Merge match rates per source (warning)
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import logging

import pandas as pd

from garden_city.paths import paths, ensure_dir, resolve_source_path
from garden_city.logging_utils import (
    get_logger, log_step_start, log_step_end, log_output_written, get_run_id
)
from garden_city.io_utils import atomic_write_parquet, read_table, read_vector, read_yaml
from garden_city.hashing import write_metadata_sidecar
from garden_city.assembly import assemble_neighborhoods, read_state_files
from garden_city.geography import build_neighborhood_geography
from garden_city.qa import (
    check_bounds_latlon, check_crs, check_match_rate, check_no_empty_geoms, check_no_nulls,
    check_unique_ids, raise_on_failures,
)
from garden_city.schemas import validate_schema, SCHEMA_NEIGHBORHOODS


SCRIPT_NAME = "01_assemble_neighborhoods"

GEOGRAPHY_COLUMNS = [
    "ft_blc_state", "geoid", "state", "state_fips", "county_fips", "tract_id",
    "region", "lat", "lon", "dist_city_center_km",
]


def load_geography(sources: dict, params: dict, logger: logging.Logger) -> pd.DataFrame:
    """Neighborhood keys, centroids and distance to the nearest city center."""
    cfg = sources["neighborhoods"]
    hoods = read_vector(resolve_source_path(cfg["path"]))
    raise_on_failures([
        check_crs(hoods, logger),
        check_no_empty_geoms(hoods, logger),
        check_no_nulls(hoods, [cfg["geoid_column"], cfg["state_column"]], logger),
    ])

    centers_cfg = sources["city_centers"]
    centers = read_table(resolve_source_path(centers_cfg["path"]))
    centers = centers.rename(columns={
        centers_cfg["lat_column"]: "lat",
        centers_cfg["lon_column"]: "lon",
    })
    logger.info(f"Loaded {len(hoods):,} neighborhoods and {len(centers):,} city centers")

    geo = build_neighborhood_geography(
        hoods, centers,
        geoid_col=cfg["geoid_column"],
        state_col=cfg["state_column"],
        projected_crs=params["street_features"]["projected_crs"],
        logger=logger,
    )
    keep = GEOGRAPHY_COLUMNS + [c for c in [cfg.get("urban_area_column")] if c in geo.columns]
    return geo[keep]


def load_sources(section: dict, logger: logging.Logger) -> dict[str, tuple[pd.DataFrame, dict]]:
    """Read every configured source table, keys as strings."""
    loaded = {}
    for name, spec in section.items():
        path = resolve_source_path(spec["path"])
        df = read_table(path, dtype={spec["key_column"]: str})
        logger.info(f"Loaded {name}: {len(df):,} rows from {path.name}")
        loaded[name] = (df, spec)
    return loaded


def run_qa_checks(panel: pd.DataFrame, matches: dict[str, int], logger: logging.Logger) -> None:
    """Hard failure on duplicate ids; bounds and match rates are reported only."""
    log_step_start(logger, "qa_checks")

    raise_on_failures([check_unique_ids(panel, "ft_blc_state", logger)])

    soft = [check_bounds_latlon(panel, logger=logger)]
    for name, matched in matches.items():
        soft.append(check_match_rate(name, len(panel), matched, logger=logger))
    failed = [r.check_name for r in soft if not r.passed]
    if failed:
        logger.warning(f"Soft QA checks failed: {failed}")

    log_step_end(logger, "qa_checks", soft_failures=len(failed))


# =============================================================================
# MAIN
# =============================================================================

def main():
    """Main entry point for 01_assemble_neighborhoods."""
    run_id = get_run_id()
    logger = get_logger(SCRIPT_NAME, run_id)

    logger.info("=" * 60)
    logger.info(f"Starting {SCRIPT_NAME}")
    logger.info(f"Run ID: {run_id}")
    logger.info("=" * 60)

    try:
        params = read_yaml(paths.params_yml)
        sources = read_yaml(paths.sources_yml)

        geography = load_geography(sources, params, logger)
        features = read_state_files(paths.interim_state_features, "*_features.parquet", logger)
        geo_sources = load_sources(sources["geography"], logger)

        panel, matches = assemble_neighborhoods(
            geography, features, geo_sources,
            vintage_floor=params["analysis"]["vintage_floor"],
            logger=logger,
        )

        run_qa_checks(panel, matches, logger)
        validate_schema(panel, SCHEMA_NEIGHBORHOODS)

        output_dir = ensure_dir(paths.processed_neighborhoods)
        out_path = output_dir / "neighborhoods.parquet"
        atomic_write_parquet(out_path, panel)
        log_output_written(logger, out_path, row_count=len(panel))

        input_files = [resolve_source_path(sources["neighborhoods"]["path"]),
                       resolve_source_path(sources["city_centers"]["path"])]
        input_files += sorted(paths.interim_state_features.glob("*_features.parquet"))
        input_files += [resolve_source_path(s["path"]) for s in sources["geography"].values()]
        write_metadata_sidecar(
            output_path=out_path,
            run_id=run_id,
            input_files=input_files,
            config_files=[paths.params_yml, paths.sources_yml],
            parameters={"vintage_floor": params["analysis"]["vintage_floor"]},
            row_count=len(panel),
            extra={"match_counts": matches},
        )

        logger.info("=" * 60)
        logger.info(f"{SCRIPT_NAME} completed successfully")
        logger.info(f"   Neighborhoods: {len(panel):,}")
        logger.info(f"   With street features: {matches['street_features']:,}")
        logger.info(f"   Output: {out_path}")
        logger.info("=" * 60)

        return 0

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        logger.error("Run step 00 first and place raw inputs under data/raw/.")
        return 1

    except Exception as e:
        logger.exception(f"Pipeline failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
