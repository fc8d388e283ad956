#!/usr/bin/env python3
"""
02_build_gcd_index.py

Build the Garden City Design index, its PCA alternative and the top-quantile
treatment indicators, and export the national map data.

Pipeline Step: 02

Inputs:
    - data/processed/neighborhoods/neighborhoods.parquet (step 01)
    - configs/params.yml (gcd_index)

Outputs:
    - data/processed/index/gcd_index.parquet
    - data/processed/index/garden_measure_US.parquet
    - data/processed/index/garden_measure_US.dta
    - data/processed/index/garden_measure_US_map.csv (neighborhood map data)
    - data/processed/index/garden_measure_US_urb_map.csv (urban area means)
    - data/processed/index/garden_measure_US_extremes.csv (top/bottom areas)
    - data/processed/index/gcd_index_diagnostics.json
    - metadata sidecars

QA Checks:
    - Unique neighborhood IDs
    - Indices within [0, 1]
    - GCD index schema
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import logging

import pandas as pd

from garden_city.paths import paths, ensure_dir
from garden_city.logging_utils import (
    get_logger, log_step_start, log_step_end, log_output_written, get_run_id
)
from garden_city.io_utils import (
    atomic_write_csv, atomic_write_json, atomic_write_parquet, atomic_write_stata,
    read_parquet, read_yaml,
)
from garden_city.hashing import write_metadata_sidecar
from garden_city.gcd_index import (
    build_gcd_index, extreme_areas, gcd_map_bins, urban_area_means
)
from garden_city.qa import check_unique_ids, check_unit_interval, raise_on_failures
from garden_city.schemas import validate_schema, SCHEMA_GCD_INDEX


SCRIPT_NAME = "02_build_gcd_index"


def run_qa_checks(index: pd.DataFrame, logger: logging.Logger) -> None:
    log_step_start(logger, "qa_checks")
    results = [
        check_unique_ids(index, "ft_blc_state", logger),
        check_unit_interval(index, "garden_metric_osm", logger),
        check_unit_interval(index, "garden_metric_pca", logger),
    ]
    raise_on_failures(results)
    log_step_end(logger, "qa_checks", passed=len(results))


def write_map_exports(
    measure: pd.DataFrame,
    gcd_params: dict,
    area_col: str,
    output_dir: Path,
    logger: logging.Logger,
) -> dict[str, Path]:
    """Neighborhood and urban-area map tables with legend classes."""
    outputs = {}
    breaks = gcd_params["map_breaks"]

    hood_map = measure.loc[measure["garden_metric_osm"].notna(),
                           ["ft_blc_state", "garden_metric_osm"]].copy()
    hood_map["map_class"] = gcd_map_bins(hood_map["garden_metric_osm"], breaks)
    outputs["map"] = atomic_write_csv(output_dir / "garden_measure_US_map.csv", hood_map)
    log_output_written(logger, outputs["map"], row_count=len(hood_map))

    if area_col not in measure.columns:
        logger.warning(f"No urban area column '{area_col}'; skipping urban area map data")
        return outputs

    areas = urban_area_means(measure, area_col=area_col)
    areas["map_class"] = gcd_map_bins(areas["garden_metric_osm"], breaks)
    outputs["urb_map"] = atomic_write_csv(output_dir / "garden_measure_US_urb_map.csv", areas)
    log_output_written(logger, outputs["urb_map"], row_count=len(areas))

    extremes = extreme_areas(areas, n=gcd_params["n_extreme_areas"])
    outputs["extremes"] = atomic_write_csv(output_dir / "garden_measure_US_extremes.csv", extremes)
    log_output_written(logger, outputs["extremes"], row_count=len(extremes))

    return outputs


# =============================================================================
# MAIN
# =============================================================================

def main():
    """Main entry point for 02_build_gcd_index."""
    run_id = get_run_id()
    logger = get_logger(SCRIPT_NAME, run_id)

    logger.info("=" * 60)
    logger.info(f"Starting {SCRIPT_NAME}")
    logger.info(f"Run ID: {run_id}")
    logger.info("=" * 60)

    try:
        params = read_yaml(paths.params_yml)
        sources = read_yaml(paths.sources_yml)
        gcd_params = params["gcd_index"]

        in_path = paths.processed_neighborhoods / "neighborhoods.parquet"
        neighborhoods = read_parquet(in_path)
        logger.info(f"Loaded {len(neighborhoods):,} neighborhoods")

        index, diagnostics = build_gcd_index(neighborhoods, gcd_params, logger=logger)
        run_qa_checks(index, logger)
        validate_schema(index, SCHEMA_GCD_INDEX)

        output_dir = ensure_dir(paths.processed_index)
        index_path = output_dir / "gcd_index.parquet"
        atomic_write_parquet(index_path, index)
        log_output_written(logger, index_path, row_count=len(index))

        measure = neighborhoods.merge(index, on="ft_blc_state", how="left", validate="1:1")
        measure_path = output_dir / "garden_measure_US.parquet"
        atomic_write_parquet(measure_path, measure)
        log_output_written(logger, measure_path, row_count=len(measure))

        dta_path = atomic_write_stata(output_dir / "garden_measure_US.dta", measure)
        log_output_written(logger, dta_path, row_count=len(measure))

        area_col = sources["neighborhoods"].get("urban_area_column", "foot_id")
        write_map_exports(measure, gcd_params, area_col, output_dir, logger)

        diag_path = atomic_write_json(output_dir / "gcd_index_diagnostics.json", diagnostics)
        log_output_written(logger, diag_path)

        for out in (index_path, measure_path):
            write_metadata_sidecar(
                output_path=out,
                run_id=run_id,
                input_files=[in_path],
                config_files=[paths.params_yml],
                parameters=gcd_params,
                row_count=len(index),
                extra={"n_index_defined": diagnostics["n_index_defined"]},
            )

        logger.info("=" * 60)
        logger.info(f"{SCRIPT_NAME} completed successfully")
        logger.info(f"   Index defined: {diagnostics['n_index_defined']:,}/{len(index):,}")
        logger.info(f"   Corr(mean, PCA): {diagnostics['corr_mean_pca']:.3f}")
        logger.info(f"   Output: {index_path}")
        logger.info("=" * 60)

        return 0

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        logger.error("Run step 01 first.")
        return 1

    except Exception as e:
        logger.exception(f"Pipeline failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
