#!/usr/bin/env python3
"""
03_build_analysis_dataset.py

Join the GCD index and the outcome sources onto the neighborhood panel.

Pipeline Step: 03

Outcomes are published at block group (GHG emissions, time at home,
walkability) or tract level (social isolation, POI density) and are joined
through the matching key. Every join is m:1 validated, so the panel keeps
one row per neighborhood.

Inputs:
    - data/processed/neighborhoods/neighborhoods.parquet (step 01)
    - data/processed/index/gcd_index.parquet (step 02)
    - outcome sources listed in configs/sources.yml

Outputs:
    - data/processed/analysis/analysis_panel.parquet
    - data/processed/analysis/analysis_panel.dta
    - data/processed/analysis/analysis_panel_metadata.json

QA Checks:
    - Unique neighborhood IDs (hard failure)
    - Outcome match rates (warning)
    - Analysis panel schema
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
from garden_city.io_utils import (
    atomic_write_parquet, atomic_write_stata, read_parquet, read_table, read_yaml
)
from garden_city.hashing import write_metadata_sidecar
from garden_city.assembly import build_analysis_dataset
from garden_city.qa import check_match_rate, check_unique_ids, raise_on_failures
from garden_city.schemas import validate_schema, SCHEMA_ANALYSIS_PANEL


SCRIPT_NAME = "03_build_analysis_dataset"


def load_outcomes(sources: dict, outcomes: list[str], logger: logging.Logger) -> dict:
    """Read the configured outcome tables, in the order listed in params.yml."""
    loaded = {}
    for name in outcomes:
        spec = sources["outcomes"][name]
        path = resolve_source_path(spec["path"])
        df = read_table(path, dtype={spec["key_column"]: str})
        logger.info(f"Loaded outcome {name}: {len(df):,} rows at {spec['level']} level")
        loaded[name] = (df, spec)
    return loaded


def summarize_panel(panel: pd.DataFrame, outcomes: list[str], logger: logging.Logger) -> None:
    defined = panel["garden_metric_osm"].notna()
    logger.info(f"Neighborhoods with GCD: {int(defined.sum()):,}/{len(panel):,}")
    for col in outcomes:
        if col in panel.columns:
            n = int((panel[col].notna() & defined).sum())
            logger.info(f"   {col}: {n:,} neighborhoods with GCD and outcome")


# =============================================================================
# MAIN
# =============================================================================

def main():
    """Main entry point for 03_build_analysis_dataset."""
    run_id = get_run_id()
    logger = get_logger(SCRIPT_NAME, run_id)

    logger.info("=" * 60)
    logger.info(f"Starting {SCRIPT_NAME}")
    logger.info(f"Run ID: {run_id}")
    logger.info("=" * 60)

    try:
        params = read_yaml(paths.params_yml)
        sources = read_yaml(paths.sources_yml)
        outcomes = params["analysis"]["outcomes"]

        hoods_path = paths.processed_neighborhoods / "neighborhoods.parquet"
        index_path = paths.processed_index / "gcd_index.parquet"
        neighborhoods = read_parquet(hoods_path)
        index = read_parquet(index_path)

        outcome_sources = load_outcomes(sources, outcomes, logger)
        panel, matches = build_analysis_dataset(index, neighborhoods, outcome_sources, logger)

        log_step_start(logger, "qa_checks")
        raise_on_failures([check_unique_ids(panel, "ft_blc_state", logger)])
        soft = [check_match_rate(name, len(panel), n, logger=logger)
                for name, n in matches.items()]
        log_step_end(logger, "qa_checks", soft_failures=sum(1 for r in soft if not r.passed))

        validate_schema(panel, SCHEMA_ANALYSIS_PANEL)
        summarize_panel(panel, outcomes, logger)

        output_dir = ensure_dir(paths.processed_analysis)
        out_path = output_dir / "analysis_panel.parquet"
        atomic_write_parquet(out_path, panel)
        log_output_written(logger, out_path, row_count=len(panel))

        dta_path = atomic_write_stata(output_dir / "analysis_panel.dta", panel)
        log_output_written(logger, dta_path, row_count=len(panel))

        write_metadata_sidecar(
            output_path=out_path,
            run_id=run_id,
            input_files=[hoods_path, index_path] + [
                resolve_source_path(sources["outcomes"][o]["path"]) for o in outcomes
            ],
            config_files=[paths.params_yml, paths.sources_yml],
            parameters={"outcomes": outcomes},
            row_count=len(panel),
            extra={"match_counts": matches},
        )

        logger.info("=" * 60)
        logger.info(f"{SCRIPT_NAME} completed successfully")
        logger.info(f"   Rows: {len(panel):,}")
        logger.info(f"   Output: {out_path}")
        logger.info("=" * 60)

        return 0

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        logger.error("Run steps 01-02 first and place outcome files under data/raw/outcomes/.")
        return 1

    except Exception as e:
        logger.exception(f"Pipeline failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
