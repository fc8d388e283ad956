#!/usr/bin/env python3
"""
04_estimate_ols.py

Fixed-effects OLS battery: every outcome on every GCD treatment under every
specification in params.yml, with county-clustered standard errors.

Pipeline Step: 04

Inputs:
    - data/processed/analysis/analysis_panel.parquet (step 03)
    - configs/params.yml (analysis.outcomes, estimation)

Outputs:
    - data/processed/results/ols_results.parquet
    - data/processed/results/ols_results.csv
    - reports/tables/ols_results.md
    - data/processed/results/ols_results_metadata.json

Failure Modes:
    - A single specification that cannot be estimated (e.g. no variation
      after absorbing fixed effects) is recorded with status "failed"; the
      step itself only fails when every run fails.
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from garden_city.paths import paths, ensure_dir
from garden_city.logging_utils import (
    get_logger, log_step_start, log_step_end, log_output_written, get_run_id
)
from garden_city.io_utils import (
    atomic_write_csv, atomic_write_parquet, atomic_write_text, read_parquet, read_yaml
)
from garden_city.hashing import write_metadata_sidecar
from garden_city.estimation import results_markdown, run_specification_grid
from garden_city.schemas import validate_schema, SCHEMA_REGRESSION_RESULTS


SCRIPT_NAME = "04_estimate_ols"


def main():
    """Main entry point for 04_estimate_ols."""
    run_id = get_run_id()
    logger = get_logger(SCRIPT_NAME, run_id)

    logger.info("=" * 60)
    logger.info(f"Starting {SCRIPT_NAME}")
    logger.info(f"Run ID: {run_id}")
    logger.info("=" * 60)

    try:
        params = read_yaml(paths.params_yml)
        est = params["estimation"]
        outcomes = params["analysis"]["outcomes"]

        in_path = paths.processed_analysis / "analysis_panel.parquet"
        panel = read_parquet(in_path)
        logger.info(f"Loaded analysis panel: {len(panel):,} neighborhoods")

        log_step_start(logger, "ols_battery", n_outcomes=len(outcomes),
                       n_treatments=len(est["treatments"]),
                       n_specifications=len(est["specifications"]))
        results = run_specification_grid(
            panel, outcomes, est["treatments"], est["specifications"],
            estimator="ols", vcov=est["vcov"], logger=logger,
        )
        n_ok = int((results["status"] == "ok").sum())
        log_step_end(logger, "ols_battery", n_ok=n_ok, n_failed=len(results) - n_ok)

        validate_schema(results, SCHEMA_REGRESSION_RESULTS)

        output_dir = ensure_dir(paths.processed_results)
        out_path = output_dir / "ols_results.parquet"
        atomic_write_parquet(out_path, results)
        log_output_written(logger, out_path, row_count=len(results))
        atomic_write_csv(output_dir / "ols_results.csv", results)

        report_path = ensure_dir(paths.reports_tables) / "ols_results.md"
        atomic_write_text(report_path, results_markdown(
            results, "Fixed-Effects OLS: Garden City Design and Neighborhood Outcomes",
            notes=[f"Standard errors clustered by {', '.join(est['vcov'].values())}."],
        ))
        log_output_written(logger, report_path)

        write_metadata_sidecar(
            output_path=out_path,
            run_id=run_id,
            input_files=[in_path],
            config_files=[paths.params_yml],
            parameters={"estimation": est, "outcomes": outcomes},
            row_count=len(results),
        )

        if n_ok == 0:
            logger.error("Every OLS specification failed")
            return 1

        logger.info("=" * 60)
        logger.info(f"{SCRIPT_NAME} completed successfully")
        logger.info(f"   Estimates: {n_ok}/{len(results)} ok")
        logger.info(f"   Output: {out_path}")
        logger.info("=" * 60)

        return 0

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        logger.error("Run step 03 first.")
        return 1

    except Exception as e:
        logger.exception(f"Pipeline failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
