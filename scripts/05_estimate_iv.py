#!/usr/bin/env python3
"""
05_estimate_iv.py

IV/2SLS battery: the continuous GCD is instrumented by the design prevailing
when a neighborhood was built.

Pipeline Step: 05

Two instruments are built from the analysis panel:
    - gcd_loo_vintage: mean GCD of the same construction decade, excluding
      the neighborhood itself
    - gcd_national_vintage: mean GCD of the same construction decade in all
      other metros

Inputs:
    - data/processed/analysis/analysis_panel.parquet (step 03)
    - configs/params.yml (estimation.iv)

Outputs:
    - data/processed/results/iv_results.parquet
    - data/processed/results/iv_results.csv
    - reports/tables/iv_results.md
    - data/processed/results/iv_results_metadata.json
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
    atomic_write_csv, atomic_write_parquet, atomic_write_text, read_parquet, read_yaml
)
from garden_city.hashing import write_metadata_sidecar
from garden_city.estimation import (
    leave_one_out_mean, national_average_instrument,
    results_markdown, run_specification_grid,
)
from garden_city.schemas import validate_schema, SCHEMA_REGRESSION_RESULTS


SCRIPT_NAME = "05_estimate_iv"


def add_instruments(panel: pd.DataFrame, iv: dict, logger: logging.Logger) -> pd.DataFrame:
    """Attach the leave-one-out and national-average vintage instruments."""
    loo_name, national_name = iv["instruments"]
    out = panel.copy()
    out[loo_name] = leave_one_out_mean(out, iv["endogenous"], iv["instrument_group"])
    out[national_name] = national_average_instrument(
        out, iv["endogenous"], by=iv["instrument_group"], exclude=iv["exclude_group"]
    )
    for name in (loo_name, national_name):
        logger.info(f"Instrument {name}: defined for {int(out[name].notna().sum()):,} rows")
    return out


# =============================================================================
# MAIN
# =============================================================================

def main():
    """Main entry point for 05_estimate_iv."""
    run_id = get_run_id()
    logger = get_logger(SCRIPT_NAME, run_id)

    logger.info("=" * 60)
    logger.info(f"Starting {SCRIPT_NAME}")
    logger.info(f"Run ID: {run_id}")
    logger.info("=" * 60)

    try:
        params = read_yaml(paths.params_yml)
        est = params["estimation"]
        iv = est["iv"]
        outcomes = params["analysis"]["outcomes"]

        in_path = paths.processed_analysis / "analysis_panel.parquet"
        panel = add_instruments(read_parquet(in_path), iv, logger)

        specs = [s for s in est["specifications"] if s["name"] in iv["specifications"]]
        log_step_start(logger, "iv_battery", n_specifications=len(specs),
                       instruments=iv["instruments"])
        results = run_specification_grid(
            panel, outcomes, iv["instruments"], specs,
            estimator="iv", vcov=est["vcov"], logger=logger,
            endogenous=iv["endogenous"],
        )
        n_ok = int((results["status"] == "ok").sum())
        log_step_end(logger, "iv_battery", n_ok=n_ok, n_failed=len(results) - n_ok)

        weak = results[(results["status"] == "ok") & (results["first_stage_f"] < 10)]
        if not weak.empty:
            logger.warning(f"{len(weak)} IV estimates have a first-stage F below 10")

        validate_schema(results, SCHEMA_REGRESSION_RESULTS)

        output_dir = ensure_dir(paths.processed_results)
        out_path = output_dir / "iv_results.parquet"
        atomic_write_parquet(out_path, results)
        log_output_written(logger, out_path, row_count=len(results))
        atomic_write_csv(output_dir / "iv_results.csv", results)

        report_path = ensure_dir(paths.reports_tables) / "iv_results.md"
        atomic_write_text(report_path, results_markdown(
            results, "IV/2SLS: Garden City Design Instrumented by Construction Vintage",
            notes=[
                f"Endogenous regressor: {iv['endogenous']}.",
                f"Instruments vary by {iv['instrument_group']}; the national average "
                f"excludes the own {iv['exclude_group']}.",
            ],
        ))
        log_output_written(logger, report_path)

        write_metadata_sidecar(
            output_path=out_path,
            run_id=run_id,
            input_files=[in_path],
            config_files=[paths.params_yml],
            parameters={"iv": iv, "vcov": est["vcov"], "outcomes": outcomes},
            row_count=len(results),
        )

        if n_ok == 0:
            logger.error("Every IV specification failed")
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
