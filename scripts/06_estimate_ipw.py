#!/usr/bin/env python3
"""
06_estimate_ipw.py

Probit propensity score and inverse-probability-weighted battery for the
binary GCD treatments, with covariate balance diagnostics.

Pipeline Step: 06

Inputs:
    - data/processed/analysis/analysis_panel.parquet (step 03)
    - configs/params.yml (estimation.ipw)

Outputs:
    - data/processed/results/ipw_results.parquet
    - data/processed/results/ipw_results.csv
    - data/processed/results/ipw_balance.csv
    - reports/tables/ipw_results.md
    - data/processed/results/ipw_results_metadata.json

QA Checks:
    - Weighted standardized mean differences above 0.1 are reported
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
    covariate_balance, ipw_weights, propensity_scores,
    results_markdown, run_specification_grid,
)
from garden_city.schemas import validate_schema, SCHEMA_REGRESSION_RESULTS


SCRIPT_NAME = "06_estimate_ipw"

SMD_THRESHOLD = 0.1


def balance_diagnostics(panel: pd.DataFrame, ipw: dict, logger: logging.Logger) -> pd.DataFrame:
    """Raw and weighted covariate balance for every IPW treatment."""
    log_step_start(logger, "balance_diagnostics")
    tables = []
    for treatment in ipw["treatments"]:
        scores, fit = propensity_scores(panel, treatment, ipw["covariates"], ipw["categorical"])
        weights = ipw_weights(panel[treatment], scores, ipw["estimand"], tuple(ipw["trim"]))
        logger.info(
            f"{treatment}: probit pseudo-R2 {fit.prsquared:.3f}, "
            f"{int(weights.notna().sum()):,} weighted observations"
        )

        table = covariate_balance(panel, treatment, ipw["covariates"], weights)
        table.insert(0, "treatment", treatment)
        tables.append(table)

        imbalanced = table.loc[table["smd_weighted"].abs() > SMD_THRESHOLD, "covariate"].tolist()
        if imbalanced:
            logger.warning(f"{treatment}: weighted |SMD| > {SMD_THRESHOLD} for {imbalanced}")

    log_step_end(logger, "balance_diagnostics")
    return pd.concat(tables, ignore_index=True)


# =============================================================================
# MAIN
# =============================================================================

def main():
    """Main entry point for 06_estimate_ipw."""
    run_id = get_run_id()
    logger = get_logger(SCRIPT_NAME, run_id)

    logger.info("=" * 60)
    logger.info(f"Starting {SCRIPT_NAME}")
    logger.info(f"Run ID: {run_id}")
    logger.info("=" * 60)

    try:
        params = read_yaml(paths.params_yml)
        est = params["estimation"]
        ipw = est["ipw"]
        outcomes = params["analysis"]["outcomes"]

        in_path = paths.processed_analysis / "analysis_panel.parquet"
        panel = read_parquet(in_path)
        logger.info(f"Loaded analysis panel: {len(panel):,} neighborhoods")

        balance = balance_diagnostics(panel, ipw, logger)

        specs = [s for s in est["specifications"] if s["name"] in ipw["specifications"]]
        log_step_start(logger, "ipw_battery", n_specifications=len(specs),
                       treatments=ipw["treatments"])
        results = run_specification_grid(
            panel, outcomes, ipw["treatments"], specs,
            estimator="ipw", vcov=est["vcov"], logger=logger,
            covariates=ipw["covariates"],
            categorical=ipw["categorical"],
            estimand=ipw["estimand"],
            trim=tuple(ipw["trim"]),
        )
        n_ok = int((results["status"] == "ok").sum())
        log_step_end(logger, "ipw_battery", n_ok=n_ok, n_failed=len(results) - n_ok)

        validate_schema(results, SCHEMA_REGRESSION_RESULTS)

        output_dir = ensure_dir(paths.processed_results)
        out_path = output_dir / "ipw_results.parquet"
        atomic_write_parquet(out_path, results)
        log_output_written(logger, out_path, row_count=len(results))
        atomic_write_csv(output_dir / "ipw_results.csv", results)

        balance_path = atomic_write_csv(output_dir / "ipw_balance.csv", balance)
        log_output_written(logger, balance_path, row_count=len(balance))

        report_path = ensure_dir(paths.reports_tables) / "ipw_results.md"
        atomic_write_text(report_path, results_markdown(
            results, "Probit IPW: Garden City Design Treatments",
            notes=[
                f"Estimand: {ipw['estimand'].upper()}; propensity scores trimmed to "
                f"[{ipw['trim'][0]}, {ipw['trim'][1]}].",
                f"Propensity covariates: {', '.join(ipw['covariates'] + ipw['categorical'])}.",
            ],
        ))
        log_output_written(logger, report_path)

        write_metadata_sidecar(
            output_path=out_path,
            run_id=run_id,
            input_files=[in_path],
            config_files=[paths.params_yml],
            parameters={"ipw": ipw, "vcov": est["vcov"], "outcomes": outcomes},
            row_count=len(results),
        )

        if n_ok == 0:
            logger.error("Every IPW specification failed")
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
