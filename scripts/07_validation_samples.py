#!/usr/bin/env python3
"""
07_validation_samples.py

Build the validation samples of documented neighborhood designs and compare
their GCD with all other neighborhoods.

Pipeline Step: 07

Samples:
    - Wheeler (2008) street-pattern typologies (last record per
      neighborhood, typologies with more than `wheeler_min_count` members)
    - Talen (2022) garden suburbs (garden village and resort types), located
      in neighborhoods by spatial join
    - USHC historical town-planning projects flagged as georeferenced,
      located by polygon centroid

All samples are restricted to neighborhoods with a defined GCD.

Inputs:
    - data/processed/index/garden_measure_US.parquet (step 02)
    - data/raw/footprints_blockgroup_msa.shp
    - validation files listed in configs/sources.yml

Outputs:
    - data/processed/validation/validation_samples.csv (map data)
    - data/processed/validation/validation_by_group.csv
    - data/processed/validation/validation_by_source.csv
    - reports/tables/validation_summary.md
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import logging

import geopandas as gpd
import pandas as pd

from garden_city.paths import paths, ensure_dir, resolve_source_path
from garden_city.logging_utils import (
    get_logger, log_step_start, log_step_end, log_output_written, get_run_id
)
from garden_city.io_utils import (
    atomic_write_csv, atomic_write_text, read_parquet, read_table, read_vector, read_yaml
)
from garden_city.hashing import write_metadata_sidecar
from garden_city.geography import make_neighborhood_id
from garden_city.validation import (
    compare_index_by_group, filter_georeferenced, filter_talen,
    locate_in_neighborhoods, prepare_wheeler, restrict_to_valid,
)


SCRIPT_NAME = "07_validation_samples"

SAMPLE_COLUMNS = ["ft_blc_state", "source", "group"]


def load_neighborhood_polygons(sources: dict) -> gpd.GeoDataFrame:
    cfg = sources["neighborhoods"]
    hoods = read_vector(resolve_source_path(cfg["path"]))
    hoods["ft_blc_state"] = make_neighborhood_id(hoods[cfg["geoid_column"]],
                                                 hoods[cfg["state_column"]])
    return hoods[["ft_blc_state", "geometry"]]


def wheeler_sample(sources: dict, params: dict, id_column: str,
                   logger: logging.Logger) -> pd.DataFrame:
    raw = read_table(resolve_source_path(sources["validation"]["wheeler"]))
    wheeler = prepare_wheeler(raw, id_col=id_column, type_col="type",
                              min_count=params["validation"]["wheeler_min_count"])
    logger.info(f"Wheeler: {len(wheeler):,} neighborhoods in "
                f"{wheeler['type'].nunique()} typologies")
    return pd.DataFrame({
        "ft_blc_state": wheeler[id_column].astype(str),
        "source": "Wheeler (2008)",
        "group": wheeler["type"].astype(str),
    })


def talen_sample(sources: dict, params: dict, hoods: gpd.GeoDataFrame,
                 logger: logging.Logger) -> pd.DataFrame:
    talen = read_vector(resolve_source_path(sources["validation"]["talen"]))
    talen = filter_talen(talen, params["validation"]["talen_types"])
    located = locate_in_neighborhoods(talen, hoods, "ft_blc_state")
    logger.info(f"Talen: {len(talen):,} garden suburbs, {len(located):,} inside neighborhoods")
    return pd.DataFrame({
        "ft_blc_state": located["ft_blc_state"],
        "source": "Talen (2022)",
        "group": located["TYPE"].astype(str),
    })


def ushc_sample(sources: dict, hoods: gpd.GeoDataFrame, logger: logging.Logger) -> pd.DataFrame:
    ushc = read_vector(resolve_source_path(sources["validation"]["ushc"]))
    table = read_table(resolve_source_path(sources["validation"]["ushc_table"]))
    georef = filter_georeferenced(ushc, table)
    located = locate_in_neighborhoods(georef, hoods, "ft_blc_state")
    logger.info(f"USHC: {len(georef):,} georeferenced projects, "
                f"{len(located):,} inside neighborhoods")
    return pd.DataFrame({
        "ft_blc_state": located["ft_blc_state"],
        "source": "USHC",
        "group": "USHC",
    })


def write_summary(by_source: pd.DataFrame, by_group: pd.DataFrame, path: Path) -> None:
    lines = [
        "# Validation Samples: GCD of Documented Neighborhood Designs",
        "",
        "Welch t-tests compare each group with every other neighborhood with a defined GCD.",
        "",
    ]
    for title, table, key in (("By source", by_source, "source"), ("By group", by_group, "group")):
        lines.extend([
            f"## {title}",
            "",
            "| Group | N | Mean GCD | Median GCD | Mean (others) | t | p |",
            "|-------|---|----------|------------|---------------|---|---|",
        ])
        for _, r in table.iterrows():
            lines.append(
                f"| {r[key]} | {r['n']:,} | {r['mean']:.3f} | {r['median']:.3f} | "
                f"{r['mean_other']:.3f} | {r['t_stat']:.2f} | {r['p_value']:.3g} |"
            )
        lines.append("")
    atomic_write_text(path, "\n".join(lines))


# =============================================================================
# MAIN
# =============================================================================

def main():
    """Main entry point for 07_validation_samples."""
    run_id = get_run_id()
    logger = get_logger(SCRIPT_NAME, run_id)

    logger.info("=" * 60)
    logger.info(f"Starting {SCRIPT_NAME}")
    logger.info(f"Run ID: {run_id}")
    logger.info("=" * 60)

    try:
        params = read_yaml(paths.params_yml)
        sources = read_yaml(paths.sources_yml)

        measure_path = paths.processed_index / "garden_measure_US.parquet"
        measure = read_parquet(measure_path)
        valid_ids = measure.loc[measure["garden_metric_osm"].notna(), "ft_blc_state"]
        logger.info(f"Neighborhoods with valid GCD: {len(valid_ids):,}")

        hoods = load_neighborhood_polygons(sources)

        log_step_start(logger, "build_samples")
        samples = pd.concat([
            wheeler_sample(sources, params, sources["neighborhoods"]["id_column"], logger),
            talen_sample(sources, params, hoods, logger),
            ushc_sample(sources, hoods, logger),
        ], ignore_index=True)[SAMPLE_COLUMNS]
        samples = restrict_to_valid(samples, "ft_blc_state", valid_ids)
        samples = samples.merge(
            measure[["ft_blc_state", "lat", "lon", "garden_metric_osm"]],
            on="ft_blc_state", how="left", validate="m:1",
        )
        log_step_end(logger, "build_samples", n_samples=len(samples),
                     by_source=samples["source"].value_counts().to_dict())

        by_source = compare_index_by_group(samples, measure, "source")
        by_group = compare_index_by_group(samples, measure, "group")

        output_dir = ensure_dir(paths.processed_validation)
        samples_path = atomic_write_csv(output_dir / "validation_samples.csv", samples)
        log_output_written(logger, samples_path, row_count=len(samples))
        atomic_write_csv(output_dir / "validation_by_source.csv", by_source)
        atomic_write_csv(output_dir / "validation_by_group.csv", by_group)

        report_path = ensure_dir(paths.reports_tables) / "validation_summary.md"
        write_summary(by_source, by_group, report_path)
        log_output_written(logger, report_path)

        write_metadata_sidecar(
            output_path=samples_path,
            run_id=run_id,
            input_files=[measure_path] + [
                resolve_source_path(p) for p in sources["validation"].values()
            ],
            config_files=[paths.params_yml, paths.sources_yml],
            parameters=params["validation"],
            row_count=len(samples),
        )

        logger.info("=" * 60)
        logger.info(f"{SCRIPT_NAME} completed successfully")
        for _, r in by_source.iterrows():
            logger.info(f"   {r['source']}: n={r['n']:,}, mean GCD {r['mean']:.3f} "
                        f"vs {r['mean_other']:.3f}")
        logger.info("=" * 60)

        return 0

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        logger.error("Run step 02 first and place the validation files under data/raw/.")
        return 1

    except Exception as e:
        logger.exception(f"Pipeline failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
