"""
Quality assurance checks for data processing.

This module provides QA checks for:
- CRS presence
- Geographic bounds (contiguous US)
- Unique neighborhood identifiers
- Empty geometries
- Data completeness
- Index ranges
- Merge match rates
"""

import logging
from dataclasses import dataclass
from typing import Any

import numpy as np
import pandas as pd

from garden_city.logging_utils import log_qa_check


# Contiguous US bounding box (WGS84), slightly padded
CONUS_BOUNDS = {
    "min_lon": -125.0,
    "max_lon": -66.5,
    "min_lat": 24.3,
    "max_lat": 49.5,
}

EXPECTED_CRS_WGS84 = "EPSG:4326"


@dataclass
class QAResult:
    """Result of a QA check."""
    check_name: str
    passed: bool
    message: str
    details: dict[str, Any] | None = None

    def __bool__(self) -> bool:
        return self.passed


def _report(result: QAResult, logger: logging.Logger | None) -> QAResult:
    if logger:
        log_qa_check(logger, result.check_name, result.passed, result.message,
                     **(result.details or {}))
    return result


def check_crs(gdf: pd.DataFrame, logger: logging.Logger | None = None) -> QAResult:
    """Check that a GeoDataFrame has a CRS defined."""
    import geopandas as gpd

    if not isinstance(gdf, gpd.GeoDataFrame):
        result = QAResult("crs_defined", False, "Input is not a GeoDataFrame",
                          {"type": type(gdf).__name__})
    elif gdf.crs is None:
        result = QAResult("crs_defined", False, "GeoDataFrame has no CRS defined")
    else:
        result = QAResult("crs_defined", True, f"CRS is defined: {gdf.crs}",
                          {"crs": str(gdf.crs)})
    return _report(result, logger)


def check_bounds_latlon(
    df: pd.DataFrame,
    lat_col: str = "lat",
    lon_col: str = "lon",
    bounds: dict | None = None,
    logger: logging.Logger | None = None,
) -> QAResult:
    """
    Check that neighborhood centroids fall within the contiguous US.

    Missing coordinates are ignored here; completeness is checked separately.
    """
    bounds = bounds or CONUS_BOUNDS
    lat = df[lat_col].dropna()
    lon = df[lon_col].dropna()

    outside = int(((lat < bounds["min_lat"]) | (lat > bounds["max_lat"])).sum()
                  + ((lon < bounds["min_lon"]) | (lon > bounds["max_lon"])).sum())

    if outside == 0:
        result = QAResult("bounds_conus", True, "All centroids within CONUS bounds",
                          {"n": len(lat)})
    else:
        result = QAResult("bounds_conus", False,
                          f"{outside} coordinates outside CONUS bounds",
                          {"n": len(lat), "outside": outside, "expected_bounds": bounds})
    return _report(result, logger)


def check_unique_ids(
    df: pd.DataFrame,
    id_column: str,
    logger: logging.Logger | None = None,
) -> QAResult:
    """Check that the ID column has unique values (one row per neighborhood)."""
    check_name = "unique_ids"

    if id_column not in df.columns:
        result = QAResult(check_name, False, f"ID column '{id_column}' not found",
                          {"columns": list(df.columns)})
    else:
        total = len(df)
        unique = df[id_column].nunique()
        if total == unique:
            result = QAResult(check_name, True, f"All {total} IDs are unique",
                              {"total": total, "column": id_column})
        else:
            counts = df[id_column].value_counts()
            result = QAResult(
                check_name, False, f"Found {total - unique} duplicate IDs",
                {
                    "total": total,
                    "unique": unique,
                    "sample_duplicates": counts[counts > 1].head(5).to_dict(),
                    "column": id_column,
                },
            )
    return _report(result, logger)


def check_no_empty_geoms(gdf: pd.DataFrame, logger: logging.Logger | None = None) -> QAResult:
    """Check that there are no empty or null geometries."""
    empty_count = int(gdf.geometry.is_empty.sum())
    null_count = int(gdf.geometry.isna().sum())

    if empty_count == 0 and null_count == 0:
        result = QAResult("no_empty_geoms", True, f"All {len(gdf)} geometries are non-empty")
    else:
        result = QAResult("no_empty_geoms", False,
                          f"Found {empty_count} empty and {null_count} null geometries",
                          {"total": len(gdf), "empty": empty_count, "null": null_count})
    return _report(result, logger)


def check_no_nulls(
    df: pd.DataFrame,
    columns: list[str],
    logger: logging.Logger | None = None,
) -> QAResult:
    """Check that specified columns have no null values."""
    check_name = "no_nulls"

    missing_cols = [c for c in columns if c not in df.columns]
    if missing_cols:
        result = QAResult(check_name, False, f"Columns not found: {missing_cols}",
                          {"missing_columns": missing_cols})
    else:
        null_counts = {c: int(df[c].isna().sum()) for c in columns}
        with_nulls = {k: v for k, v in null_counts.items() if v > 0}
        if not with_nulls:
            result = QAResult(check_name, True,
                              f"No null values in {len(columns)} checked columns")
        else:
            result = QAResult(check_name, False,
                              f"Found {sum(with_nulls.values())} null values",
                              {"columns_with_nulls": with_nulls})
    return _report(result, logger)


def check_unit_interval(
    df: pd.DataFrame,
    column: str,
    logger: logging.Logger | None = None,
) -> QAResult:
    """Check that a rescaled index lies in [0, 1] wherever it is defined."""
    values = df[column].dropna().to_numpy(dtype=float)
    tol = 1e-9
    outside = int(((values < -tol) | (values > 1 + tol)).sum())

    if len(values) == 0:
        result = QAResult(f"unit_interval_{column}", False, f"{column} is entirely missing")
    elif outside == 0:
        result = QAResult(f"unit_interval_{column}", True,
                          f"{column} within [0, 1] for {len(values)} rows",
                          {"min": float(np.min(values)), "max": float(np.max(values))})
    else:
        result = QAResult(f"unit_interval_{column}", False,
                          f"{outside} values of {column} outside [0, 1]",
                          {"outside": outside})
    return _report(result, logger)


def check_match_rate(
    name: str,
    left_rows: int,
    matched_rows: int,
    min_rate: float = 0.5,
    logger: logging.Logger | None = None,
) -> QAResult:
    """Check that a merge matched at least `min_rate` of the left table."""
    rate = matched_rows / left_rows if left_rows else 0.0
    passed = rate >= min_rate
    result = QAResult(f"match_rate_{name}", passed,
                      f"{rate:.1%} of rows matched (minimum {min_rate:.0%})",
                      {"left_rows": left_rows, "matched_rows": matched_rows})
    return _report(result, logger)


def raise_on_failures(results: list[QAResult]) -> None:
    """
    Raise if any QA result failed.

    Raises:
        ValueError: Listing every failed check.
    """
    failed = [r for r in results if not r.passed]
    if failed:
        messages = [f"{r.check_name}: {r.message}" for r in failed]
        raise ValueError("QA checks failed:\n" + "\n".join(messages))
