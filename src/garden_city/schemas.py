"""
Schema validation for pipeline tables.

Every canonical output (street features, GCD index, analysis panel,
regression results) is validated on write. Schema drift is a hard failure.
"""

from dataclasses import dataclass

import pandas as pd


class SchemaValidationError(Exception):
    """Raised when data does not conform to expected schema."""
    pass


@dataclass
class ColumnSpec:
    """Specification for a single column."""
    name: str
    dtype: str  # "object", "float64", "int64", "geometry"
    required: bool = True
    nullable: bool = False
    description: str = ""


@dataclass
class TableSchema:
    """Schema definition for a table."""
    name: str
    description: str
    columns: list[ColumnSpec]

    def required_columns(self) -> list[str]:
        return [c.name for c in self.columns if c.required]

    def all_columns(self) -> list[str]:
        return [c.name for c in self.columns]


# =============================================================================
# Schema definitions
# =============================================================================

SCHEMA_STREET_FEATURES = TableSchema(
    name="street_features",
    description="Per-neighborhood street geometry summary statistics",
    columns=[
        ColumnSpec("ft_blc_state", "object", description="Neighborhood identifier"),
        ColumnSpec("state", "object", description="Two-letter state code"),
        ColumnSpec("n_segments", "int64", description="Street segments in the neighborhood"),
        ColumnSpec("street_length_m", "float64", description="Total street length (m)"),
        ColumnSpec("curvature", "float64", nullable=True,
                   description="Percentile of per-segment curvature"),
        ColumnSpec("n_nodes", "int64", description="Street nodes in the neighborhood"),
        ColumnSpec("n_intersections", "int64", description="Nodes with degree >= 3"),
        ColumnSpec("mean_intersection_degree", "float64", nullable=True,
                   description="Mean degree over intersections"),
        ColumnSpec("share_3way", "float64", nullable=True,
                   description="Three-way intersections / intersections"),
        ColumnSpec("share_angle90", "float64", nullable=True,
                   description="Block angles near 90 degrees / angles at intersections"),
        ColumnSpec("share_outstreet", "float64", nullable=True,
                   description="Dead ends / (dead ends + intersections)"),
    ]
)

SCHEMA_NEIGHBORHOODS = TableSchema(
    name="neighborhoods",
    description="Assembled neighborhood geography and street features",
    columns=[
        ColumnSpec("ft_blc_state", "object", description="Neighborhood identifier"),
        ColumnSpec("geoid", "object", description="12-digit block group GEOID"),
        ColumnSpec("state", "object"),
        ColumnSpec("state_fips", "object"),
        ColumnSpec("county_fips", "object"),
        ColumnSpec("tract_id", "object"),
        ColumnSpec("region", "object", nullable=True),
        ColumnSpec("lat", "float64"),
        ColumnSpec("lon", "float64"),
        ColumnSpec("dist_city_center_km", "float64", nullable=True),
        ColumnSpec("vintage_decade", "float64", required=False, nullable=True),
    ]
)

SCHEMA_GCD_INDEX = TableSchema(
    name="gcd_index",
    description="Garden City Design index and treatment indicators",
    columns=[
        ColumnSpec("ft_blc_state", "object", description="Neighborhood identifier"),
        ColumnSpec("z_curvature", "float64", nullable=True),
        ColumnSpec("z_share_3way", "float64", nullable=True),
        ColumnSpec("z_share_angle90", "float64", nullable=True),
        ColumnSpec("z_share_outstreet", "float64", nullable=True),
        ColumnSpec("garden_metric_osm", "float64", nullable=True,
                   description="Mean-of-components GCD, rescaled to [0,1]"),
        ColumnSpec("garden_metric_pca", "float64", nullable=True,
                   description="First principal component GCD, rescaled to [0,1]"),
        ColumnSpec("gcd_top20", "float64", nullable=True),
        ColumnSpec("gcd_top33", "float64", nullable=True),
        ColumnSpec("gcd_pca_top20", "float64", nullable=True),
    ]
)

SCHEMA_ANALYSIS_PANEL = TableSchema(
    name="analysis_panel",
    description="One row per neighborhood with index, controls and outcomes",
    columns=[
        ColumnSpec("ft_blc_state", "object"),
        ColumnSpec("garden_metric_osm", "float64", nullable=True),
        ColumnSpec("county_fips", "object"),
        ColumnSpec("state", "object"),
        ColumnSpec("metro", "object", required=False, nullable=True),
        ColumnSpec("ecozone", "object", required=False, nullable=True),
        ColumnSpec("region", "object", nullable=True),
    ]
)

SCHEMA_REGRESSION_RESULTS = TableSchema(
    name="regression_results",
    description="Tidy regression results, one row per estimate",
    columns=[
        ColumnSpec("estimator", "object", description="ols | iv | ipw"),
        ColumnSpec("specification", "object"),
        ColumnSpec("outcome", "object"),
        ColumnSpec("treatment", "object"),
        ColumnSpec("coefficient", "float64", nullable=True),
        ColumnSpec("std_error", "float64", nullable=True),
        ColumnSpec("p_value", "float64", nullable=True),
        ColumnSpec("ci_lower", "float64", nullable=True),
        ColumnSpec("ci_upper", "float64", nullable=True),
        ColumnSpec("n_obs", "float64", nullable=True),
        ColumnSpec("r_squared", "float64", nullable=True),
        ColumnSpec("status", "object", description="ok | failed"),
        ColumnSpec("error", "object", nullable=True),
    ]
)

SCHEMA_REGISTRY: dict[str, TableSchema] = {
    "street_features": SCHEMA_STREET_FEATURES,
    "neighborhoods": SCHEMA_NEIGHBORHOODS,
    "gcd_index": SCHEMA_GCD_INDEX,
    "analysis_panel": SCHEMA_ANALYSIS_PANEL,
    "regression_results": SCHEMA_REGRESSION_RESULTS,
}


# =============================================================================
# Validation functions
# =============================================================================

_COMPATIBLE_DTYPES = {
    "object": ("object", "string", "str", "category"),
    "int64": ("int64", "int32", "Int64", "Int32"),
    "float64": ("float64", "float32", "Float64", "int64", "int32", "Int64"),
}


def get_schema(name: str) -> TableSchema:
    """
    Get a schema by name from the registry.

    Raises:
        ValueError: If schema not found.
    """
    if name not in SCHEMA_REGISTRY:
        raise ValueError(f"Unknown schema: {name}. Available: {list(SCHEMA_REGISTRY.keys())}")
    return SCHEMA_REGISTRY[name]


def validate_schema(
    df: pd.DataFrame,
    schema: TableSchema | str,
    strict: bool = False,
) -> list[str]:
    """
    Validate a DataFrame against a schema.

    Args:
        df: DataFrame to validate.
        schema: TableSchema object or schema name from registry.
        strict: If True, fail on extra columns not in schema.

    Returns:
        Empty list when the frame is valid.

    Raises:
        SchemaValidationError: If validation fails.
    """
    if isinstance(schema, str):
        schema = get_schema(schema)

    errors = []

    for col in schema.columns:
        if col.required and col.name not in df.columns:
            errors.append(f"Missing required column: {col.name}")

    if strict:
        extra_cols = set(df.columns) - set(schema.all_columns())
        if extra_cols:
            errors.append(f"Unexpected columns: {sorted(extra_cols)}")

    for col in schema.columns:
        if col.name not in df.columns:
            continue

        series = df[col.name]

        if not col.nullable and series.isna().any():
            errors.append(
                f"Column '{col.name}' has {series.isna().sum()} null values but is not nullable"
            )

        if col.dtype == "geometry":
            continue

        actual = str(series.dtype)
        allowed = _COMPATIBLE_DTYPES.get(col.dtype, (col.dtype,))
        if actual not in allowed:
            errors.append(f"Column '{col.name}' has dtype '{actual}', expected '{col.dtype}'")

    if errors:
        raise SchemaValidationError(
            f"Schema validation failed for '{schema.name}':\n"
            + "\n".join(f"  - {e}" for e in errors)
        )

    return errors


def register_schema(schema: TableSchema) -> None:
    SCHEMA_REGISTRY[schema.name] = schema
