"""
Dataset assembly: per-state concatenation and cardinality-checked merges.

Every join that adds columns to the neighborhood panel goes through
`merge_validated`, which refuses to duplicate rows and logs how many
neighborhoods found a match. Sources are attached at the level they are
published at (block group, tract, county) through the keys derived in
`garden_city.geography`.
"""

import logging
from pathlib import Path

import pandas as pd

from garden_city.geography import normalize_geoid, vintage_decade
from garden_city.io_utils import read_table
from garden_city.logging_utils import log_merge, log_step_start, log_step_end


NEIGHBORHOOD_ID = "ft_blc_state"

# Merge level -> (panel key column, zero-padded key width)
LEVEL_KEYS = {
    "neighborhood": (NEIGHBORHOOD_ID, None),
    "block_group": ("geoid", 12),
    "tract": ("tract_id", 11),
    "county": ("county_fips", 5),
}


def read_state_files(
    directory: Path | str,
    pattern: str = "*_features.parquet",
    logger: logging.Logger | None = None,
) -> pd.DataFrame:
    """
    Concatenate per-state tables found in `directory`.

    The state code is the file name prefix before the first underscore
    ("CA_features.parquet" -> "CA") and fills the `state` column where the
    file does not carry one.

    Raises:
        FileNotFoundError: If no file matches.
    """
    directory = Path(directory)
    files = sorted(directory.glob(pattern))
    if not files:
        raise FileNotFoundError(f"No files matching {pattern} in {directory}")

    frames = []
    for f in files:
        df = read_table(f)
        state = f.stem.split("_")[0].upper()
        if "state" not in df.columns:
            df.insert(min(1, len(df.columns)), "state", state)
        else:
            df["state"] = df["state"].fillna(state)
        frames.append(df)

    non_empty = [f for f in frames if not f.empty]
    combined = pd.concat(non_empty or frames, ignore_index=True)

    if logger:
        logger.info(f"Read {len(files)} state files ({len(combined):,} rows) from {directory}")
    return combined


def coerce_numeric(df: pd.DataFrame, columns: list[str]) -> pd.DataFrame:
    """Force columns to float; unparseable values become NaN."""
    out = df.copy()
    for col in columns:
        out[col] = pd.to_numeric(out[col], errors="coerce").astype(float)
    return out


def coerce_categorical(df: pd.DataFrame, columns: list[str]) -> pd.DataFrame:
    """Categorical codes as strings ("12345.0" -> "12345"), missing kept missing."""
    out = df.copy()
    for col in columns:
        s = out[col]
        text = s.astype(str).str.strip().str.replace(r"\.0$", "", regex=True)
        out[col] = text.where(s.notna() & (text != ""))
    return out


def dedupe_keep_last(df: pd.DataFrame, key: str | list[str]) -> pd.DataFrame:
    """Keep the last row for each key, preserving the original row order."""
    return df.drop_duplicates(subset=key, keep="last")


def merge_validated(
    left: pd.DataFrame,
    right: pd.DataFrame,
    on: str | list[str],
    validate: str = "m:1",
    how: str = "left",
    name: str | None = None,
    logger: logging.Logger | None = None,
) -> tuple[pd.DataFrame, int]:
    """
    Join with pandas cardinality validation and match counting.

    Args:
        left: Panel being extended.
        right: Source table.
        on: Join key(s).
        validate: "1:1" or "m:1".
        how: Join type.
        name: Label used in the merge log event.
        logger: Optional logger.

    Returns:
        (merged frame, number of left rows that found a match)

    Raises:
        pandas.errors.MergeError: If the cardinality check fails.
        ValueError: If the join would overwrite existing non-key columns.
    """
    keys = [on] if isinstance(on, str) else list(on)
    overlap = (set(left.columns) & set(right.columns)) - set(keys)
    if overlap:
        raise ValueError(f"Merge of {name or 'source'} would duplicate columns: {sorted(overlap)}")

    merged = left.merge(right, on=keys, how=how, validate=validate, indicator="_merge")
    matched = int((merged["_merge"] == "both").sum())
    merged = merged.drop(columns="_merge")

    if logger:
        log_merge(logger, name or "+".join(keys), len(left), matched, len(merged))

    return merged, matched


def merge_source(
    panel: pd.DataFrame,
    source_df: pd.DataFrame,
    level: str,
    key_column: str,
    columns: list[str],
    numeric: bool = True,
    name: str | None = None,
    logger: logging.Logger | None = None,
) -> tuple[pd.DataFrame, int]:
    """
    Attach `columns` of a source table to the panel at the given level.

    The source key is normalized to the panel's key format, rows missing the
    key are dropped, and repeated keys keep their last row. Values are
    coerced to numbers unless `numeric` is False, in which case they are kept
    as string codes.

    Raises:
        ValueError: For an unknown level.
        KeyError: If the key or a value column is missing from the source.
    """
    if level not in LEVEL_KEYS:
        raise ValueError(f"Unknown merge level '{level}'. Expected one of {list(LEVEL_KEYS)}")

    missing = [c for c in [key_column] + list(columns) if c not in source_df.columns]
    if missing:
        raise KeyError(f"Source {name or ''} is missing columns: {missing}")

    panel_key, width = LEVEL_KEYS[level]
    src = source_df[[key_column] + list(columns)].dropna(subset=[key_column])

    if level == "block_group":
        keys = normalize_geoid(src[key_column])
    else:
        keys = src[key_column].astype(str).str.strip().str.replace(r"\.0$", "", regex=True)
        if width:
            keys = keys.str.zfill(width)

    src = src.drop(columns=key_column).assign(**{panel_key: keys.to_numpy()})
    src = dedupe_keep_last(src, panel_key)
    src = coerce_numeric(src, columns) if numeric else coerce_categorical(src, columns)

    return merge_validated(panel, src[[panel_key] + list(columns)], on=panel_key,
                           validate="m:1", how="left", name=name, logger=logger)


def merge_configured_sources(
    panel: pd.DataFrame,
    sources: dict[str, tuple[pd.DataFrame, dict]],
    logger: logging.Logger | None = None,
) -> tuple[pd.DataFrame, dict[str, int]]:
    """
    Merge a sequence of configured sources in order.

    Args:
        panel: Neighborhood panel with geo keys.
        sources: name -> (source table, sources.yml entry with level,
            key_column, columns and optional numeric flag).

    Returns:
        (merged panel, name -> matched row count)
    """
    matches = {}
    for name, (source_df, spec) in sources.items():
        panel, matched = merge_source(
            panel, source_df,
            level=spec["level"],
            key_column=spec["key_column"],
            columns=spec["columns"],
            numeric=spec.get("numeric", True),
            name=name,
            logger=logger,
        )
        matches[name] = matched
    return panel, matches


def assemble_neighborhoods(
    geography_df: pd.DataFrame,
    features_df: pd.DataFrame,
    geography_sources: dict[str, tuple[pd.DataFrame, dict]] | None = None,
    vintage_floor: int = 1930,
    logger: logging.Logger | None = None,
) -> tuple[pd.DataFrame, dict[str, int]]:
    """
    One row per neighborhood: geography keys, street features, geography
    controls and construction vintage.

    Neighborhoods without street features are kept with missing components.
    """
    if logger:
        log_step_start(logger, "assemble_neighborhoods", n_neighborhoods=len(geography_df))

    panel = geography_df.dropna(subset=[NEIGHBORHOOD_ID])
    panel = dedupe_keep_last(panel, NEIGHBORHOOD_ID)

    features = features_df.drop(columns=[c for c in ["state"] if c in features_df.columns])
    panel, n_features = merge_validated(panel, features, on=NEIGHBORHOOD_ID,
                                        validate="1:1", name="street_features", logger=logger)
    matches = {"street_features": n_features}

    panel, source_matches = merge_configured_sources(panel, geography_sources or {}, logger)
    matches.update(source_matches)

    if "median_year_built" in panel.columns:
        panel["vintage_decade"] = vintage_decade(panel["median_year_built"], floor=vintage_floor)

    if logger:
        log_step_end(logger, "assemble_neighborhoods", n_neighborhoods=len(panel))

    return panel.reset_index(drop=True), matches


def build_analysis_dataset(
    index_df: pd.DataFrame,
    neighborhoods_df: pd.DataFrame,
    outcome_sources: dict[str, tuple[pd.DataFrame, dict]] | None = None,
    logger: logging.Logger | None = None,
) -> tuple[pd.DataFrame, dict[str, int]]:
    """
    Analysis panel: neighborhoods joined 1:1 to the GCD index, then outcomes.

    Returns:
        (panel with one row per neighborhood, source -> matched row count)
    """
    if logger:
        log_step_start(logger, "build_analysis_dataset", n_neighborhoods=len(neighborhoods_df))

    index_cols = [c for c in index_df.columns
                  if c == NEIGHBORHOOD_ID or c not in neighborhoods_df.columns]
    panel, n_index = merge_validated(neighborhoods_df, index_df[index_cols],
                                     on=NEIGHBORHOOD_ID, validate="1:1",
                                     name="gcd_index", logger=logger)
    matches = {"gcd_index": n_index}

    panel, source_matches = merge_configured_sources(panel, outcome_sources or {}, logger)
    matches.update(source_matches)

    if logger:
        log_step_end(logger, "build_analysis_dataset", n_neighborhoods=len(panel))

    return panel.reset_index(drop=True), matches
