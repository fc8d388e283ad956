"""
Validation samples of known neighborhood designs.

Three external sources identify neighborhoods whose layout is documented:
Wheeler (2008) street-pattern typologies, Talen (2022) garden suburbs and
the USHC historical town-planning projects. Each is restricted to
neighborhoods with a defined GCD, and the index distribution of each group
is compared with all other neighborhoods.
"""

import re

import geopandas as gpd
import numpy as np
import pandas as pd
from scipy import stats

from garden_city.street_features import assign_to_neighborhoods


TALEN_GARDEN_TYPES = [
    "Garden Village (Automobile)",
    "Garden Village (Railroad)",
    "Garden Village (Streetcar)",
    "Resort Garden Suburb",
]

_USHC_ID = re.compile(r"ID([0-9]+)_.*")


def prepare_wheeler(
    df: pd.DataFrame,
    id_col: str = "ft_bl__",
    type_col: str = "type",
    min_count: int = 100,
) -> pd.DataFrame:
    """
    Last observation per neighborhood, restricted to typologies with more
    than `min_count` neighborhoods.
    """
    last = df.drop_duplicates(subset=id_col, keep="last")
    last = last[last[type_col].notna()]
    counts = last[type_col].value_counts()
    keep = counts[counts > min_count].index
    return last[last[type_col].isin(keep)].reset_index(drop=True)


def filter_talen(
    gdf: gpd.GeoDataFrame,
    types: list[str] | None = None,
    type_col: str = "TYPE",
) -> gpd.GeoDataFrame:
    """Keep garden-suburb types only."""
    types = types or TALEN_GARDEN_TYPES
    return gdf[gdf[type_col].isin(types)].reset_index(drop=True)


def ushc_id_from_name(name) -> int | None:
    """Numeric project id from a boundary file name ("ID01_boundary.shp" -> 1)."""
    if name is None or (isinstance(name, float) and np.isnan(name)):
        return None
    match = _USHC_ID.fullmatch(str(name))
    return int(match.group(1)) if match else None


def filter_georeferenced(
    ushc: pd.DataFrame,
    table: pd.DataFrame,
    name_col: str = "shps",
    flag_col: str = "georefenced_d",
    table_id_col: str = "id_neigh",
) -> pd.DataFrame:
    """
    USHC projects flagged as georeferenced in the town-planning table.

    Adds `id_extracted` parsed from the boundary file name.
    """
    out = ushc.copy()
    out["id_extracted"] = out[name_col].map(ushc_id_from_name)
    flagged = pd.to_numeric(table[flag_col], errors="coerce") == 1
    valid_ids = set(pd.to_numeric(table.loc[flagged, table_id_col], errors="coerce").dropna())
    return out[out["id_extracted"].isin(valid_ids)].reset_index(drop=True)


def restrict_to_valid(df: pd.DataFrame, id_col: str, valid_ids) -> pd.DataFrame:
    return df[df[id_col].isin(set(valid_ids))].reset_index(drop=True)


def locate_in_neighborhoods(
    gdf: gpd.GeoDataFrame,
    neighborhoods: gpd.GeoDataFrame,
    id_col: str = "ft_blc_state",
    projected_crs: str = "EPSG:5070",
) -> gpd.GeoDataFrame:
    """
    Tag each feature with the neighborhood containing its centroid; features
    outside every neighborhood are dropped.
    """
    projected = gdf.to_crs(projected_crs)
    out = gdf.copy()
    out[id_col] = assign_to_neighborhoods(projected.geometry.centroid,
                                          neighborhoods.to_crs(projected_crs), id_col)
    return out[out[id_col].notna()].reset_index(drop=True)


def compare_index_by_group(
    samples: pd.DataFrame,
    index_df: pd.DataFrame,
    group_col: str,
    index_col: str = "garden_metric_osm",
    id_col: str = "ft_blc_state",
) -> pd.DataFrame:
    """
    GCD by validation group against every other neighborhood.

    Args:
        samples: Validation neighborhoods with id_col and group_col.
        index_df: All neighborhoods with id_col and index_col.

    Returns:
        One row per group: n, mean, median, mean of the other neighborhoods,
        difference and Welch t-test statistic / p-value.
    """
    index = index_df[[id_col, index_col]].dropna()
    tagged = samples[[id_col, group_col]].merge(index, on=id_col, how="inner")

    rows = []
    for group, members in tagged.groupby(group_col, sort=True):
        values = members[index_col].to_numpy(dtype=float)
        others = index.loc[~index[id_col].isin(members[id_col]), index_col].to_numpy(dtype=float)

        if len(values) > 1 and len(others) > 1:
            t_stat, p_value = stats.ttest_ind(values, others, equal_var=False)
        else:
            t_stat, p_value = np.nan, np.nan

        rows.append({
            group_col: group,
            "n": len(values),
            "mean": float(np.mean(values)),
            "median": float(np.median(values)),
            "mean_other": float(np.mean(others)) if len(others) else np.nan,
            "difference": float(np.mean(values) - np.mean(others)) if len(others) else np.nan,
            "t_stat": float(t_stat),
            "p_value": float(p_value),
        })

    return pd.DataFrame(rows)
