"""
Garden City Design (GCD) index construction.

Four street components are winsorized, z-scored and sign-oriented so that a
higher value means a more garden-city-like layout (curvy streets, three-way
intersections, few right-angle blocks, many cul-de-sacs). The main index is
the mean of the oriented components, the alternative is their first
principal component; both are rescaled to [0, 1]. Treatment indicators are
top-quantile cuts of the rescaled indices.

The index is only defined for neighborhoods where all four components are
observed, and standardization uses that complete-case sample.
"""

import logging

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA

from garden_city.logging_utils import log_step_start, log_step_end


DEFAULT_COMPONENTS = {
    "curvature": 1,
    "share_3way": 1,
    "share_angle90": -1,
    "share_outstreet": 1,
}

DEFAULT_PARAMS = {
    "winsorize": {"lower": 0.01, "upper": 0.99},
    "components": DEFAULT_COMPONENTS,
    "treatment_quantiles": {"gcd_top20": 0.80, "gcd_top33": 0.67},
    "pca_treatment_quantile": 0.80,
}

MAP_BREAKS = [0.0, 0.2, 0.3, 0.4, 0.5, 0.7, 1.0]


def winsorize(series: pd.Series, lower: float = 0.01, upper: float = 0.99) -> pd.Series:
    """Clip a series at its `lower` and `upper` sample quantiles (NaN preserved)."""
    if series.notna().sum() == 0:
        return series.astype(float)
    lo, hi = series.quantile([lower, upper])
    return series.clip(lower=lo, upper=hi).astype(float)


def standardize(series: pd.Series, sign: int = 1) -> pd.Series:
    """
    Z-score a series and multiply by `sign`.

    A constant series has no spread and standardizes to 0.

    Raises:
        ValueError: If sign is not +1 or -1.
    """
    if sign not in (1, -1):
        raise ValueError(f"Component sign must be +1 or -1, got {sign}")

    sd = series.std(ddof=1)
    if not np.isfinite(sd) or sd == 0:
        return pd.Series(np.where(series.notna(), 0.0, np.nan), index=series.index)
    return sign * (series - series.mean()) / sd


def rescale_unit(series: pd.Series) -> pd.Series:
    """Min-max rescale to [0, 1]; a constant series maps to 0."""
    lo, hi = series.min(), series.max()
    if not np.isfinite(hi - lo) or hi == lo:
        return pd.Series(np.where(series.notna(), 0.0, np.nan), index=series.index)
    return (series - lo) / (hi - lo)


def build_components(
    features: pd.DataFrame,
    components: dict[str, int] | None = None,
    lower: float = 0.01,
    upper: float = 0.99,
) -> pd.DataFrame:
    """
    Winsorized, standardized, sign-oriented components.

    Returns:
        DataFrame (same index as `features`) with one z_<component> column per
        component, NaN outside the complete-case sample.

    Raises:
        KeyError: If a component column is missing.
    """
    components = components or DEFAULT_COMPONENTS
    missing = [c for c in components if c not in features.columns]
    if missing:
        raise KeyError(f"Missing GCD component columns: {missing}")

    complete = features[list(components)].notna().all(axis=1)
    z = pd.DataFrame(index=features.index)

    for name, sign in components.items():
        values = pd.to_numeric(features.loc[complete, name], errors="coerce").astype(float)
        z[f"z_{name}"] = standardize(winsorize(values, lower, upper), int(sign))

    return z


def mean_index(z: pd.DataFrame) -> pd.Series:
    """Row mean of the oriented components; NaN unless every component is present."""
    return z.mean(axis=1, skipna=False)


def pca_index(z: pd.DataFrame) -> tuple[pd.Series, dict]:
    """
    First principal component of the oriented components.

    The component is signed to correlate positively with the mean index so
    that higher still means more garden-city-like.

    Returns:
        (scores with NaN outside the complete-case sample, diagnostics dict
        with explained_variance_ratio and loadings)
    """
    complete = z.notna().all(axis=1)
    scores = pd.Series(np.nan, index=z.index)

    if complete.sum() < 2:
        return scores, {"explained_variance_ratio": np.nan, "loadings": {}}

    X = z.loc[complete].to_numpy(dtype=float)
    pca = PCA(n_components=1)
    pc1 = pca.fit_transform(X)[:, 0]
    loadings = pca.components_[0]

    reference = X.mean(axis=1)
    if np.corrcoef(pc1, reference)[0, 1] < 0:
        pc1 = -pc1
        loadings = -loadings

    scores.loc[complete] = pc1
    diagnostics = {
        "explained_variance_ratio": float(pca.explained_variance_ratio_[0]),
        "loadings": {col: float(w) for col, w in zip(z.columns, loadings)},
    }
    return scores, diagnostics


def treatment_indicators(index: pd.Series, quantiles: dict[str, float]) -> pd.DataFrame:
    """
    Top-quantile treatment dummies (1.0 / 0.0, NaN where the index is missing).

    Cut points are quantiles of the index over every neighborhood where it is
    defined; values at or above the cut are treated.
    """
    out = pd.DataFrame(index=index.index)
    for name, q in quantiles.items():
        cut = index.quantile(q)
        out[name] = np.where(index.notna(), (index >= cut).astype(float), np.nan)
    return out


def build_gcd_index(
    features: pd.DataFrame,
    params: dict | None = None,
    id_col: str = "ft_blc_state",
    logger: logging.Logger | None = None,
) -> tuple[pd.DataFrame, dict]:
    """
    Build the GCD index table from neighborhood street features.

    Args:
        features: One row per neighborhood with the four component columns.
        params: The `gcd_index` section of configs/params.yml.
        id_col: Neighborhood identifier carried through.
        logger: Optional logger.

    Returns:
        (index table with id_col, z-components, garden_metric_osm,
        garden_metric_pca and treatment indicators; diagnostics dict)
    """
    params = {**DEFAULT_PARAMS, **(params or {})}
    if logger:
        log_step_start(logger, "build_gcd_index", n_neighborhoods=len(features))

    z = build_components(
        features,
        components=params["components"],
        lower=params["winsorize"]["lower"],
        upper=params["winsorize"]["upper"],
    )

    index = pd.concat([features[[id_col]], z], axis=1)
    index["garden_metric_osm"] = rescale_unit(mean_index(z))

    pc1, pca_diag = pca_index(z)
    index["garden_metric_pca"] = rescale_unit(pc1)

    index = pd.concat([
        index,
        treatment_indicators(index["garden_metric_osm"], params["treatment_quantiles"]),
        treatment_indicators(index["garden_metric_pca"],
                             {"gcd_pca_top20": params["pca_treatment_quantile"]}),
    ], axis=1)

    n_defined = int(index["garden_metric_osm"].notna().sum())
    diagnostics = {
        "n_neighborhoods": len(index),
        "n_index_defined": n_defined,
        "pca": pca_diag,
        "corr_mean_pca": float(index["garden_metric_osm"].corr(index["garden_metric_pca"]))
        if n_defined > 1 else np.nan,
    }

    if logger:
        logger.info(f"GCD defined for {n_defined:,}/{len(index):,} neighborhoods")
        logger.info(f"PC1 explains {pca_diag['explained_variance_ratio']:.1%} of component variance")
        log_step_end(logger, "build_gcd_index", n_index_defined=n_defined)

    return index.reset_index(drop=True), diagnostics


# =============================================================================
# Map exports
# =============================================================================

def urban_area_means(
    df: pd.DataFrame,
    area_col: str = "foot_id",
    index_col: str = "garden_metric_osm",
) -> pd.DataFrame:
    """Mean index and neighborhood count per urban area."""
    valid = df.dropna(subset=[area_col, index_col])
    return (
        valid.groupby(area_col)
        .agg(**{index_col: (index_col, "mean"), "n_neighborhoods": (index_col, "size")})
        .reset_index()
    )


def gcd_map_bins(values: pd.Series, breaks: list[float] | None = None) -> pd.Series:
    """
    Categorize index values into the fixed map legend classes.

    Each class is labelled by its upper break (rounded to 2 decimals); the
    lowest break is inclusive.
    """
    breaks = breaks or MAP_BREAKS
    labels = [f"{round(b, 2):g}" for b in breaks[1:]]
    return pd.cut(values, bins=breaks, labels=labels, include_lowest=True)


def extreme_areas(
    area_means: pd.DataFrame,
    n: int = 10,
    index_col: str = "garden_metric_osm",
) -> pd.DataFrame:
    """Top and bottom `n` urban areas by mean index, tagged high/low."""
    ranked = area_means.dropna(subset=[index_col])
    high = ranked.nlargest(n, index_col).assign(rank_group="high")
    low = ranked.nsmallest(n, index_col).assign(rank_group="low")
    return pd.concat([high, low], ignore_index=True)
