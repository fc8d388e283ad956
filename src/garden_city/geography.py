"""
Geographic keys and neighborhood geography.

Neighborhoods are Census block groups, identified by `ft_blc_state`
("{GEOID12}_{STATE}"). Tract, county and state keys are prefixes of the
12-digit GEOID: SS CCC TTTTTT B.
"""

import logging

import geopandas as gpd
import numpy as np
import pandas as pd
from sklearn.neighbors import BallTree

from garden_city.logging_utils import log_step_start, log_step_end


EARTH_RADIUS_KM = 6371.0088

# State FIPS -> (postal code, Census region)
STATE_FIPS = {
    "01": ("AL", "South"), "02": ("AK", "West"), "04": ("AZ", "West"),
    "05": ("AR", "South"), "06": ("CA", "West"), "08": ("CO", "West"),
    "09": ("CT", "Northeast"), "10": ("DE", "South"), "11": ("DC", "South"),
    "12": ("FL", "South"), "13": ("GA", "South"), "15": ("HI", "West"),
    "16": ("ID", "West"), "17": ("IL", "Midwest"), "18": ("IN", "Midwest"),
    "19": ("IA", "Midwest"), "20": ("KS", "Midwest"), "21": ("KY", "South"),
    "22": ("LA", "South"), "23": ("ME", "Northeast"), "24": ("MD", "South"),
    "25": ("MA", "Northeast"), "26": ("MI", "Midwest"), "27": ("MN", "Midwest"),
    "28": ("MS", "South"), "29": ("MO", "Midwest"), "30": ("MT", "West"),
    "31": ("NE", "Midwest"), "32": ("NV", "West"), "33": ("NH", "Northeast"),
    "34": ("NJ", "Northeast"), "35": ("NM", "West"), "36": ("NY", "Northeast"),
    "37": ("NC", "South"), "38": ("ND", "Midwest"), "39": ("OH", "Midwest"),
    "40": ("OK", "South"), "41": ("OR", "West"), "42": ("PA", "Northeast"),
    "44": ("RI", "Northeast"), "45": ("SC", "South"), "46": ("SD", "Midwest"),
    "47": ("TN", "South"), "48": ("TX", "South"), "49": ("UT", "West"),
    "50": ("VT", "Northeast"), "51": ("VA", "South"), "53": ("WA", "West"),
    "54": ("WV", "South"), "55": ("WI", "Midwest"), "56": ("WY", "West"),
}


# =============================================================================
# Keys
# =============================================================================

def normalize_geoid(geoid: pd.Series) -> pd.Series:
    """
    Zero-padded 12-digit block group GEOIDs as strings.

    Numeric GEOIDs read from CSV lose the leading zero of states 01-09;
    values like 10010201001.0 are restored to "010010201001".
    """
    s = geoid.astype(str).str.strip().str.replace(r"\.0$", "", regex=True)
    s = s.where(geoid.notna())
    return s.str.zfill(12)


def make_neighborhood_id(geoid: pd.Series, state: pd.Series) -> pd.Series:
    """Composite neighborhood key "{GEOID12}_{STATE}"."""
    return normalize_geoid(geoid) + "_" + state.astype(str).str.upper()


def state_abbreviation(state_fips: pd.Series) -> pd.Series:
    return state_fips.map({k: v[0] for k, v in STATE_FIPS.items()})


def census_region(state_fips: pd.Series) -> pd.Series:
    """Census region (Northeast, Midwest, South, West) of each state FIPS code."""
    return state_fips.map({k: v[1] for k, v in STATE_FIPS.items()})


def add_geo_keys(
    df: pd.DataFrame,
    geoid_col: str = "geoid",
    state_col: str | None = "state",
) -> pd.DataFrame:
    """
    Add geoid, state_fips, county_fips, tract_id, region and ft_blc_state.

    When `state_col` is missing the state code is derived from the GEOID.
    """
    out = df.copy()
    out["geoid"] = normalize_geoid(out[geoid_col])
    out["state_fips"] = out["geoid"].str[:2]
    out["county_fips"] = out["geoid"].str[:5]
    out["tract_id"] = out["geoid"].str[:11]
    out["region"] = census_region(out["state_fips"])

    if state_col is None or state_col not in out.columns:
        out["state"] = state_abbreviation(out["state_fips"])
        state_col = "state"
    elif state_col != "state":
        out["state"] = out[state_col]

    out["ft_blc_state"] = make_neighborhood_id(out["geoid"], out["state"])
    return out


def parse_neighborhood_id(ids: pd.Series) -> pd.DataFrame:
    """Split "{GEOID12}_{STATE}" back into geoid and state columns."""
    parts = ids.astype(str).str.rsplit("_", n=1, expand=True)
    return pd.DataFrame({"geoid": parts[0], "state": parts[1]}, index=ids.index)


# =============================================================================
# Coordinates and distances
# =============================================================================

def neighborhood_centroids(
    gdf: gpd.GeoDataFrame,
    projected_crs: str = "EPSG:5070",
) -> pd.DataFrame:
    """
    Latitude/longitude of neighborhood centroids.

    Centroids are taken in a projected CRS (geographic centroids are not
    meaningful) and reported in EPSG:4326.

    Raises:
        ValueError: If the GeoDataFrame has no CRS.
    """
    if gdf.crs is None:
        raise ValueError("Neighborhood polygons have no CRS defined")

    centroids = gdf.geometry.to_crs(projected_crs).centroid.to_crs("EPSG:4326")
    return pd.DataFrame({"lat": centroids.y, "lon": centroids.x}, index=gdf.index)


def distance_to_nearest_center(
    points: pd.DataFrame,
    centers: pd.DataFrame,
    lat_col: str = "lat",
    lon_col: str = "lon",
    center_lat_col: str = "lat",
    center_lon_col: str = "lon",
) -> pd.Series:
    """
    Great-circle distance (km) from each point to the nearest city center.

    Points with missing coordinates get NaN.

    Raises:
        ValueError: If no city centers are given.
    """
    centers = centers.dropna(subset=[center_lat_col, center_lon_col])
    if centers.empty:
        raise ValueError("No city centers with valid coordinates")

    tree = BallTree(
        np.radians(centers[[center_lat_col, center_lon_col]].to_numpy(dtype=float)),
        metric="haversine",
    )

    result = pd.Series(np.nan, index=points.index, name="dist_city_center_km")
    valid = points[[lat_col, lon_col]].notna().all(axis=1)
    if valid.any():
        query = np.radians(points.loc[valid, [lat_col, lon_col]].to_numpy(dtype=float))
        dist, _ = tree.query(query, k=1)
        result.loc[valid] = dist[:, 0] * EARTH_RADIUS_KM
    return result


def vintage_decade(year: pd.Series, floor: int = 1930) -> pd.Series:
    """
    Decade of construction from a median year built.

    Years before floor + 10 are pooled into `floor` (ACS reports
    "1939 or earlier"). Non-numeric and zero years are missing.
    """
    y = pd.to_numeric(year, errors="coerce")
    y = y.where(y > 0)
    decade = np.floor(y / 10.0) * 10.0
    return decade.clip(lower=floor)


def build_neighborhood_geography(
    neighborhoods: gpd.GeoDataFrame,
    city_centers: pd.DataFrame,
    geoid_col: str = "GEOID",
    state_col: str = "STATE",
    projected_crs: str = "EPSG:5070",
    logger: logging.Logger | None = None,
) -> pd.DataFrame:
    """
    Keys, centroid coordinates and distance to the nearest city center for
    every neighborhood polygon.
    """
    if logger:
        log_step_start(logger, "build_neighborhood_geography", n_neighborhoods=len(neighborhoods))

    keyed = add_geo_keys(pd.DataFrame(neighborhoods.drop(columns="geometry")),
                         geoid_col=geoid_col, state_col=state_col)
    coords = neighborhood_centroids(neighborhoods, projected_crs)
    keyed["lat"] = coords["lat"].to_numpy()
    keyed["lon"] = coords["lon"].to_numpy()
    keyed["dist_city_center_km"] = distance_to_nearest_center(keyed, city_centers)

    if logger:
        logger.info(
            f"Median distance to nearest city center: "
            f"{keyed['dist_city_center_km'].median():.1f} km"
        )
        log_step_end(logger, "build_neighborhood_geography")

    return keyed
