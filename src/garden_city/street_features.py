"""
Street geometry features per neighborhood.

Street segments for one state are turned into per-neighborhood summary
statistics that feed the GCD index:

- curvature: a percentile of per-segment curvature (1 - chord / path length)
- share_3way: three-way intersections over all intersections (degree >= 3)
- share_angle90: angles between consecutive streets at intersections that are
  within a tolerance of 90 degrees, over all such angles
- share_outstreet: dead-end nodes (degree 1) over dead ends plus intersections

Node degrees are computed on the whole state network before nodes are
assigned to neighborhoods, so streets crossing a neighborhood boundary do not
look like dead ends.
"""

import logging

import geopandas as gpd
import networkx as nx
import numpy as np
import pandas as pd

from garden_city.logging_utils import log_step_start, log_step_end


DEFAULT_PARAMS = {
    "projected_crs": "EPSG:5070",
    "snap_tolerance_m": 1.0,
    "curvature_percentile": 75,
    "angle90_tolerance_deg": 10.0,
    "min_segment_length_m": 1.0,
}

FEATURE_COLUMNS = [
    "n_segments",
    "street_length_m",
    "curvature",
    "n_nodes",
    "n_intersections",
    "mean_intersection_degree",
    "share_3way",
    "share_angle90",
    "share_outstreet",
]


# =============================================================================
# Segment geometry
# =============================================================================

def prepare_segments(segments: gpd.GeoDataFrame, crs: str) -> gpd.GeoDataFrame:
    """
    Drop empty geometries, explode multi-part lines and project to `crs`.

    Raises:
        ValueError: If the segments have no CRS.
    """
    if segments.crs is None:
        raise ValueError("Street segments have no CRS defined")

    segs = segments[segments.geometry.notna() & ~segments.geometry.is_empty]
    segs = segs.explode(index_parts=False)
    segs = segs[segs.geom_type == "LineString"]
    segs = segs.to_crs(crs)
    return segs.reset_index(drop=True)


def _endpoint_coordinates(geoms: gpd.GeoSeries) -> dict[str, np.ndarray]:
    """First, second, second-to-last and last vertex of every LineString."""
    coords = geoms.get_coordinates()
    xy = coords[["x", "y"]].to_numpy(dtype=float)
    counts = coords.groupby(level=0, sort=False).size().to_numpy()
    offsets = np.concatenate([[0], np.cumsum(counts)[:-1]])

    return {
        "first": xy[offsets],
        "second": xy[offsets + 1],
        "penultimate": xy[offsets + counts - 2],
        "last": xy[offsets + counts - 1],
    }


def segment_bearing(origin: np.ndarray, target: np.ndarray) -> np.ndarray:
    """Compass bearing (degrees clockwise from north, in [0, 360)) from origin to target."""
    origin = np.atleast_2d(origin)
    target = np.atleast_2d(target)
    dx = target[:, 0] - origin[:, 0]
    dy = target[:, 1] - origin[:, 1]
    return np.mod(np.degrees(np.arctan2(dx, dy)), 360.0)


def segment_curvature(geoms: gpd.GeoSeries, min_length: float = 0.0) -> np.ndarray:
    """
    Curvature of each segment: 1 - straight-line distance / path length.

    Straight segments score 0 and closed loops score 1. Segments shorter than
    `min_length` (or of zero length) are NaN.
    """
    ends = _endpoint_coordinates(geoms)
    chord = np.hypot(*(ends["last"] - ends["first"]).T)
    length = np.asarray(geoms.length, dtype=float)

    with np.errstate(divide="ignore", invalid="ignore"):
        curvature = 1.0 - chord / length
    curvature = np.clip(curvature, 0.0, 1.0)
    curvature[(length <= 0) | (length < min_length)] = np.nan
    return curvature


# =============================================================================
# Nodes and intersections
# =============================================================================

def build_street_nodes(
    segments: gpd.GeoDataFrame,
    snap_tolerance: float = 1.0,
) -> pd.DataFrame:
    """
    Build the node table of a street network from segment endpoints.

    Endpoints are snapped to a grid of size `snap_tolerance` (CRS units) and
    every segment becomes an edge of a networkx MultiGraph between its two
    snapped endpoints, so parallel segments and loops keep their own edges.
    Each edge stores the local bearing at both ends, taken from the endpoint
    toward the adjacent vertex.

    Returns:
        DataFrame indexed by node_id with x, y, degree and bearings (list).
    """
    ends = _endpoint_coordinates(segments.geometry)
    first = np.round(ends["first"] / snap_tolerance) * snap_tolerance
    last = np.round(ends["last"] / snap_tolerance) * snap_tolerance
    bearing_first = segment_bearing(ends["first"], ends["second"])
    bearing_last = segment_bearing(ends["last"], ends["penultimate"])

    G = nx.MultiGraph()
    for seg, (u, v, b_u, b_v) in enumerate(zip(map(tuple, first), map(tuple, last),
                                               bearing_first, bearing_last)):
        G.add_edge(u, v, key=seg, ends=((u, b_u), (v, b_v)))

    rows = []
    for node in G.nodes:
        # a self-loop is listed once but contributes both of its ends
        bearings = [b for _, _, edge_ends in G.edges(node, data="ends")
                    for end, b in edge_ends if end == node]
        rows.append({"x": node[0], "y": node[1], "degree": G.degree(node),
                     "bearings": bearings})

    nodes = pd.DataFrame(rows, columns=["x", "y", "degree", "bearings"])
    nodes["degree"] = nodes["degree"].astype("int64")
    return nodes.rename_axis("node_id")


def intersection_angles(bearings) -> np.ndarray:
    """
    Angles between consecutive streets around a node (sum to 360).

    A node with fewer than two incident streets has no angles.
    """
    b = np.sort(np.mod(np.asarray(bearings, dtype=float), 360.0))
    if len(b) < 2:
        return np.array([], dtype=float)
    return np.diff(np.concatenate([b, [b[0] + 360.0]]))


def count_right_angles(bearings, tolerance: float) -> tuple[int, int]:
    """Return (number of angles, number within `tolerance` of 90 degrees)."""
    angles = intersection_angles(bearings)
    return len(angles), int(np.sum(np.abs(angles - 90.0) <= tolerance))


# =============================================================================
# Neighborhood assignment and aggregation
# =============================================================================

def assign_to_neighborhoods(
    points: gpd.GeoSeries,
    neighborhoods: gpd.GeoDataFrame,
    id_col: str,
) -> pd.Series:
    """
    Neighborhood id of each point (NaN outside every neighborhood).

    Points on a polygon edge count as inside it. Points on shared boundaries
    go to the first matching polygon in `neighborhoods` order.
    """
    pts = gpd.GeoDataFrame(geometry=points.values, index=points.index, crs=points.crs)
    polys = neighborhoods[[id_col, "geometry"]].to_crs(points.crs).reset_index(drop=True)
    joined = gpd.sjoin(pts, polys, how="left", predicate="intersects")
    joined = joined.sort_values("index_right", kind="stable", na_position="last")
    joined = joined[~joined.index.duplicated(keep="first")]
    return joined[id_col].reindex(points.index)


def aggregate_neighborhood_features(
    segment_table: pd.DataFrame,
    node_table: pd.DataFrame,
    id_col: str,
    curvature_percentile: float,
    angle90_tolerance: float,
) -> pd.DataFrame:
    """
    Summarize assigned segments and nodes into one row per neighborhood.

    Args:
        segment_table: id_col, length, curvature per segment.
        node_table: id_col, degree, bearings per node.

    Returns:
        DataFrame with id_col and FEATURE_COLUMNS. Neighborhoods without
        segments are absent; shares with a zero denominator are NaN.
    """
    segs = segment_table.dropna(subset=[id_col])
    q = curvature_percentile / 100.0
    seg_stats = segs.groupby(id_col).agg(
        n_segments=("length", "size"),
        street_length_m=("length", "sum"),
        curvature=("curvature", lambda s: s.quantile(q)),
    )

    nodes = node_table.dropna(subset=[id_col]).copy()
    is_int = nodes["degree"] >= 3
    nodes["is_intersection"] = is_int.astype(int)
    nodes["is_3way"] = (nodes["degree"] == 3).astype(int)
    nodes["is_deadend"] = (nodes["degree"] == 1).astype(int)
    nodes["intersection_degree"] = np.where(is_int, nodes["degree"], 0)

    angle_counts = [
        count_right_angles(b, angle90_tolerance) if flag else (0, 0)
        for b, flag in zip(nodes["bearings"], is_int)
    ]
    nodes["n_angles"] = [a for a, _ in angle_counts]
    nodes["n_angle90"] = [r for _, r in angle_counts]

    node_stats = nodes.groupby(id_col).agg(
        n_nodes=("degree", "size"),
        n_intersections=("is_intersection", "sum"),
        n_3way=("is_3way", "sum"),
        n_deadends=("is_deadend", "sum"),
        degree_total=("intersection_degree", "sum"),
        n_angles=("n_angles", "sum"),
        n_angle90=("n_angle90", "sum"),
    )

    out = seg_stats.join(node_stats, how="left")
    count_cols = ["n_nodes", "n_intersections", "n_3way", "n_deadends",
                  "degree_total", "n_angles", "n_angle90"]
    out[count_cols] = out[count_cols].fillna(0).astype("int64")

    def ratio(num: pd.Series, den: pd.Series) -> pd.Series:
        return (num / den.where(den > 0)).astype(float)

    out["mean_intersection_degree"] = ratio(out["degree_total"], out["n_intersections"])
    out["share_3way"] = ratio(out["n_3way"], out["n_intersections"])
    out["share_angle90"] = ratio(out["n_angle90"], out["n_angles"])
    out["share_outstreet"] = ratio(out["n_deadends"], out["n_deadends"] + out["n_intersections"])
    out["n_segments"] = out["n_segments"].astype("int64")

    return out.reset_index()[[id_col] + FEATURE_COLUMNS]


def extract_state_features(
    segments: gpd.GeoDataFrame,
    neighborhoods: gpd.GeoDataFrame,
    id_col: str = "ft_blc_state",
    params: dict | None = None,
    state: str | None = None,
    logger: logging.Logger | None = None,
) -> pd.DataFrame:
    """
    Extract street features for every neighborhood of one state.

    Args:
        segments: Street centerline segments (LineString / MultiLineString).
        neighborhoods: Neighborhood polygons carrying `id_col`.
        id_col: Neighborhood identifier column.
        params: Overrides for DEFAULT_PARAMS (see configs/params.yml).
        state: Two-letter state code added as a `state` column.
        logger: Optional logger for step events.

    Returns:
        One row per neighborhood that contains at least one segment midpoint.
    """
    params = {**DEFAULT_PARAMS, **(params or {})}
    step = f"extract_state_features_{state}" if state else "extract_state_features"
    if logger:
        log_step_start(logger, step, n_input_segments=len(segments))

    segs = prepare_segments(segments, params["projected_crs"])
    hoods = neighborhoods.to_crs(params["projected_crs"])

    if segs.empty:
        if logger:
            logger.warning(f"{state or 'network'}: no usable street segments")
        empty = pd.DataFrame(columns=[id_col] + FEATURE_COLUMNS)
        if state is not None:
            empty.insert(1, "state", pd.Series(dtype=object))
        return empty

    midpoints = segs.geometry.interpolate(0.5, normalized=True)
    segment_table = pd.DataFrame({
        id_col: assign_to_neighborhoods(midpoints, hoods, id_col),
        "length": segs.geometry.length.to_numpy(dtype=float),
        "curvature": segment_curvature(segs.geometry, params["min_segment_length_m"]),
    })

    nodes = build_street_nodes(segs, params["snap_tolerance_m"])
    node_points = gpd.GeoSeries(
        gpd.points_from_xy(nodes["x"], nodes["y"]),
        index=nodes.index,
        crs=segs.crs,
    )
    nodes[id_col] = assign_to_neighborhoods(node_points, hoods, id_col)

    features = aggregate_neighborhood_features(
        segment_table,
        nodes,
        id_col,
        curvature_percentile=params["curvature_percentile"],
        angle90_tolerance=params["angle90_tolerance_deg"],
    )
    if state is not None:
        features.insert(1, "state", state)

    if logger:
        logger.info(
            f"{state or 'network'}: {len(segs):,} segments, {len(nodes):,} nodes, "
            f"{len(features):,} neighborhoods"
        )
        log_step_end(logger, step, n_neighborhoods=len(features))

    return features
