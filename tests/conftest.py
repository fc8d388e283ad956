"""
Pytest configuration and shared fixtures.

This module provides synthetic street networks, neighborhood polygons and
analysis panels used across test modules.
"""

import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import pytest
import pandas as pd
import numpy as np
import geopandas as gpd
from shapely.geometry import LineString, box


PROJECTED_CRS = "EPSG:5070"


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    from garden_city.paths import get_project_root
    return get_project_root()


@pytest.fixture(scope="session")
def params_config():
    """Load the params.yml configuration."""
    from garden_city.io_utils import read_yaml
    from garden_city.paths import paths
    return read_yaml(paths.params_yml)


@pytest.fixture(scope="session")
def sources_config():
    """Load the sources.yml configuration."""
    from garden_city.io_utils import read_yaml
    from garden_city.paths import paths
    return read_yaml(paths.sources_yml)


def make_grid_segments(origin=(0.0, 0.0), spacing=100.0) -> gpd.GeoDataFrame:
    """
    A 3x3 lattice of nodes joined by 12 straight segments.

    Corner nodes have degree 2, edge midpoints degree 3 and the center
    degree 4.
    """
    x0, y0 = origin
    lines = []
    for i in range(3):
        for j in range(2):
            # horizontal then vertical
            lines.append(LineString([(x0 + j * spacing, y0 + i * spacing),
                                     (x0 + (j + 1) * spacing, y0 + i * spacing)]))
            lines.append(LineString([(x0 + i * spacing, y0 + j * spacing),
                                     (x0 + i * spacing, y0 + (j + 1) * spacing)]))
    return gpd.GeoDataFrame({"osm_id": range(len(lines))}, geometry=lines, crs=PROJECTED_CRS)


@pytest.fixture
def grid_segments():
    """Street grid fully inside the `grid_neighborhoods` first polygon."""
    return make_grid_segments()


@pytest.fixture
def grid_neighborhoods():
    """Two neighborhoods: one holding the grid, one empty."""
    return gpd.GeoDataFrame(
        {"ft_blc_state": ["010010201001_AL", "010010201002_AL"]},
        geometry=[box(-50, -50, 250, 250), box(1000, 1000, 1300, 1300)],
        crs=PROJECTED_CRS,
    )


@pytest.fixture
def street_features_df():
    """Street features for eight neighborhoods with varied layouts."""
    rng = np.random.default_rng(7)
    n = 8
    return pd.DataFrame({
        "ft_blc_state": [f"0100102010{i:02d}_AL" for i in range(n)],
        "curvature": rng.uniform(0.0, 0.3, n),
        "share_3way": rng.uniform(0.2, 0.9, n),
        "share_angle90": rng.uniform(0.3, 0.95, n),
        "share_outstreet": rng.uniform(0.0, 0.6, n),
    })


@pytest.fixture
def synthetic_panel():
    """
    Analysis panel with known effects.

    walkability = 2.0 * garden_metric_osm + 0.5 * elevation + county effect + noise
    """
    rng = np.random.default_rng(42)
    n = 1200
    county = rng.integers(0, 30, n)
    metro = county // 6
    garden = rng.uniform(0, 1, n)
    elevation = rng.normal(0, 1, n)
    county_effect = rng.normal(0, 1, 30)[county]

    df = pd.DataFrame({
        "ft_blc_state": [f"{i:012d}_AL" for i in range(n)],
        "county_fips": [f"01{c:03d}" for c in county],
        "metro": [f"M{m}" for m in metro],
        "region": np.where(metro % 2 == 0, "South", "West"),
        "vintage_decade": rng.choice([1930.0, 1950.0, 1970.0, 1990.0], n),
        "garden_metric_osm": garden,
        "elevation": elevation,
        "slope": rng.uniform(0, 10, n),
    })
    df["gcd_top20"] = (df["garden_metric_osm"] >= df["garden_metric_osm"].quantile(0.8)).astype(float)
    df["walkability"] = (2.0 * garden + 0.5 * elevation + county_effect
                         + rng.normal(0, 0.3, n))
    return df


# Markers for test categorization
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "smoke: mark test as smoke test (quick sanity checks)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow (may take > 10 seconds)"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires full raw data)"
    )
