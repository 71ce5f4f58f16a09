"""Shared fixtures for thematic_maps tests."""

import matplotlib

matplotlib.use("Agg")

import geopandas as gpd
import pytest
from shapely.geometry import Point, box

from thematic_maps.config import registry
from thematic_maps.datasource import FeatureCollection


@pytest.fixture(autouse=True)
def dataset_registry(monkeypatch):
    """Registrations made by a test are discarded after it."""
    monkeypatch.setattr(registry, "_datasets", dict(registry._datasets))
    return registry


@pytest.fixture()
def regions_gdf() -> gpd.GeoDataFrame:
    """Three adjacent one-degree squares keyed A, B, C."""
    return gpd.GeoDataFrame(
        {"region": ["A", "B", "C"], "area_name": ["Alpha", "Bravo", "Charlie"]},
        geometry=[box(0, 0, 1, 1), box(1, 0, 2, 1), box(2, 0, 3, 1)],
        crs="EPSG:4326",
    )


@pytest.fixture()
def regions(regions_gdf: gpd.GeoDataFrame) -> FeatureCollection:
    return FeatureCollection(data=regions_gdf, key_field="region", name="regions")


@pytest.fixture()
def rates() -> list:
    """Attribute rows for A and B; C has no row."""
    return [{"region": "A", "rate": 10}, {"region": "B", "rate": 20}]


@pytest.fixture()
def points_gdf() -> gpd.GeoDataFrame:
    """Point observations: two in A, one in C, one outside every region."""
    return gpd.GeoDataFrame(
        {"cases": [1.0, 3.0, 5.0, 7.0]},
        geometry=[Point(0.5, 0.5), Point(0.2, 0.8), Point(2.5, 0.5), Point(10, 10)],
        crs="EPSG:4326",
    )


@pytest.fixture()
def regions_geojson(tmp_path, regions_gdf: gpd.GeoDataFrame):
    """The three regions written to a GeoJSON file."""
    path = tmp_path / "regions.geojson"
    regions_gdf.to_file(path, driver="GeoJSON")
    return path
