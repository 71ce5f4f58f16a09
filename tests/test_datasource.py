"""Tests for feature and attribute loading."""

import geopandas as gpd
import numpy as np
import pytest
import rasterio
import requests
from rasterio.transform import from_origin
from shapely.geometry import box

from thematic_maps.datasource import (
    AttributeDataSource,
    AttributeTable,
    DatasetConfig,
    FeatureCollection,
    FileDataSource,
    GeoBoundariesProvider,
    RasterDataSource,
    load_dataset,
)
from thematic_maps.exceptions import LoadError, NotFoundError, SchemaError


class FakeResponse:
    def __init__(self, payload=None, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    """Serves canned responses by URL and records the requests made."""

    def __init__(self, responses):
        self.responses = responses
        self.requested = []

    def get(self, url, timeout=None):
        self.requested.append(url)
        response = self.responses.get(url, FakeResponse(status_code=404))
        if isinstance(response, Exception):
            raise response
        return response


BOUNDARY_FEATURES = {
    "type": "FeatureCollection",
    "features": [
        {
            "type": "Feature",
            "properties": {"shapeISO": "KE-01", "shapeName": "Baringo"},
            "geometry": {
                "type": "Polygon",
                "coordinates": [[[35, 0], [36, 0], [36, 1], [35, 1], [35, 0]]],
            },
        },
        {
            "type": "Feature",
            "properties": {"shapeISO": "KE-02", "shapeName": "Bomet"},
            "geometry": {
                "type": "Polygon",
                "coordinates": [[[36, 0], [37, 0], [37, 1], [36, 1], [36, 0]]],
            },
        },
    ],
}

META_URL = "https://api.test/gbOpen/KEN/ADM1/"
DOWNLOAD_URL = "https://files.test/KEN_ADM1.geojson"


class TestFileDataSource:
    def test_geojson(self, regions_geojson):
        features = load_dataset(str(regions_geojson), id_column="region")

        assert isinstance(features, FeatureCollection)
        assert features.keys == ["A", "B", "C"]
        assert features.crs.to_epsg() == 4326
        assert features.name == "regions"

    def test_value_column_must_exist(self, regions_geojson):
        config = DatasetConfig(path=str(regions_geojson), id_column="region", value_column="rate")

        with pytest.raises(SchemaError) as excinfo:
            FileDataSource(config).load()

        assert excinfo.value.stage == "load"

    def test_missing_id_column(self, regions_geojson):
        with pytest.raises(SchemaError):
            load_dataset(str(regions_geojson), id_column="GEOID")

    def test_missing_file(self, tmp_path):
        with pytest.raises(LoadError) as excinfo:
            load_dataset(str(tmp_path / "absent.geojson"), id_column="region")

        assert excinfo.value.stage == "load"

    def test_malformed_file(self, tmp_path):
        path = tmp_path / "broken.geojson"
        path.write_text("{ this is not json")

        with pytest.raises(LoadError):
            load_dataset(str(path), id_column="region")

    def test_list_layers(self, regions_geojson):
        source = FileDataSource(DatasetConfig(path=str(regions_geojson), id_column="region"))

        assert len(source.list_layers()) == 1

    def test_get_config(self, regions_geojson):
        config = DatasetConfig(path=str(regions_geojson), id_column="region")

        assert FileDataSource(config).get_config() is config


class TestFeatureCollection:
    def test_requires_crs(self):
        data = gpd.GeoDataFrame({"region": ["A"]}, geometry=[box(0, 0, 1, 1)])

        with pytest.raises(SchemaError):
            FeatureCollection(data=data, key_field="region")

    def test_requires_key(self, regions_gdf):
        with pytest.raises(SchemaError):
            FeatureCollection(data=regions_gdf, key_field="GEOID")


class TestRasterDataSource:
    def test_cells_become_features(self, tmp_path):
        path = tmp_path / "surface.tif"
        values = np.array([[1.0, 2.0], [-9999.0, 4.0]], dtype="float32")
        with rasterio.open(
            path, "w",
            driver="GTiff",
            height=2,
            width=2,
            count=1,
            dtype="float32",
            crs="EPSG:4326",
            transform=from_origin(10.0, 2.0, 1.0, 1.0),
            nodata=-9999.0,
        ) as dst:
            dst.write(values, 1)

        features = RasterDataSource(str(path)).load()

        assert features.key_field == "cell"
        assert features.keys == ["0_0", "0_1", "1_1"]
        assert features.data["value"].tolist() == [1.0, 2.0, 4.0]
        assert features.data.geometry.iloc[0].bounds == (10.0, 1.0, 11.0, 2.0)
        assert features.crs is not None

    def test_unreadable_raster(self, tmp_path):
        path = tmp_path / "broken.tif"
        path.write_bytes(b"not a raster")

        with pytest.raises(LoadError):
            RasterDataSource(str(path)).load()


class TestAttributeDataSource:
    def test_csv_keeps_leading_zeros(self, tmp_path):
        path = tmp_path / "rates.csv"
        path.write_text("fips,rate\n01,3.5\n02,4.0\n")

        table = AttributeDataSource(str(path), key_field="fips").load()

        assert isinstance(table, AttributeTable)
        assert table.data["fips"].tolist() == ["01", "02"]
        assert table.variables == ["rate"]
        assert table.name == "rates"

    def test_json_records(self, tmp_path):
        path = tmp_path / "rates.json"
        path.write_text('[{"region": "A", "rate": 1}, {"region": "B", "rate": 2}]')

        table = AttributeDataSource(str(path), key_field="region").load()

        assert len(table) == 2

    def test_missing_key_column(self, tmp_path):
        path = tmp_path / "rates.csv"
        path.write_text("id,rate\nA,1\n")

        with pytest.raises(SchemaError):
            AttributeDataSource(str(path), key_field="region").load()

    def test_unsupported_format(self, tmp_path):
        path = tmp_path / "rates.dbf"
        path.write_bytes(b"")

        with pytest.raises(LoadError, match="Unsupported"):
            AttributeDataSource(str(path), key_field="region").load()

    def test_missing_file(self, tmp_path):
        with pytest.raises(LoadError, match="not found"):
            AttributeDataSource(str(tmp_path / "absent.csv"), key_field="region").load()

    def test_from_records_empty(self):
        table = AttributeTable.from_records([], key_field="region")

        assert len(table) == 0
        assert table.variables == []


class TestGeoBoundariesProvider:
    def _provider(self, responses):
        return GeoBoundariesProvider(
            base_url="https://api.test/gbOpen",
            session=FakeSession(responses),
        )

    def test_fetch(self):
        provider = self._provider({
            META_URL: FakeResponse({"gjDownloadURL": DOWNLOAD_URL, "boundaryName": "Kenya"}),
            DOWNLOAD_URL: FakeResponse(BOUNDARY_FEATURES),
        })

        features = provider.fetch("ken", 1)

        assert features.keys == ["KE-01", "KE-02"]
        assert features.key_field == "shapeISO"
        assert features.crs.to_epsg() == 4326
        assert features.name == "Kenya"
        assert provider.session.requested == [META_URL, DOWNLOAD_URL]

    def test_unknown_region(self):
        provider = self._provider({})

        with pytest.raises(NotFoundError) as excinfo:
            provider.fetch("XXX", 1)

        assert excinfo.value.stage == "load"

    def test_negative_level(self):
        with pytest.raises(NotFoundError):
            self._provider({}).fetch("KEN", -1)

    def test_metadata_without_download(self):
        provider = self._provider({META_URL: FakeResponse({})})

        with pytest.raises(NotFoundError):
            provider.fetch("KEN", 1)

    def test_network_failure(self):
        provider = self._provider({META_URL: requests.ConnectionError("offline")})

        with pytest.raises(LoadError):
            provider.fetch("KEN", 1)

    def test_server_error(self):
        provider = self._provider({META_URL: FakeResponse(status_code=503)})

        with pytest.raises(LoadError) as excinfo:
            provider.fetch("KEN", 1)

        assert not isinstance(excinfo.value, NotFoundError)

    def test_invalid_json(self):
        provider = self._provider({META_URL: FakeResponse(ValueError("bad json"))})

        with pytest.raises(LoadError):
            provider.fetch("KEN", 1)
