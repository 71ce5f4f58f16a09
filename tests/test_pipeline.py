"""End-to-end tests for the Join -> Style -> Render pipeline."""

import pytest

from thematic_maps.config import Settings, register_dataset
from thematic_maps.datasource import BoundaryProvider, DatasetConfig, FeatureCollection
from thematic_maps.exceptions import (
    ConfigurationError,
    DuplicateKeyError,
    LoadError,
    NotFoundError,
    StyleError,
    UnknownVariableError,
)
from thematic_maps.pipeline import MapRequest, render_thematic_map, run_request
from thematic_maps.visualizer import RenderMode

SMALL = Settings(dpi=40, figure_width=4, figure_height=3)


class StaticProvider(BoundaryProvider):
    def __init__(self, features):
        self.features = features
        self.calls = []

    def fetch(self, region, level):
        self.calls.append((region, level))
        return self.features


class TestRenderThematicMap:
    def test_three_region_scenario(self, regions, rates):
        artifact = render_thematic_map(
            regions,
            rates,
            {"variable": "rate", "breaks": [0, 15, 25], "missing_color": "lightgrey"},
            settings=SMALL,
        )

        assert artifact.content.startswith(b"\x89PNG")
        assert artifact.feature_count == 3
        assert artifact.painted_regions == 3

    def test_interactive(self, regions, rates):
        artifact = render_thematic_map(
            regions, rates, {"variable": "rate"}, mode="interactive", settings=SMALL
        )

        assert artifact.mode is RenderMode.INTERACTIVE
        assert "leaflet" in artifact.content.lower()

    def test_feature_columns_without_attributes(self, regions_gdf):
        regions_gdf["density"] = [1.0, 2.0, 3.0]
        features = FeatureCollection(data=regions_gdf, key_field="region")

        artifact = render_thematic_map(features, None, {"variable": "density"}, settings=SMALL)

        assert artifact.painted_regions == 3

    def test_join_failure_names_join_stage(self, regions):
        rows = [{"region": "A", "rate": 1}, {"region": "A", "rate": 2}]

        with pytest.raises(DuplicateKeyError) as excinfo:
            render_thematic_map(regions, rows, {"variable": "rate"}, settings=SMALL)

        assert excinfo.value.stage == "join"
        assert str(excinfo.value).startswith("[join]")

    def test_unknown_variable_names_style_stage(self, regions, rates):
        with pytest.raises(UnknownVariableError) as excinfo:
            render_thematic_map(regions, rates, {"variable": "income"}, settings=SMALL)

        assert excinfo.value.stage == "style"

    def test_bad_style_option(self, regions, rates):
        with pytest.raises(StyleError) as excinfo:
            render_thematic_map(regions, rates, {"variable": "rate", "color": "red"})

        assert excinfo.value.stage == "style"


class TestMapRequest:
    def test_from_dict_rejects_unknown(self):
        with pytest.raises(ConfigurationError):
            MapRequest.from_dict({"features": "x.geojson"})

    @pytest.mark.parametrize(
        "options",
        [
            {},
            {"features_path": "a.geojson", "dataset": "countries", "key_field": "id"},
            {"features_path": "a.geojson"},
            {"dataset": "countries", "mode": "print"},
            {"dataset": "countries", "attributes_path": "a.csv", "attributes": []},
            {"boundary_region": "KEN", "boundary_level": "1"},
            {"boundary_region": "KEN", "boundary_level": -1},
            {"raster_path": "a.tif", "raster_band": 0},
            {"dataset": "countries", "attributes": "abc"},
            {"dataset": "countries", "attributes": [1, 2]},
            {"dataset": "countries", "style": "rate"},
            {"dataset": 7},
        ],
    )
    def test_validate_rejects(self, options):
        with pytest.raises(ConfigurationError):
            MapRequest(**options).validate()

    def test_validate_accepts(self):
        assert MapRequest(boundary_region="KEN", style={"variable": "x"}).validate()


class TestRunRequest:
    def test_features_file_and_inline_attributes(self, regions_geojson, rates, tmp_path):
        output = tmp_path / "out" / "rates.png"
        artifact = run_request(
            {
                "features_path": str(regions_geojson),
                "key_field": "region",
                "attributes": rates,
                "style": {"variable": "rate", "breaks": [0, 15, 25]},
                "output": str(output),
            },
            SMALL,
        )

        assert output.read_bytes() == artifact.content
        assert artifact.painted_regions == 3

    def test_attribute_file_with_other_key(self, regions_geojson, tmp_path):
        path = tmp_path / "rates.csv"
        path.write_text("code,rate\nA,1\nB,2\nC,3\n")

        artifact = run_request(
            MapRequest(
                features_path=str(regions_geojson),
                key_field="region",
                attributes_path=str(path),
                attributes_key="code",
                style={"variable": "rate"},
                mode="interactive",
            ),
            SMALL,
        )

        assert artifact.format == "html"

    def test_boundary_provider(self, regions, rates):
        provider = StaticProvider(regions)

        artifact = run_request(
            {"boundary_region": "XYZ", "boundary_level": 2, "attributes": rates,
             "style": {"variable": "rate"}},
            SMALL,
            provider=provider,
        )

        assert provider.calls == [("XYZ", 2)]
        assert artifact.feature_count == 3

    def test_registered_dataset(self, regions_geojson, rates):
        register_dataset(
            "test_regions",
            DatasetConfig(path=str(regions_geojson), id_column="region"),
        )

        artifact = run_request(
            {"dataset": "test_regions", "attributes": rates, "style": {"variable": "rate"}},
            SMALL,
        )

        assert artifact.painted_regions == 3

    def test_unknown_dataset(self):
        with pytest.raises(NotFoundError) as excinfo:
            run_request({"dataset": "atlantis", "style": {"variable": "x"}}, SMALL)

        assert excinfo.value.stage == "load"

    def test_invalid_request_names_load_stage(self):
        with pytest.raises(ConfigurationError) as excinfo:
            run_request({"style": {"variable": "x"}}, SMALL)

        assert excinfo.value.stage == "load"

    def test_missing_features_file(self, tmp_path, rates):
        with pytest.raises(LoadError) as excinfo:
            run_request(
                {"features_path": str(tmp_path / "absent.geojson"), "key_field": "region",
                 "attributes": rates, "style": {"variable": "rate"}},
                SMALL,
            )

        assert excinfo.value.stage == "load"
