"""Tests for the attribute join and point aggregation."""

import math

import pandas as pd
import pytest

from thematic_maps.datasource import AttributeTable, FeatureCollection
from thematic_maps.exceptions import DuplicateKeyError, SchemaError
from thematic_maps.joins import ThematicDataset, aggregate_points, join


class TestLeftJoin:
    def test_every_feature_is_kept(self, regions, rates):
        dataset = join(regions, rates)

        assert len(dataset) == 3
        assert dataset.keys == ["A", "B", "C"]
        assert dataset.variables == ["rate"]

    def test_matched_values_are_attached(self, regions, rates):
        dataset = join(regions, rates)
        values = dict(zip(dataset.keys, dataset.values("rate")))

        assert values["A"] == 10
        assert values["B"] == 20
        assert math.isnan(values["C"])
        assert dataset.matched_count() == 2

    def test_disjoint_keys_give_all_null(self, regions):
        dataset = join(regions, [{"region": "X", "rate": 1}, {"region": "Y", "rate": 2}])

        assert len(dataset) == 3
        assert dataset.values("rate").isna().all()
        assert dataset.matched_count() == 0
        assert sorted(dataset.unmatched_keys) == ["X", "Y"]

    def test_empty_attributes(self, regions):
        dataset = join(regions, [])

        assert len(dataset) == 3
        assert dataset.variables == []

    def test_unmatched_rows_are_recorded(self, regions, rates):
        dataset = join(regions, rates + [{"region": "Z", "rate": 99}])

        assert dataset.unmatched_keys == ["Z"]
        assert 99 not in dataset.values("rate").tolist()

    def test_inputs_are_not_modified(self, regions, rates):
        before = regions.data.copy()
        table = AttributeTable.from_records(rates, key_field="region")
        join(regions, table)

        assert list(regions.data.columns) == list(before.columns)
        assert list(table.data.columns) == ["region", "rate"]

    def test_accepts_dataframe(self, regions):
        frame = pd.DataFrame({"region": ["C"], "rate": [5.0]})
        dataset = join(regions, frame)

        assert dataset.values("rate").tolist()[2] == 5.0

    def test_colliding_column_is_suffixed(self, regions):
        dataset = join(regions, [{"region": "A", "area_name": "Other"}])

        assert "area_name_attr" in dataset.variables
        assert dataset.data["area_name"].tolist() == ["Alpha", "Bravo", "Charlie"]

    def test_integer_and_string_keys_match(self, regions_gdf):
        regions_gdf["code"] = ["1", "2", "3"]
        features = FeatureCollection(data=regions_gdf, key_field="code")
        dataset = join(features, [{"code": 1, "rate": 4}, {"code": 3, "rate": 6}])

        assert dataset.values("rate").tolist()[0] == 4
        assert dataset.values("rate").tolist()[2] == 6
        assert dataset.unmatched_keys == []

    def test_integer_keys_match_float_keys_left_by_nulls(self, regions_gdf):
        regions_gdf["code"] = [1, 2, 3]
        features = FeatureCollection(data=regions_gdf, key_field="code")
        rows = [{"code": 1, "rate": 10}, {"code": None, "rate": 5}]

        dataset = join(features, rows)

        assert dataset.values("rate").tolist()[0] == 10
        assert dataset.matched_count() == 1
        assert dataset.unmatched_keys == []

    def test_string_keys_match_integral_float_keys(self, regions_gdf):
        regions_gdf["code"] = ["1", "2", "3"]
        features = FeatureCollection(data=regions_gdf, key_field="code")
        frame = pd.DataFrame({"code": [2.0, None], "rate": [7.0, 8.0]})

        dataset = join(features, frame)

        assert dataset.values("rate").tolist()[1] == 7.0
        assert dataset.unmatched_keys == []

    def test_null_attribute_keys_are_dropped(self, regions):
        frame = pd.DataFrame({"region": ["A", None], "rate": [1.0, 2.0]})
        dataset = join(regions, frame)

        assert dataset.values("rate").tolist()[0] == 1.0
        assert dataset.matched_count() == 1


class TestJoinErrors:
    def test_duplicate_attribute_keys(self, regions):
        rows = [
            {"region": "A", "rate": 1},
            {"region": "A", "rate": 2},
            {"region": "B", "rate": 3},
        ]
        with pytest.raises(DuplicateKeyError) as excinfo:
            join(regions, rows)

        assert excinfo.value.keys == ["A"]
        assert excinfo.value.stage == "join"

    def test_keys_colliding_after_alignment(self, regions_gdf):
        regions_gdf["code"] = ["1", "2", "3"]
        features = FeatureCollection(data=regions_gdf, key_field="code")
        frame = pd.DataFrame({"code": [1, "1"], "rate": [1.0, 2.0]})

        with pytest.raises(DuplicateKeyError) as excinfo:
            join(features, frame)

        assert excinfo.value.keys == ["1"]
        assert excinfo.value.stage == "join"

    def test_key_missing_from_attributes(self, regions):
        with pytest.raises(SchemaError) as excinfo:
            join(regions, [{"id": "A", "rate": 1}])

        assert excinfo.value.stage == "join"

    def test_key_missing_from_features(self, regions):
        with pytest.raises(SchemaError):
            join(regions, [{"region": "A", "rate": 1}], key_field="GEOID")

    def test_duplicate_feature_keys_rejected_on_load(self, regions_gdf):
        regions_gdf["region"] = ["A", "A", "B"]

        with pytest.raises(DuplicateKeyError):
            FeatureCollection(data=regions_gdf, key_field="region")


class TestThematicDataset:
    def test_from_features_uses_own_columns(self, regions):
        dataset = ThematicDataset.from_features(regions)

        assert dataset.variables == ["area_name"]
        assert dataset.unmatched_keys == []
        assert dataset.crs == regions.crs


class TestAggregatePoints:
    def test_count_and_sum(self, regions, points_gdf):
        table = aggregate_points(regions, points_gdf, value_column="cases", aggregation="sum")
        summary = table.data.set_index("region")

        assert table.key_field == "region"
        assert summary.loc["A", "point_count"] == 2
        assert summary.loc["A", "cases_sum"] == 4.0
        assert summary.loc["C", "cases_sum"] == 5.0
        assert "B" not in summary.index

    def test_aggregate_then_join(self, regions, points_gdf):
        table = aggregate_points(regions, points_gdf)
        dataset = join(regions, table)

        assert dataset.variables == ["point_count"]
        assert dataset.values("point_count").tolist()[0] == 2

    def test_missing_value_column(self, regions, points_gdf):
        with pytest.raises(SchemaError):
            aggregate_points(regions, points_gdf, value_column="deaths")

    def test_points_are_reprojected(self, regions, points_gdf):
        projected = points_gdf.to_crs(epsg=3857)
        table = aggregate_points(regions, projected, value_column="cases", aggregation="max")
        summary = table.data.set_index("region")

        assert summary.loc["A", "cases_max"] == 3.0
