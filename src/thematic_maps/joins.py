"""
Join operations that attach attribute data to features.

The attribute join is a left outer join on a shared key: every feature is
kept, features without a matching row get null attributes, and rows whose
key matches no feature are dropped with a warning. Point observations can
be summarised per feature first with :func:`aggregate_points`.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Mapping, Optional, Sequence, Union

import geopandas as gpd
import pandas as pd

from thematic_maps.datasource import AttributeTable, FeatureCollection
from thematic_maps.exceptions import DuplicateKeyError, SchemaError
from thematic_maps.logging_config import get_logger

logger = get_logger(__name__)

COLLISION_SUFFIX = "_attr"
_FEATURE_KEY = "_feature_key"


class AggregationMethod(Enum):
    """Supported aggregation methods for point-to-feature summaries."""
    MEAN = "mean"
    SUM = "sum"
    COUNT = "count"
    MIN = "min"
    MAX = "max"
    MEDIAN = "median"
    FIRST = "first"
    LAST = "last"


@dataclass
class ThematicDataset:
    """Features paired with their joined attributes.

    Attributes:
        data: GeoDataFrame with one row per feature, in feature order
        key_field: Column holding the feature keys
        variables: Attribute columns contributed by the join
        unmatched_keys: Attribute keys that matched no feature
        name: Name of the source feature collection
    """
    data: gpd.GeoDataFrame
    key_field: str
    variables: List[str] = field(default_factory=list)
    unmatched_keys: List[Any] = field(default_factory=list)
    name: str = "features"

    @classmethod
    def from_features(cls, features: FeatureCollection) -> "ThematicDataset":
        """Use a collection's own columns as its attributes, without a join."""
        data = features.data
        variables = [
            col for col in data.columns
            if col not in (features.key_field, data.geometry.name)
        ]
        return cls(
            data=data.copy(),
            key_field=features.key_field,
            variables=variables,
            name=features.name,
        )

    @property
    def crs(self):
        return self.data.crs

    @property
    def keys(self) -> List[Any]:
        return self.data[self.key_field].tolist()

    @property
    def is_empty(self) -> bool:
        return len(self.data) == 0

    def values(self, variable: str) -> pd.Series:
        """Return the values of one attribute, aligned with the features."""
        return self.data[variable]

    def matched_count(self) -> int:
        """Number of features that received at least one non-null attribute."""
        if not self.variables:
            return 0
        return int(self.data[self.variables].notna().any(axis=1).sum())

    def __len__(self) -> int:
        return len(self.data)


AttributesLike = Union[AttributeTable, pd.DataFrame, Sequence[Mapping[str, Any]]]


class AttributeJoiner:
    """Attaches attribute rows to the features of one collection.

    The join is pure: neither input is modified.
    """

    def __init__(self, features: FeatureCollection):
        """Initialize the joiner.

        Args:
            features: Collection receiving the attributes
        """
        self.features = features

    def join(
        self,
        attributes: AttributesLike,
        key_field: Optional[str] = None
    ) -> ThematicDataset:
        """Left-join attribute rows onto the features.

        Args:
            attributes: AttributeTable, DataFrame or sequence of row mappings
            key_field: Key column present on both sides (defaults to the
                       feature collection's key field)

        Returns:
            ThematicDataset with one entry per feature

        Raises:
            SchemaError: If ``key_field`` is missing from either input
            DuplicateKeyError: If several attribute rows share a key
        """
        key_field = key_field or self.features.key_field
        features = self.features.data
        table = self._as_frame(attributes, key_field)

        if key_field not in features.columns:
            raise SchemaError(
                f"Key field '{key_field}' not found in features "
                f"'{self.features.name}'. Available columns: {list(features.columns)}"
            )
        if key_field not in table.columns:
            raise SchemaError(
                f"Key field '{key_field}' not found in attribute table. "
                f"Available columns: {list(table.columns)}"
            )

        table = self._drop_null_keys(table, key_field)
        feature_keys, row_keys = self._align_keys(features[key_field], table[key_field])
        self._check_duplicates(row_keys, key_field)

        values = table.drop(columns=[key_field])
        values = values.rename(columns={
            col: f"{col}{COLLISION_SUFFIX}"
            for col in values.columns if col in features.columns
        })
        values.index = pd.Index(row_keys.to_numpy())

        matched = values.reindex(feature_keys.to_numpy())

        result = features.copy()
        for col in matched.columns:
            result[col] = matched[col].to_numpy()

        unmatched_mask = ~row_keys.isin(set(feature_keys))
        unmatched_keys = table.loc[unmatched_mask.to_numpy(), key_field].tolist()
        if unmatched_keys:
            logger.warning(
                f"Dropped {len(unmatched_keys)} attribute row(s) with no matching "
                f"feature in '{self.features.name}': {unmatched_keys[:10]}"
                + (" ..." if len(unmatched_keys) > 10 else "")
            )

        dataset = ThematicDataset(
            data=result,
            key_field=key_field,
            variables=list(matched.columns),
            unmatched_keys=unmatched_keys,
            name=self.features.name,
        )
        logger.debug(
            f"Joined {len(table)} attribute rows onto {len(result)} features "
            f"({dataset.matched_count()} matched)"
        )
        return dataset

    def _as_frame(self, attributes: AttributesLike, key_field: str) -> pd.DataFrame:
        if isinstance(attributes, AttributeTable):
            return attributes.data
        if isinstance(attributes, pd.DataFrame):
            return attributes
        frame = pd.DataFrame.from_records(list(attributes))
        if frame.empty and key_field not in frame.columns:
            frame = pd.DataFrame(columns=[key_field])
        return frame

    def _drop_null_keys(self, table: pd.DataFrame, key_field: str) -> pd.DataFrame:
        null_keys = table[key_field].isna()
        if null_keys.any():
            logger.warning(
                f"Dropped {int(null_keys.sum())} attribute row(s) with a null "
                f"'{key_field}'"
            )
            return table[~null_keys]
        return table

    def _check_duplicates(self, row_keys: pd.Series, key_field: str):
        """Reject attribute keys that coincide once aligned with the features."""
        duplicated = row_keys[row_keys.duplicated()]
        if len(duplicated) > 0:
            keys = sorted(set(duplicated.astype(str)))
            raise DuplicateKeyError(
                f"Attribute table has {len(keys)} duplicated key(s) in "
                f"'{key_field}': {keys}",
                keys=keys,
            )

    def _align_keys(self, feature_keys: pd.Series, row_keys: pd.Series):
        """Bring both key columns to one type before matching.

        Numeric keys compare as numbers, so ``1`` matches ``1.0``. Any other
        disagreement, including mixed-type object columns, compares the keys
        as strings, so ``1`` matches ``"1"``.
        """
        numeric = (
            pd.api.types.is_numeric_dtype(feature_keys)
            and pd.api.types.is_numeric_dtype(row_keys)
        )
        if numeric:
            if feature_keys.dtype != row_keys.dtype:
                logger.debug(
                    f"Key dtypes differ ({feature_keys.dtype} vs {row_keys.dtype}); "
                    "comparing as numbers"
                )
                return feature_keys.astype(float), row_keys.astype(float)
            return feature_keys, row_keys

        if feature_keys.dtype != row_keys.dtype or feature_keys.dtype == object:
            logger.debug(
                f"Comparing keys as strings ({feature_keys.dtype} vs {row_keys.dtype})"
            )
            return _key_strings(feature_keys), _key_strings(row_keys)
        return feature_keys, row_keys


def _key_strings(keys: pd.Series) -> pd.Series:
    """Keys as strings, with integral floats written without a decimal part."""
    if pd.api.types.is_float_dtype(keys) and (keys.dropna() % 1 == 0).all():
        keys = keys.astype("Int64")
    return keys.astype(str)


def join(
    features: FeatureCollection,
    attributes: AttributesLike,
    key_field: Optional[str] = None
) -> ThematicDataset:
    """Convenience function for the attribute join.

    Example:
        >>> dataset = join(
        ...     regions,
        ...     [{"region": "A", "rate": 10}, {"region": "B", "rate": 20}],
        ...     key_field="region"
        ... )
    """
    return AttributeJoiner(features).join(attributes, key_field)


def aggregate_points(
    features: FeatureCollection,
    points: Union[FeatureCollection, gpd.GeoDataFrame],
    value_column: Optional[str] = None,
    aggregation: Union[str, AggregationMethod] = AggregationMethod.MEAN,
    predicate: str = "within"
) -> AttributeTable:
    """Summarise point observations per feature.

    Points are assigned to the feature satisfying ``predicate`` and their
    values aggregated per feature key. The result is an attribute table
    keyed like ``features``, ready for :func:`join`.

    Args:
        features: Regions receiving the summary
        points: Point observations
        value_column: Column of ``points`` to aggregate (count only if None)
        aggregation: Aggregation method or its name
        predicate: Spatial predicate passed to ``geopandas.sjoin``

    Returns:
        AttributeTable with ``<value_column>_<aggregation>`` and
        ``point_count`` columns

    Example:
        >>> table = aggregate_points(
        ...     districts, clinics, value_column="cases", aggregation="sum"
        ... )
    """
    method = AggregationMethod(aggregation)
    point_data = points.data if isinstance(points, FeatureCollection) else points

    if value_column is not None and value_column not in point_data.columns:
        raise SchemaError(
            f"Value column '{value_column}' not found in points. "
            f"Available columns: {list(point_data.columns)}"
        )
    if point_data.crs is None:
        raise SchemaError("Point data has no coordinate reference system")

    if point_data.crs != features.crs:
        point_data = point_data.to_crs(features.crs)

    key_field = features.key_field
    regions = features.data[[key_field, features.data.geometry.name]].rename(
        columns={key_field: _FEATURE_KEY}
    )
    assigned = gpd.sjoin(point_data, regions, how="inner", predicate=predicate)
    grouped = assigned.groupby(_FEATURE_KEY, sort=False)

    summary = grouped.size().to_frame(name="point_count")
    if value_column is not None:
        summary[f"{value_column}_{method.value}"] = grouped[value_column].agg(method.value)

    summary = summary.reset_index().rename(columns={_FEATURE_KEY: key_field})
    logger.debug(
        f"Assigned {len(assigned)} of {len(point_data)} points to "
        f"{len(summary)} features"
    )
    return AttributeTable(data=summary, key_field=key_field, name="point summary")
