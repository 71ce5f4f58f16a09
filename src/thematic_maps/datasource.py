"""
Geometry and attribute sources for thematic maps.

This module loads the two inputs of the pipeline: feature collections
(vector files, raster grids, or administrative boundaries fetched from a
remote provider) and attribute tables keyed by the same identifier.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import fiona
import geopandas as gpd
import numpy as np
import pandas as pd
import rasterio
import requests
from shapely.geometry import box

from thematic_maps.exceptions import (
    DuplicateKeyError,
    LoadError,
    NotFoundError,
    SchemaError,
)
from thematic_maps.logging_config import get_logger

logger = get_logger(__name__)

REMOTE_PREFIXES = ("http://", "https://", "zip+http://", "zip+https://", "/vsicurl/")


def _is_remote(path: str) -> bool:
    return str(path).startswith(REMOTE_PREFIXES)


@dataclass
class FeatureCollection:
    """An ordered set of features sharing one coordinate reference system.

    Attributes:
        data: GeoDataFrame holding one row per feature
        key_field: Column holding the join identifier, unique per feature
        name: Human-readable name for the collection
    """
    data: gpd.GeoDataFrame
    key_field: str
    name: str = "features"

    def __post_init__(self):
        if self.data.crs is None:
            raise SchemaError(
                f"Feature collection '{self.name}' has no coordinate reference system",
                stage="load",
            )
        if self.key_field not in self.data.columns:
            raise SchemaError(
                f"Key field '{self.key_field}' not found in feature collection "
                f"'{self.name}'. Available columns: {list(self.data.columns)}",
                stage="load",
            )
        duplicated = self.data[self.key_field][self.data[self.key_field].duplicated()]
        if len(duplicated) > 0:
            keys = sorted(set(duplicated.astype(str)))
            raise DuplicateKeyError(
                f"Feature collection '{self.name}' has duplicate keys in "
                f"'{self.key_field}': {keys}",
                keys=keys,
                stage="load",
            )

    @property
    def crs(self):
        return self.data.crs

    @property
    def keys(self) -> List[Any]:
        return self.data[self.key_field].tolist()

    def __len__(self) -> int:
        return len(self.data)


@dataclass
class AttributeTable:
    """Tabular measurements keyed by the join field.

    Duplicate keys are allowed here and reported by the join stage.

    Attributes:
        data: DataFrame with one row per measured entity
        key_field: Column holding the join identifier
        name: Human-readable name for the table
    """
    data: pd.DataFrame
    key_field: str
    name: str = "attributes"

    def __post_init__(self):
        if self.key_field not in self.data.columns:
            raise SchemaError(
                f"Key field '{self.key_field}' not found in attribute table "
                f"'{self.name}'. Available columns: {list(self.data.columns)}"
            )

    @classmethod
    def from_records(
        cls,
        rows: Sequence[Mapping[str, Any]],
        key_field: str,
        name: str = "attributes"
    ) -> "AttributeTable":
        """Build a table from a sequence of attribute rows.

        Example:
            >>> table = AttributeTable.from_records(
            ...     [{"id": "A", "rate": 10}, {"id": "B", "rate": 20}],
            ...     key_field="id"
            ... )
        """
        frame = pd.DataFrame.from_records(list(rows))
        if frame.empty and key_field not in frame.columns:
            frame = pd.DataFrame(columns=[key_field])
        return cls(data=frame, key_field=key_field, name=name)

    @property
    def variables(self) -> List[str]:
        return [c for c in self.data.columns if c != self.key_field]

    def __len__(self) -> int:
        return len(self.data)


@dataclass
class DatasetConfig:
    """Configuration for a geospatial or tabular dataset.

    Attributes:
        path: Path or URL of the data file
        id_column: Column name containing unique identifiers
        value_column: Column name containing the values to visualize
        layer: Layer name for multi-layer formats like GeoDatabase
        name: Human-readable name for the dataset
    """
    path: str
    id_column: str
    value_column: Optional[str] = None
    layer: Optional[str] = None
    name: Optional[str] = None

    def __post_init__(self):
        if self.name is None:
            self.name = Path(str(self.path)).stem or "dataset"


class DataSource(ABC):
    """Abstract base class for feature collection sources."""

    @abstractmethod
    def load(self) -> FeatureCollection:
        """Load and return the feature collection."""
        pass

    @abstractmethod
    def get_config(self) -> DatasetConfig:
        """Return the dataset configuration."""
        pass


class FileDataSource(DataSource):
    """Data source that loads vector features from a file path or URL.

    Supports the formats GeoPandas/Fiona read:
    - Shapefile (.shp) and zipped shapefiles
    - GeoDatabase (.gdb) with layer selection
    - GeoJSON (.geojson, .json)
    - GeoPackage (.gpkg)
    """

    def __init__(self, config: DatasetConfig):
        """Initialize the data source.

        Args:
            config: Dataset configuration specifying path and column mappings
        """
        self.config = config

    def load(self) -> FeatureCollection:
        """Load the features from file.

        Returns:
            FeatureCollection keyed by the configured id column

        Raises:
            LoadError: If the file is missing, unreadable or has no CRS
            SchemaError: If the configured columns are missing
        """
        path = str(self.config.path)

        if not _is_remote(path) and not Path(path).exists():
            raise LoadError(f"Data file not found: {path}")

        logger.debug(f"Reading features from {path}")
        try:
            if path.lower().rstrip("/").endswith(".gdb"):
                data = self._load_geodatabase(path)
            else:
                read_kwargs = {"layer": self.config.layer} if self.config.layer else {}
                data = gpd.read_file(path, **read_kwargs)
        except LoadError:
            raise
        except Exception as e:
            raise LoadError(f"Failed to read {path}: {e}") from e

        if data.crs is None:
            raise LoadError(f"Dataset {path} has no coordinate reference system")

        self._validate_columns(data)
        logger.debug(f"Loaded {len(data)} features from {path}")
        return FeatureCollection(
            data=data,
            key_field=self.config.id_column,
            name=self.config.name,
        )

    def _load_geodatabase(self, path: str) -> gpd.GeoDataFrame:
        """Load data from a GeoDatabase file, selecting the configured layer."""
        available_layers = fiona.listlayers(path)

        layer = self.config.layer
        if layer is None:
            if len(available_layers) == 1:
                layer = available_layers[0]
            else:
                raise LoadError(
                    f"GeoDatabase has multiple layers: {available_layers}. "
                    "Please specify a layer in the config."
                )

        if layer not in available_layers:
            raise LoadError(
                f"Layer '{layer}' not found. "
                f"Available layers: {available_layers}"
            )

        return gpd.read_file(path, layer=layer)

    def _validate_columns(self, data: pd.DataFrame):
        """Validate that required columns exist in the loaded data."""
        missing = []
        if self.config.id_column not in data.columns:
            missing.append(f"id_column: {self.config.id_column}")

        if self.config.value_column and self.config.value_column not in data.columns:
            missing.append(f"value_column: {self.config.value_column}")

        if missing:
            raise SchemaError(
                f"Missing columns in dataset: {missing}. "
                f"Available columns: {list(data.columns)}",
                stage="load",
            )

    def get_config(self) -> DatasetConfig:
        """Return the dataset configuration."""
        return self.config

    def list_layers(self) -> List[str]:
        """List available layers of the file.

        Returns:
            List of layer names

        Raises:
            LoadError: If the file cannot be opened
        """
        try:
            return fiona.listlayers(str(self.config.path))
        except Exception as e:
            raise LoadError(f"Failed to list layers of {self.config.path}: {e}") from e


class RasterDataSource(DataSource):
    """Data source that turns a gridded surface into grid-cell features.

    Each valid (non-nodata) cell of the selected band becomes a square
    polygon keyed ``"<row>_<col>"`` carrying the cell value.
    """

    def __init__(
        self,
        path: str,
        band: int = 1,
        value_name: str = "value",
        key_field: str = "cell",
        name: Optional[str] = None
    ):
        self.config = DatasetConfig(
            path=path,
            id_column=key_field,
            value_column=value_name,
            name=name,
        )
        self.band = band

    def load(self) -> FeatureCollection:
        """Read the band and build one polygon per valid cell.

        Raises:
            LoadError: If the raster cannot be read or has no CRS
        """
        path = str(self.config.path)
        logger.debug(f"Reading raster band {self.band} from {path}")
        try:
            with rasterio.open(path) as src:
                values = src.read(self.band, masked=True)
                transform = src.transform
                crs = src.crs
        except Exception as e:
            raise LoadError(f"Failed to read raster {path}: {e}") from e

        if crs is None:
            raise LoadError(f"Raster {path} has no coordinate reference system")

        rows, cols = np.nonzero(~np.ma.getmaskarray(values))
        geometries = []
        for row, col in zip(rows, cols):
            left, top = transform * (col, row)
            right, bottom = transform * (col + 1, row + 1)
            geometries.append(box(min(left, right), min(top, bottom),
                                  max(left, right), max(top, bottom)))

        data = gpd.GeoDataFrame(
            {
                self.config.id_column: [f"{r}_{c}" for r, c in zip(rows, cols)],
                self.config.value_column: np.asarray(values[rows, cols], dtype=float),
            },
            geometry=geometries,
            crs=crs.to_wkt(),
        )
        logger.debug(f"Built {len(data)} grid-cell features from {path}")
        return FeatureCollection(
            data=data,
            key_field=self.config.id_column,
            name=self.config.name,
        )

    def get_config(self) -> DatasetConfig:
        return self.config


class AttributeDataSource:
    """Loads an attribute table from a tabular file.

    Supported formats: CSV, TSV, Excel, Parquet, JSON.
    """

    READERS = {
        ".csv": pd.read_csv,
        ".tsv": lambda p, **kw: pd.read_csv(p, sep="\t", **kw),
        ".txt": lambda p, **kw: pd.read_csv(p, sep=None, engine="python", **kw),
        ".xlsx": pd.read_excel,
        ".xls": pd.read_excel,
        ".parquet": pd.read_parquet,
        ".json": pd.read_json,
    }

    def __init__(self, path: str, key_field: str, name: Optional[str] = None):
        self.path = str(path)
        self.key_field = key_field
        self.name = name or Path(self.path).stem

    def load(self) -> AttributeTable:
        """Read the table.

        Key columns are read as strings from delimited text so that codes
        such as ``"01"`` keep their leading zeros.

        Raises:
            LoadError: If the file is missing, of unknown type or malformed
            SchemaError: If the key column is missing
        """
        suffix = Path(self.path).suffix.lower()
        reader = self.READERS.get(suffix)
        if reader is None:
            raise LoadError(
                f"Unsupported attribute file format: {suffix or self.path}. "
                f"Supported: {sorted(self.READERS)}"
            )
        if not _is_remote(self.path) and not Path(self.path).exists():
            raise LoadError(f"Attribute file not found: {self.path}")

        kwargs: Dict[str, Any] = {}
        if suffix in (".csv", ".tsv", ".txt"):
            kwargs["dtype"] = {self.key_field: str}

        try:
            data = reader(self.path, **kwargs)
        except Exception as e:
            raise LoadError(f"Failed to read attribute file {self.path}: {e}") from e

        if self.key_field not in data.columns:
            raise SchemaError(
                f"Key field '{self.key_field}' not found in attribute file "
                f"{self.path}. Available columns: {list(data.columns)}",
                stage="load",
            )

        logger.debug(f"Loaded {len(data)} attribute rows from {self.path}")
        return AttributeTable(data=data, key_field=self.key_field, name=self.name)


class BoundaryProvider(ABC):
    """Supplies administrative boundaries for a region and level."""

    @abstractmethod
    def fetch(self, region: str, level: int) -> FeatureCollection:
        """Return the administrative units of ``region`` at ``level``."""
        pass


@dataclass
class GeoBoundariesProvider(BoundaryProvider):
    """Fetches administrative polygons from the geoBoundaries API.

    The metadata endpoint ``{base_url}/{ISO3}/ADM{level}/`` returns a JSON
    document whose ``gjDownloadURL`` points at the GeoJSON boundaries.

    Attributes:
        base_url: API root for the release type to use
        key_field: Column used as the join key of the returned features
        timeout: HTTP timeout in seconds
    """
    base_url: str = "https://www.geoboundaries.org/api/current/gbOpen"
    key_field: str = "shapeISO"
    timeout: float = 30.0
    session: requests.Session = field(default_factory=requests.Session, repr=False)

    def fetch(self, region: str, level: int) -> FeatureCollection:
        """Fetch boundaries for an ISO3 country code and admin level.

        Raises:
            NotFoundError: If the API does not know the region/level
            LoadError: On network failures or malformed responses
        """
        region = region.strip().upper()
        if level < 0:
            raise NotFoundError(f"Invalid administrative level {level} for {region}")

        url = f"{self.base_url.rstrip('/')}/{region}/ADM{level}/"
        metadata = self._get_json(url, region, level)

        if isinstance(metadata, list):
            metadata = metadata[0] if metadata else None
        if not metadata or not metadata.get("gjDownloadURL"):
            raise NotFoundError(f"No boundaries published for {region} ADM{level}")

        geojson = self._get_json(metadata["gjDownloadURL"], region, level)
        try:
            data = gpd.GeoDataFrame.from_features(geojson["features"], crs="EPSG:4326")
        except (KeyError, TypeError, ValueError) as e:
            raise LoadError(f"Malformed boundary GeoJSON for {region} ADM{level}: {e}") from e

        logger.info(f"Fetched {len(data)} ADM{level} boundaries for {region}")
        return FeatureCollection(
            data=data,
            key_field=self.key_field,
            name=metadata.get("boundaryName") or f"{region} ADM{level}",
        )

    def _get_json(self, url: str, region: str, level: int) -> Any:
        logger.debug(f"GET {url}")
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise LoadError(f"Boundary request for {region} ADM{level} failed: {e}") from e

        if response.status_code == 404:
            raise NotFoundError(f"Unknown region {region} ADM{level}")
        try:
            response.raise_for_status()
            return response.json()
        except requests.HTTPError as e:
            raise LoadError(f"Boundary request for {region} ADM{level} failed: {e}") from e
        except ValueError as e:
            raise LoadError(f"Boundary service returned invalid JSON for {url}: {e}") from e


def load_dataset(
    path: str,
    id_column: str,
    value_column: Optional[str] = None,
    layer: Optional[str] = None,
    name: Optional[str] = None
) -> FeatureCollection:
    """Convenience function to quickly load a feature collection.

    Args:
        path: Path to the data file
        id_column: Column containing unique identifiers
        value_column: Optional column that must be present
        layer: Layer name for multi-layer formats like GeoDatabase
        name: Human-readable name for the dataset

    Returns:
        Loaded FeatureCollection

    Example:
        >>> counties = load_dataset(
        ...     path="data/counties.gpkg",
        ...     id_column="GEOID",
        ... )
    """
    config = DatasetConfig(
        path=path,
        id_column=id_column,
        value_column=value_column,
        layer=layer,
        name=name
    )
    return FileDataSource(config).load()
