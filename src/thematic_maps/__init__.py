"""
Thematic map rendering toolkit.

This package joins attribute tables onto administrative boundaries or other
features and renders the result as a choropleth: a static image or an
interactive tile map.

Modules:
    datasource: Feature collections, attribute tables and their loaders
    joins: Left join of attributes onto features, point aggregation
    styling: Style options and their resolution
    visualizer: Static and interactive rendering
    pipeline: Join -> Style -> Render for one request
    config: Settings and the dataset registry

Example:
    >>> from thematic_maps import (
    ...     load_dataset,
    ...     AttributeDataSource,
    ...     StyleSpec,
    ...     render_thematic_map,
    ... )
    >>>
    >>> counties = load_dataset("data/counties.gpkg", id_column="GEOID")
    >>> rates = AttributeDataSource("data/rates.csv", key_field="GEOID").load()
    >>>
    >>> artifact = render_thematic_map(
    ...     counties,
    ...     rates,
    ...     StyleSpec(variable="prevalence", breaks=[0, 5, 10, 20], title="Prevalence"),
    ... )
    >>> artifact.save("prevalence.png")
"""

import logging

from thematic_maps.exceptions import (
    ThematicMapError,
    SchemaError,
    DuplicateKeyError,
    UnknownVariableError,
    StyleError,
    EmptyGeometryError,
    RenderBackendError,
    LoadError,
    NotFoundError,
    ConfigurationError,
)

from thematic_maps.datasource import (
    FeatureCollection,
    AttributeTable,
    DatasetConfig,
    DataSource,
    FileDataSource,
    RasterDataSource,
    AttributeDataSource,
    BoundaryProvider,
    GeoBoundariesProvider,
    load_dataset,
)

from thematic_maps.joins import (
    AggregationMethod,
    ThematicDataset,
    AttributeJoiner,
    join,
    aggregate_points,
)

from thematic_maps.styling import (
    ColorScale,
    StyleSpec,
    ResolvedStyle,
    LegendEntry,
    ScaleBar,
    NorthArrow,
    StyleResolver,
    resolve,
)

from thematic_maps.visualizer import (
    RenderMode,
    MapArtifact,
    MapRenderer,
    render,
)

from thematic_maps.pipeline import (
    MapRequest,
    render_thematic_map,
    run_request,
)

from thematic_maps.config import (
    Settings,
    DatasetRegistry,
    registry,
    get_dataset_config,
    register_dataset,
    list_datasets,
)

from thematic_maps.logging_config import setup_logging, get_logger

__version__ = "0.1.0"

logging.getLogger("thematic_maps").addHandler(logging.NullHandler())

__all__ = [
    # Errors
    "ThematicMapError",
    "SchemaError",
    "DuplicateKeyError",
    "UnknownVariableError",
    "StyleError",
    "EmptyGeometryError",
    "RenderBackendError",
    "LoadError",
    "NotFoundError",
    "ConfigurationError",
    # Data loading
    "FeatureCollection",
    "AttributeTable",
    "DatasetConfig",
    "DataSource",
    "FileDataSource",
    "RasterDataSource",
    "AttributeDataSource",
    "BoundaryProvider",
    "GeoBoundariesProvider",
    "load_dataset",
    # Join
    "AggregationMethod",
    "ThematicDataset",
    "AttributeJoiner",
    "join",
    "aggregate_points",
    # Styling
    "ColorScale",
    "StyleSpec",
    "ResolvedStyle",
    "LegendEntry",
    "ScaleBar",
    "NorthArrow",
    "StyleResolver",
    "resolve",
    # Rendering
    "RenderMode",
    "MapArtifact",
    "MapRenderer",
    "render",
    # Pipeline
    "MapRequest",
    "render_thematic_map",
    "run_request",
    # Configuration
    "Settings",
    "DatasetRegistry",
    "registry",
    "get_dataset_config",
    "register_dataset",
    "list_datasets",
    "setup_logging",
    "get_logger",
]
