"""
End-to-end thematic map pipeline.

Runs Join -> Style Resolve -> Render for one request. Requests are
independent: inputs are loaded per request and nothing is cached. Any
failure stops the request at the stage where it occurred; the raised
ThematicMapError names that stage.
"""

from dataclasses import dataclass, field, fields, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from thematic_maps.config import Settings, get_dataset_config
from thematic_maps.datasource import (
    AttributeDataSource,
    AttributeTable,
    BoundaryProvider,
    DatasetConfig,
    FeatureCollection,
    FileDataSource,
    GeoBoundariesProvider,
    RasterDataSource,
)
from thematic_maps.exceptions import ConfigurationError, NotFoundError, ThematicMapError
from thematic_maps.joins import AttributesLike, ThematicDataset, join
from thematic_maps.logging_config import get_logger
from thematic_maps.styling import StyleSpec, resolve
from thematic_maps.visualizer import MapArtifact, MapRenderer, RenderMode

logger = get_logger(__name__)

_TEXT_OPTIONS = (
    "key_field", "mode", "features_path", "layer", "raster_path",
    "boundary_region", "dataset", "attributes_path", "attributes_key", "output",
)


def _run_stage(stage: str, func: Callable, *args, **kwargs):
    """Run one pipeline stage, tagging any pipeline error with its name."""
    try:
        return func(*args, **kwargs)
    except ThematicMapError as e:
        e.stage = stage
        logger.error(f"Thematic map request failed: {e}")
        raise


def render_thematic_map(
    features: FeatureCollection,
    attributes: Optional[AttributesLike],
    style: Union[StyleSpec, Mapping[str, Any]],
    mode: Union[str, RenderMode] = RenderMode.STATIC,
    key_field: Optional[str] = None,
    settings: Optional[Settings] = None
) -> MapArtifact:
    """Join, style and render one thematic map.

    Args:
        features: Geometry source
        attributes: Attribute rows to join, or None to map the features'
                    own columns
        style: StyleSpec or a mapping of StyleSpec options
        mode: "static" or "interactive"
        key_field: Join key (defaults to the features' key field)
        settings: Renderer settings

    Returns:
        The rendered MapArtifact

    Example:
        >>> artifact = render_thematic_map(
        ...     regions,
        ...     [{"region": "A", "rate": 10}, {"region": "B", "rate": 20}],
        ...     {"variable": "rate", "breaks": [0, 15, 25]},
        ... )
    """
    spec = _run_stage("style", _as_spec, style)

    if attributes is None:
        dataset = ThematicDataset.from_features(features)
    else:
        dataset = _run_stage("join", join, features, attributes, key_field)

    resolved = _run_stage("style", resolve, dataset, spec)
    artifact = _run_stage("render", MapRenderer(settings).render, dataset, resolved, mode)

    logger.info(
        f"Rendered {artifact.mode.value} map of '{spec.variable}' "
        f"({artifact.painted_regions}/{artifact.feature_count} features painted)"
    )
    return artifact


def _as_spec(style: Union[StyleSpec, Mapping[str, Any]]) -> StyleSpec:
    if isinstance(style, StyleSpec):
        return style
    return StyleSpec.from_dict(style)


@dataclass
class MapRequest:
    """A complete rendering request, as read from a file or a web request.

    Exactly one geometry source must be given: ``features_path``,
    ``raster_path``, ``boundary_region`` or ``dataset``.

    Attributes:
        key_field: Join key on the features
        style: StyleSpec options
        mode: "static" or "interactive"
        features_path: Vector file or URL
        layer: Layer of a multi-layer vector file
        raster_path: Raster file whose cells become features
        raster_band: Band of ``raster_path`` to read
        boundary_region: ISO3 code to fetch boundaries for
        boundary_level: Administrative level of the fetched boundaries
        dataset: Name of a registered dataset
        attributes_path: Tabular attribute file
        attributes_key: Key column of the attribute file, if named differently
        attributes: Inline attribute rows
        output: Path to save the artifact to
    """
    key_field: Optional[str] = None
    style: Dict[str, Any] = field(default_factory=dict)
    mode: str = RenderMode.STATIC.value
    features_path: Optional[str] = None
    layer: Optional[str] = None
    raster_path: Optional[str] = None
    raster_band: int = 1
    boundary_region: Optional[str] = None
    boundary_level: int = 1
    dataset: Optional[str] = None
    attributes_path: Optional[str] = None
    attributes_key: Optional[str] = None
    attributes: Optional[List[Dict[str, Any]]] = None
    output: Optional[str] = None

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "MapRequest":
        """Build a request, rejecting unknown keys.

        Raises:
            ConfigurationError: If an option is not a MapRequest field
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(f"Unknown request option(s): {unknown}")
        return cls(**dict(options))

    def validate(self) -> bool:
        """Check option types and the choice of sources.

        Raises:
            ConfigurationError: If any option is invalid
        """
        self._check_types()
        sources = [
            name for name in ("features_path", "raster_path", "boundary_region", "dataset")
            if getattr(self, name)
        ]
        if len(sources) != 1:
            raise ConfigurationError(
                "Exactly one geometry source is required "
                f"(features_path, raster_path, boundary_region, dataset); got {sources or 'none'}"
            )
        if self.attributes_path and self.attributes is not None:
            raise ConfigurationError("Give either attributes_path or inline attributes, not both")
        if self.mode not in [m.value for m in RenderMode]:
            raise ConfigurationError(f"mode must be one of {[m.value for m in RenderMode]}")
        if self.features_path and not self.key_field:
            raise ConfigurationError("key_field is required with features_path")
        if self.boundary_level < 0:
            raise ConfigurationError("boundary_level must be non-negative")
        if self.raster_band < 1:
            raise ConfigurationError("raster_band must be at least 1")
        return True

    def _check_types(self):
        for name in _TEXT_OPTIONS:
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise ConfigurationError(
                    f"{name} must be a string, got {type(value).__name__}"
                )
        for name in ("boundary_level", "raster_band"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(
                    f"{name} must be an integer, got {type(value).__name__}"
                )
        if not isinstance(self.style, Mapping):
            raise ConfigurationError("style must be a mapping of style options")
        if self.attributes is not None:
            if isinstance(self.attributes, (str, bytes, Mapping)) or not isinstance(
                self.attributes, Sequence
            ):
                raise ConfigurationError("attributes must be a list of row objects")
            if not all(isinstance(row, Mapping) for row in self.attributes):
                raise ConfigurationError("Every attribute row must be an object")


def load_features(
    request: MapRequest,
    settings: Settings,
    provider: Optional[BoundaryProvider] = None
) -> FeatureCollection:
    """Load the request's geometry source."""
    if request.features_path:
        return FileDataSource(_file_config(request)).load()
    if request.raster_path:
        return RasterDataSource(
            request.raster_path,
            band=request.raster_band,
            key_field=request.key_field or "cell",
        ).load()
    if request.dataset:
        try:
            config = get_dataset_config(request.dataset)
        except KeyError as e:
            raise NotFoundError(str(e.args[0])) from e
        if request.key_field:
            config = _with_key(config, request.key_field)
        return FileDataSource(config).load()

    provider = provider or GeoBoundariesProvider(
        base_url=settings.boundary_api_url,
        key_field=request.key_field or settings.boundary_key_field,
        timeout=settings.request_timeout,
    )
    return provider.fetch(request.boundary_region, request.boundary_level)


def load_attributes(request: MapRequest, key_field: str) -> Optional[AttributeTable]:
    """Load the request's attribute rows, renamed to ``key_field``."""
    if request.attributes_path:
        table = AttributeDataSource(
            request.attributes_path,
            request.attributes_key or key_field,
        ).load()
    elif request.attributes is not None:
        table = AttributeTable.from_records(
            request.attributes,
            request.attributes_key or key_field,
        )
    else:
        return None

    if table.key_field != key_field:
        table = AttributeTable(
            data=table.data.rename(columns={table.key_field: key_field}),
            key_field=key_field,
            name=table.name,
        )
    return table


def _file_config(request: MapRequest) -> DatasetConfig:
    return DatasetConfig(
        path=request.features_path,
        id_column=request.key_field,
        layer=request.layer,
    )


def _with_key(config: DatasetConfig, key_field: str) -> DatasetConfig:
    return replace(config, id_column=key_field, value_column=None)


def run_request(
    request: Union[MapRequest, Mapping[str, Any]],
    settings: Optional[Settings] = None,
    provider: Optional[BoundaryProvider] = None
) -> MapArtifact:
    """Load the inputs of a request and render it.

    Args:
        request: MapRequest or a mapping of its options
        settings: Renderer and provider settings
        provider: Boundary provider overriding the geoBoundaries default

    Returns:
        The rendered MapArtifact (also saved when ``request.output`` is set)
    """
    settings = settings or Settings()
    if not isinstance(request, MapRequest):
        request = _run_stage("load", MapRequest.from_dict, request)
    _run_stage("load", request.validate)
    _run_stage("load", settings.validate)

    features = _run_stage("load", load_features, request, settings, provider)
    attributes = _run_stage("load", load_attributes, request, features.key_field)

    artifact = render_thematic_map(
        features,
        attributes,
        request.style,
        mode=request.mode,
        settings=settings,
    )
    if request.output:
        artifact.save(request.output)
    return artifact
