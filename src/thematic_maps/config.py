"""
Configuration for thematic map rendering.

Settings hold renderer and provider defaults, read from environment
variables and optionally from a YAML or JSON file. The dataset registry
keeps named dataset configurations so that the CLI and the web service can
refer to datasets by name.
"""

import json
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml

from thematic_maps.datasource import DatasetConfig
from thematic_maps.exceptions import ConfigurationError

IMAGE_FORMATS = ("png", "svg", "pdf", "jpg")


@dataclass
class Settings:
    """Renderer and provider settings.

    Attributes:
        dpi: Resolution of static images (dots per inch)
        figure_width: Width of static figures in inches
        figure_height: Height of static figures in inches
        image_format: Static image format (png, svg, pdf or jpg)
        tiles: Folium tile provider name or tile URL template
        tile_attribution: Attribution text, required for custom tile URLs
        boundary_api_url: geoBoundaries API root
        boundary_key_field: Key column of fetched boundaries
        request_timeout: HTTP timeout in seconds
        output_dir: Directory for rendered artifacts
    """

    dpi: int = field(default_factory=lambda: int(os.getenv("THEMATIC_MAPS_DPI", "150")))
    figure_width: float = 12.0
    figure_height: float = 8.0
    image_format: str = field(
        default_factory=lambda: os.getenv("THEMATIC_MAPS_IMAGE_FORMAT", "png")
    )
    tiles: str = field(
        default_factory=lambda: os.getenv("THEMATIC_MAPS_TILES", "OpenStreetMap")
    )
    tile_attribution: Optional[str] = field(
        default_factory=lambda: os.getenv("THEMATIC_MAPS_TILE_ATTRIBUTION")
    )
    boundary_api_url: str = field(
        default_factory=lambda: os.getenv(
            "THEMATIC_MAPS_BOUNDARY_API",
            "https://www.geoboundaries.org/api/current/gbOpen",
        )
    )
    boundary_key_field: str = "shapeISO"
    request_timeout: float = 30.0
    output_dir: Path = field(
        default_factory=lambda: Path(os.getenv("THEMATIC_MAPS_OUTPUT_DIR", "./output"))
    )

    def __post_init__(self):
        if isinstance(self.output_dir, str):
            self.output_dir = Path(self.output_dir)

    @property
    def figsize(self):
        return (self.figure_width, self.figure_height)

    @classmethod
    def load_from_file(cls, path: Path) -> "Settings":
        """Load settings from a YAML or JSON file.

        Keys absent from the file keep their defaults.

        Raises:
            ConfigurationError: If the file is missing, of unknown type or
                                contains unknown keys
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")

        data = _read_mapping(path)

        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown settings in {path}: {unknown}")

        return cls(**data)

    def save_to_file(self, path: Path) -> None:
        """Save settings to a YAML or JSON file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = asdict(self)
        data["output_dir"] = str(data["output_dir"])

        with open(path, "w") as f:
            if path.suffix in (".yaml", ".yml"):
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
            elif path.suffix == ".json":
                json.dump(data, f, indent=2)
            else:
                raise ConfigurationError(
                    f"Unsupported file format: {path.suffix}. Use .yaml, .yml, or .json"
                )

    def validate(self) -> bool:
        """Validate settings.

        Raises:
            ConfigurationError: If any value is invalid
        """
        if self.dpi <= 0:
            raise ConfigurationError("dpi must be positive")
        if self.figure_width <= 0 or self.figure_height <= 0:
            raise ConfigurationError("Figure dimensions must be positive")
        if self.image_format not in IMAGE_FORMATS:
            raise ConfigurationError(f"image_format must be one of {list(IMAGE_FORMATS)}")
        if not self.tiles:
            raise ConfigurationError("tiles must be a non-empty string")
        if "{" in self.tiles and not self.tile_attribution:
            raise ConfigurationError("tile_attribution is required for custom tile URLs")
        if self.request_timeout <= 0:
            raise ConfigurationError("request_timeout must be positive")
        return True


def _read_mapping(path: Path) -> Dict:
    """Read a YAML or JSON file holding a mapping."""
    with open(path, "r") as f:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        elif path.suffix == ".json":
            data = json.load(f)
        else:
            raise ConfigurationError(
                f"Unsupported file format: {path.suffix}. Use .yaml, .yml, or .json"
            )
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping")
    return data


def load_mapping(path: Path) -> Dict:
    """Load a style or request mapping from a YAML or JSON file."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"File not found: {path}")
    return _read_mapping(path)


# Natural Earth 1:110m countries, the usual sample for world choropleths
NATURAL_EARTH_COUNTRIES = DatasetConfig(
    path="https://naciscdn.org/naturalearth/110m/cultural/ne_110m_admin_0_countries.zip",
    id_column="ADM0_A3",
    value_column="POP_EST",
    name="Natural Earth countries (1:110m)"
)


class DatasetRegistry:
    """Registry for managing dataset configurations."""

    def __init__(self):
        self._datasets: Dict[str, DatasetConfig] = {}
        self._load_defaults()

    def _load_defaults(self):
        self.register("countries", NATURAL_EARTH_COUNTRIES)
        self.register("natural_earth_countries", NATURAL_EARTH_COUNTRIES)

    def register(self, name: str, config: DatasetConfig):
        """Register a dataset configuration under a case-insensitive name."""
        self._datasets[name.lower()] = config

    def get(self, name: str) -> DatasetConfig:
        """Retrieve a dataset configuration.

        Raises:
            KeyError: If dataset not found
        """
        name = name.lower()
        if name not in self._datasets:
            available = list(self._datasets.keys())
            raise KeyError(
                f"Dataset '{name}' not found. Available datasets: {available}"
            )
        return self._datasets[name]

    def list_datasets(self) -> Dict[str, str]:
        """Map dataset names to their descriptions."""
        return {
            name: config.name or config.path
            for name, config in self._datasets.items()
        }


# Global registry instance
registry = DatasetRegistry()


def get_dataset_config(name: str) -> DatasetConfig:
    """Get a dataset configuration from the global registry.

    Example:
        >>> config = get_dataset_config("countries")
        >>> print(config.id_column)
        ADM0_A3
    """
    return registry.get(name)


def register_dataset(name: str, config: DatasetConfig):
    """Register a dataset in the global registry."""
    registry.register(name, config)


def list_datasets() -> Dict[str, str]:
    """List all datasets in the global registry."""
    return registry.list_datasets()
