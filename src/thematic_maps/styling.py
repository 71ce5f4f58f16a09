"""
Style resolution for thematic maps.

A StyleSpec names the attribute to encode and how to draw it. Resolving it
against a ThematicDataset produces a ResolvedStyle: plain values (colours
per feature, legend entries, annotation placement) that both renderers
consume, so static and interactive output encode the data identically.
"""

import math
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import geopandas as gpd
import matplotlib
import matplotlib.colors as mcolors
import numpy as np
import pandas as pd

from thematic_maps.exceptions import StyleError, UnknownVariableError
from thematic_maps.joins import ThematicDataset
from thematic_maps.logging_config import get_logger

logger = get_logger(__name__)

CONTINUOUS = "continuous"
BINNED = "binned"

LEGEND_POSITIONS = (
    "best", "upper right", "upper left", "lower left", "lower right", "right",
    "center left", "center right", "lower center", "upper center", "center",
)
CORNER_POSITIONS = ("upper left", "upper right", "lower left", "lower right")

# Number of colours sampled for continuous legends
COLORBAR_STOPS = 11

# Widest longitude span drawn in a single UTM zone
LOCAL_EXTENT_DEGREES = 12.0
WORLD_CRS = "ESRI:54009"


class ColorScale(Enum):
    """Pre-defined color scales for map visualization."""
    VIRIDIS = "viridis"
    PLASMA = "plasma"
    INFERNO = "inferno"
    MAGMA = "magma"
    CIVIDIS = "cividis"
    BLUES = "Blues"
    GREENS = "Greens"
    REDS = "Reds"
    ORANGES = "Oranges"
    PURPLES = "Purples"
    GREYS = "Greys"
    YELLOW_GREEN_BLUE = "YlGnBu"
    YELLOW_ORANGE_RED = "YlOrRd"
    RED_YELLOW_GREEN = "RdYlGn"
    SPECTRAL = "Spectral"
    COOLWARM = "coolwarm"


@dataclass
class StyleSpec:
    """Configuration for a thematic map.

    Attributes:
        variable: Attribute to encode
        title: Map title
        palette: Colormap name or ColorScale
        breaks: Ordered class breaks, or "continuous" for an interpolated scale
        missing_color: Color for features without a value ("none" is transparent)
        missing_label: Legend label for features without a value
        legend: Whether to show the legend / colorbar
        legend_position: Matplotlib legend location
        legend_label: Legend caption (defaults to the variable name)
        scale_bar: Whether to draw a scale bar
        scale_bar_breaks: Scale bar tick distances in km (automatic if None)
        scale_bar_position: Corner holding the scale bar
        annotate_compass: Whether to draw a north arrow
        compass_position: Corner holding the north arrow
        compass_size: North arrow length as a fraction of the axes height
        credits: Credits text drawn under the map
        edge_color: Color for feature outlines
        edge_width: Width of feature outlines
        alpha: Fill opacity (0-1)
    """
    variable: str
    title: Optional[str] = None
    palette: Union[str, ColorScale] = ColorScale.VIRIDIS
    breaks: Union[str, Sequence[float]] = CONTINUOUS
    missing_color: str = "none"
    missing_label: str = "No data"
    legend: bool = True
    legend_position: str = "lower right"
    legend_label: Optional[str] = None
    scale_bar: bool = True
    scale_bar_breaks: Optional[Sequence[float]] = None
    scale_bar_position: str = "lower left"
    annotate_compass: bool = False
    compass_position: str = "upper right"
    compass_size: float = 0.08
    credits: Optional[str] = None
    edge_color: str = "black"
    edge_width: float = 0.5
    alpha: float = 1.0

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "StyleSpec":
        """Build a spec from free-form options, rejecting unknown keys.

        Raises:
            StyleError: If an option name is not a StyleSpec field
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise StyleError(
                f"Unknown style option(s): {unknown}. Known options: {sorted(known)}"
            )
        if "variable" not in options:
            raise StyleError("Style option 'variable' is required")
        return cls(**dict(options))

    def to_dict(self) -> Dict[str, Any]:
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["palette"] = self.get_palette_name()
        if not self.is_continuous:
            data["breaks"] = [float(b) for b in self.breaks]
        if self.scale_bar_breaks is not None:
            data["scale_bar_breaks"] = [float(b) for b in self.scale_bar_breaks]
        return data

    def get_palette_name(self) -> str:
        """Get the colormap name as a string."""
        if isinstance(self.palette, ColorScale):
            return self.palette.value
        return self.palette

    @property
    def is_continuous(self) -> bool:
        return isinstance(self.breaks, str) and self.breaks.lower() == CONTINUOUS

    def validate(self) -> bool:
        """Validate style parameters.

        Raises:
            StyleError: If any parameter is invalid
        """
        if not self.variable:
            raise StyleError("variable must be a non-empty string")

        if self.get_palette_name() not in matplotlib.colormaps:
            raise StyleError(f"Unknown palette '{self.get_palette_name()}'")

        if isinstance(self.breaks, str):
            if not self.is_continuous:
                raise StyleError(
                    f"breaks must be '{CONTINUOUS}' or a numeric sequence, got '{self.breaks}'"
                )
        else:
            _check_increasing("breaks", self.breaks, minimum=2)

        if self.scale_bar_breaks is not None:
            _check_increasing("scale_bar_breaks", self.scale_bar_breaks, minimum=2)
            if float(self.scale_bar_breaks[0]) < 0:
                raise StyleError("scale_bar_breaks must be non-negative")

        if not mcolors.is_color_like(self.missing_color):
            raise StyleError(f"missing_color '{self.missing_color}' is not a color")
        if not mcolors.is_color_like(self.edge_color):
            raise StyleError(f"edge_color '{self.edge_color}' is not a color")

        if self.legend_position not in LEGEND_POSITIONS:
            raise StyleError(
                f"legend_position must be one of {list(LEGEND_POSITIONS)}"
            )
        for name in ("scale_bar_position", "compass_position"):
            if getattr(self, name) not in CORNER_POSITIONS:
                raise StyleError(f"{name} must be one of {list(CORNER_POSITIONS)}")

        if not 0.0 < float(self.compass_size) <= 0.5:
            raise StyleError("compass_size must be in the range (0, 0.5]")
        if not 0.0 <= float(self.alpha) <= 1.0:
            raise StyleError("alpha must be in the range [0, 1]")
        if self.edge_width < 0:
            raise StyleError("edge_width must be non-negative")

        return True


def _check_increasing(name: str, values: Sequence[float], minimum: int):
    try:
        numbers = [float(v) for v in values]
    except (TypeError, ValueError) as e:
        raise StyleError(f"{name} must be numeric: {e}") from e
    if len(numbers) < minimum:
        raise StyleError(f"{name} needs at least {minimum} values")
    if any(not math.isfinite(v) for v in numbers):
        raise StyleError(f"{name} must be finite")
    if any(b <= a for a, b in zip(numbers, numbers[1:])):
        raise StyleError(f"{name} must be strictly increasing: {numbers}")


@dataclass(frozen=True)
class LegendEntry:
    """One swatch of a discrete legend."""
    label: str
    color: str


@dataclass(frozen=True)
class ScaleBar:
    """Resolved scale bar: tick distances in km and the corner to draw in."""
    breaks_km: Tuple[float, ...]
    position: str

    @property
    def length_km(self) -> float:
        return self.breaks_km[-1]


@dataclass(frozen=True)
class NorthArrow:
    """Resolved north arrow placement."""
    position: str
    size: float


@dataclass(frozen=True)
class ResolvedStyle:
    """Style values resolved against one dataset.

    ``feature_colors`` and ``feature_buckets`` follow the dataset's feature
    order. Buckets are numbered from 1; features without a value have
    bucket 0 and ``missing_color``. In continuous mode every valued feature
    has bucket 1.
    """
    variable: str
    mode: str
    palette: str
    breaks: Tuple[float, ...]
    vmin: Optional[float]
    vmax: Optional[float]
    missing_color: str
    missing_label: str
    feature_keys: Tuple[Any, ...]
    feature_values: Tuple[Optional[float], ...]
    feature_colors: Tuple[str, ...]
    feature_buckets: Tuple[int, ...]
    bucket_colors: Tuple[str, ...] = ()
    colorbar_colors: Tuple[str, ...] = ()
    legend_entries: Tuple[LegendEntry, ...] = ()
    title: Optional[str] = None
    legend: bool = True
    legend_position: str = "lower right"
    legend_label: Optional[str] = None
    scale_bar: Optional[ScaleBar] = None
    north_arrow: Optional[NorthArrow] = None
    credits: Optional[str] = None
    edge_color: str = "black"
    edge_width: float = 0.5
    alpha: float = 1.0

    @property
    def is_continuous(self) -> bool:
        return self.mode == CONTINUOUS

    @property
    def has_missing(self) -> bool:
        return 0 in self.feature_buckets

    def color_of(self, key: Any) -> str:
        """Colour assigned to the feature with ``key``."""
        return self.feature_colors[self.feature_keys.index(key)]

    def bucket_of(self, key: Any) -> int:
        """Bucket assigned to the feature with ``key`` (0 means no value)."""
        return self.feature_buckets[self.feature_keys.index(key)]

    def color_for(self, value: Optional[float]) -> str:
        """Colour the mapping gives to an arbitrary value."""
        if value is None or pd.isna(value):
            return self.missing_color
        cmap = matplotlib.colormaps[self.palette]
        if self.is_continuous:
            return _hex(cmap(_fraction(float(value), self.vmin, self.vmax)))
        return self.bucket_colors[_bucket(float(value), self.breaks) - 1]


def _hex(rgba) -> str:
    return mcolors.to_hex(rgba, keep_alpha=True)


def _fraction(value: float, vmin: Optional[float], vmax: Optional[float]) -> float:
    if vmin is None or vmax is None or vmax == vmin:
        return 0.5
    return min(max((value - vmin) / (vmax - vmin), 0.0), 1.0)


def _bucket(value: float, breaks: Sequence[float]) -> int:
    """1-based bucket index; the last bucket is closed, outliers are clamped."""
    index = int(np.searchsorted(breaks, value, side="right"))
    return min(max(index, 1), len(breaks) - 1)


def _format_number(value: float) -> str:
    return f"{value:,.6g}"


def is_local_extent(data: gpd.GeoDataFrame) -> bool:
    """Whether the data spans at most LOCAL_EXTENT_DEGREES of longitude."""
    if data.crs is None:
        return True
    lonlat = data if data.crs.is_geographic else data.to_crs(epsg=4326)
    minx, _, maxx, _ = lonlat.total_bounds
    if not (math.isfinite(minx) and math.isfinite(maxx)):
        return True
    return float(maxx - minx) <= LOCAL_EXTENT_DEGREES


def to_display_crs(data: gpd.GeoDataFrame) -> gpd.GeoDataFrame:
    """Project geographic data for drawing.

    Local extents go to their UTM zone, so distances are true; wider
    extents go to the Mollweide world projection. Projected data is kept.
    """
    if data.crs is None or not data.crs.is_geographic:
        return data
    if is_local_extent(data):
        return data.to_crs(data.estimate_utm_crs())
    return data.to_crs(WORLD_CRS)


def nice_length(length_km: float) -> float:
    """Largest 1, 2 or 5 times a power of ten not above ``length_km``."""
    if length_km <= 0 or not math.isfinite(length_km):
        return 1.0
    exponent = math.floor(math.log10(length_km))
    for multiplier in (5, 2, 1):
        candidate = multiplier * 10 ** exponent
        if candidate <= length_km:
            return float(candidate)
    return float(10 ** exponent)


def map_width_km(dataset: ThematicDataset) -> Optional[float]:
    """Width of the dataset extent in km, measured in a metric projection."""
    if dataset.is_empty or dataset.data.geometry.is_empty.all():
        return None
    data = to_display_crs(dataset.data)
    minx, _, maxx, _ = data.total_bounds
    meters_per_unit = data.crs.axis_info[0].unit_conversion_factor
    return float(maxx - minx) * meters_per_unit / 1000.0


class StyleResolver:
    """Resolves a StyleSpec against a ThematicDataset.

    Resolution is deterministic: equal datasets and specs give equal
    ResolvedStyle values.
    """

    def resolve(self, dataset: ThematicDataset, spec: StyleSpec) -> ResolvedStyle:
        """Compute colours, legend and annotations for ``dataset``.

        Raises:
            UnknownVariableError: If ``spec.variable`` is not an attribute
            StyleError: If the spec is invalid or the variable is not numeric
        """
        if spec.variable not in dataset.variables:
            raise UnknownVariableError(
                f"Variable '{spec.variable}' not found in dataset '{dataset.name}'. "
                f"Available variables: {dataset.variables}"
            )
        spec.validate()

        raw = dataset.values(spec.variable)
        try:
            values = pd.to_numeric(raw, errors="raise").astype(float)
        except (TypeError, ValueError) as e:
            raise StyleError(
                f"Variable '{spec.variable}' is not numeric: {e}"
            ) from e

        palette = spec.get_palette_name()
        cmap = matplotlib.colormaps[palette]
        missing = _hex(mcolors.to_rgba(spec.missing_color))
        present = values.notna().to_numpy()
        numbers = values.to_numpy()

        if spec.is_continuous:
            mode = CONTINUOUS
            breaks: Tuple[float, ...] = ()
            vmin = float(np.nanmin(numbers)) if present.any() else None
            vmax = float(np.nanmax(numbers)) if present.any() else None
            colors = [
                _hex(cmap(_fraction(v, vmin, vmax))) if ok else missing
                for v, ok in zip(numbers, present)
            ]
            buckets = [1 if ok else 0 for ok in present]
            bucket_colors: Tuple[str, ...] = ()
            colorbar_colors = tuple(
                _hex(c) for c in cmap(np.linspace(0.0, 1.0, COLORBAR_STOPS))
            )
            entries: List[LegendEntry] = []
        else:
            mode = BINNED
            breaks = tuple(float(b) for b in spec.breaks)
            n_buckets = len(breaks) - 1
            vmin, vmax = breaks[0], breaks[-1]
            bucket_colors = tuple(
                _hex(c) for c in cmap(np.linspace(0.0, 1.0, n_buckets))
            )
            outside = present & ((numbers < vmin) | (numbers > vmax))
            if outside.any():
                logger.warning(
                    f"{int(outside.sum())} value(s) of '{spec.variable}' fall outside "
                    f"breaks [{vmin}, {vmax}] and were clamped to the end classes"
                )
            buckets = [_bucket(v, breaks) if ok else 0 for v, ok in zip(numbers, present)]
            colors = [bucket_colors[b - 1] if b else missing for b in buckets]
            colorbar_colors = ()
            entries = [
                LegendEntry(
                    label=f"{_format_number(lo)} - {_format_number(hi)}",
                    color=bucket_colors[i],
                )
                for i, (lo, hi) in enumerate(zip(breaks, breaks[1:]))
            ]

        if not present.all():
            entries.append(LegendEntry(label=spec.missing_label, color=missing))

        resolved = ResolvedStyle(
            variable=spec.variable,
            mode=mode,
            palette=palette,
            breaks=breaks,
            vmin=vmin,
            vmax=vmax,
            missing_color=missing,
            missing_label=spec.missing_label,
            feature_keys=tuple(dataset.keys),
            feature_values=tuple(float(v) if ok else None for v, ok in zip(numbers, present)),
            feature_colors=tuple(colors),
            feature_buckets=tuple(buckets),
            bucket_colors=bucket_colors,
            colorbar_colors=colorbar_colors,
            legend_entries=tuple(entries),
            title=spec.title,
            legend=spec.legend,
            legend_position=spec.legend_position,
            legend_label=spec.legend_label or spec.variable,
            scale_bar=self._resolve_scale_bar(dataset, spec),
            north_arrow=(
                NorthArrow(position=spec.compass_position, size=float(spec.compass_size))
                if spec.annotate_compass else None
            ),
            credits=spec.credits,
            edge_color=spec.edge_color,
            edge_width=float(spec.edge_width),
            alpha=float(spec.alpha),
        )
        logger.debug(
            f"Resolved {mode} style for '{spec.variable}' over {len(dataset)} features"
        )
        return resolved

    def _resolve_scale_bar(
        self,
        dataset: ThematicDataset,
        spec: StyleSpec
    ) -> Optional[ScaleBar]:
        if not spec.scale_bar:
            return None
        if not is_local_extent(dataset.data):
            logger.info(
                f"Dataset '{dataset.name}' spans more than {LOCAL_EXTENT_DEGREES:g} "
                "degrees of longitude; no scale bar drawn"
            )
            return None
        if spec.scale_bar_breaks is not None:
            return ScaleBar(
                breaks_km=tuple(float(b) for b in spec.scale_bar_breaks),
                position=spec.scale_bar_position,
            )
        width = map_width_km(dataset)
        if width is None:
            return None
        length = nice_length(width / 4.0)
        return ScaleBar(
            breaks_km=(0.0, length / 2.0, length),
            position=spec.scale_bar_position,
        )


def resolve(dataset: ThematicDataset, spec: StyleSpec) -> ResolvedStyle:
    """Convenience function for :meth:`StyleResolver.resolve`."""
    return StyleResolver().resolve(dataset, spec)
