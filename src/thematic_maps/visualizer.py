"""
Map rendering for resolved thematic datasets.

Static mode draws the features with matplotlib and returns a single image.
Interactive mode builds a folium (Leaflet) document over a tile basemap,
carrying the same per-feature colours and a branca legend.
"""

import base64
import html
import io
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import branca.colormap as bcm
import folium
import geopandas as gpd
import matplotlib.colors as mcolors
import matplotlib.pyplot as plt
from matplotlib.axes import Axes
from matplotlib.cm import ScalarMappable
from matplotlib.figure import Figure
from matplotlib.patches import Patch, Rectangle

from thematic_maps.config import Settings
from thematic_maps.exceptions import (
    EmptyGeometryError,
    RenderBackendError,
    StyleError,
    ThematicMapError,
    UnknownVariableError,
)
from thematic_maps.joins import ThematicDataset
from thematic_maps.logging_config import get_logger
from thematic_maps.styling import ResolvedStyle, to_display_crs

logger = get_logger(__name__)

MIME_TYPES = {
    "png": "image/png",
    "svg": "image/svg+xml",
    "pdf": "application/pdf",
    "jpg": "image/jpeg",
    "html": "text/html",
}

POLYGON_TYPES = ("Polygon", "MultiPolygon")
LINE_TYPES = ("LineString", "MultiLineString", "LinearRing")

# Distance of annotations from the axes edge, as a fraction of the axes
ANNOTATION_MARGIN = 0.05


class RenderMode(Enum):
    """Output kinds produced by the renderer."""
    STATIC = "static"
    INTERACTIVE = "interactive"


@dataclass
class MapArtifact:
    """A rendered map.

    Attributes:
        mode: Static image or interactive document
        format: File format (png, svg, pdf, jpg or html)
        content: Image bytes, or HTML text for interactive documents
        feature_count: Number of features in the rendered dataset
        painted_regions: Number of features actually drawn
        title: Map title
    """
    mode: RenderMode
    format: str
    content: Union[bytes, str]
    feature_count: int
    painted_regions: int
    title: Optional[str] = None

    @property
    def media_type(self) -> str:
        return MIME_TYPES.get(self.format, f"image/{self.format}")

    def to_bytes(self) -> bytes:
        if isinstance(self.content, str):
            return self.content.encode("utf-8")
        return self.content

    def to_data_uri(self) -> str:
        """Encode the artifact as a ``data:`` URI."""
        encoded = base64.b64encode(self.to_bytes()).decode("ascii")
        return f"data:{self.media_type};base64,{encoded}"

    def save(self, filepath: Union[str, Path]) -> Path:
        """Write the artifact to a file, creating parent directories."""
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self.to_bytes())
        logger.info(f"Saved {self.mode.value} map to {path}")
        return path


def _with_alpha(color: str, alpha: float) -> str:
    """Hex colour whose alpha channel is scaled by ``alpha``."""
    r, g, b, a = mcolors.to_rgba(color)
    return mcolors.to_hex((r, g, b, a * alpha), keep_alpha=True)


def _split_alpha(color: str) -> Tuple[str, float]:
    """Split a colour into an opaque hex string and its opacity."""
    r, g, b, a = mcolors.to_rgba(color)
    return mcolors.to_hex((r, g, b)), float(a)


def _drawable(data: gpd.GeoDataFrame):
    geometry = data.geometry
    return (~(geometry.isna() | geometry.is_empty)).to_numpy()


def _corner(position: str) -> Tuple[bool, bool]:
    """(is_right, is_upper) for a corner name."""
    vertical, horizontal = position.split()
    return horizontal == "right", vertical == "upper"


class MapRenderer:
    """Renders thematic datasets to static images or interactive documents.

    Each call to :meth:`render` produces exactly one MapArtifact and keeps
    no state between calls.
    """

    def __init__(self, settings: Optional[Settings] = None):
        """Initialize the renderer.

        Args:
            settings: Figure size, DPI, format and tile settings
        """
        self.settings = settings or Settings()

    def render(
        self,
        dataset: ThematicDataset,
        style: ResolvedStyle,
        mode: Union[str, RenderMode] = RenderMode.STATIC
    ) -> MapArtifact:
        """Render ``dataset`` with ``style``.

        Args:
            dataset: Joined features and attributes
            style: Style resolved against the same dataset
            mode: "static" or "interactive"

        Returns:
            The rendered MapArtifact

        Raises:
            EmptyGeometryError: If the dataset has no features
            UnknownVariableError: If the styled variable is not on the dataset
            StyleError: If the style was resolved for a different dataset
            RenderBackendError: If the drawing backend fails
        """
        mode = RenderMode(mode)
        self._check_inputs(dataset, style)

        logger.debug(f"Rendering {len(dataset)} features in {mode.value} mode")
        if mode is RenderMode.STATIC:
            return self._render_static(dataset, style)
        return self._render_interactive(dataset, style)

    def _check_inputs(self, dataset: ThematicDataset, style: ResolvedStyle):
        if dataset.is_empty:
            raise EmptyGeometryError(
                f"Dataset '{dataset.name}' has no features to render"
            )
        if not _drawable(dataset.data).any():
            raise EmptyGeometryError(
                f"Dataset '{dataset.name}' has only empty geometries"
            )
        if style.variable not in dataset.variables:
            raise UnknownVariableError(
                f"Variable '{style.variable}' is not an attribute of dataset "
                f"'{dataset.name}'. Available variables: {dataset.variables}",
                stage="render",
            )
        if len(style.feature_colors) != len(dataset):
            raise StyleError(
                f"Style holds {len(style.feature_colors)} feature colours but the "
                f"dataset has {len(dataset)} features",
                stage="render",
            )

    # ------------------------------------------------------------------
    # Static rendering
    # ------------------------------------------------------------------

    def _render_static(self, dataset: ThematicDataset, style: ResolvedStyle) -> MapArtifact:
        fmt = self.settings.image_format
        fig, ax = self._new_figure()
        try:
            self.plot(dataset, style, ax=ax)
            content = self.to_bytes(fig, format=fmt, dpi=self.settings.dpi)
        except ThematicMapError:
            raise
        except Exception as e:
            raise RenderBackendError(f"Could not draw static map: {e}") from e
        finally:
            plt.close(fig)

        return MapArtifact(
            mode=RenderMode.STATIC,
            format=fmt,
            content=content,
            feature_count=len(dataset),
            painted_regions=int(_drawable(dataset.data).sum()),
            title=style.title,
        )

    def _new_figure(self) -> Tuple[Figure, Axes]:
        try:
            return plt.subplots(1, 1, figsize=self.settings.figsize)
        except Exception as e:
            raise RenderBackendError(f"Could not create a drawing surface: {e}") from e

    def plot(
        self,
        dataset: ThematicDataset,
        style: ResolvedStyle,
        ax: Optional[Axes] = None
    ) -> Tuple[Figure, Axes]:
        """Draw the map on matplotlib axes.

        Geographic data is projected first: local extents to their UTM
        zone, so that the scale bar is true to distance, and wider extents
        to a world projection.

        Args:
            dataset: Joined features and attributes
            style: Style resolved against the same dataset
            ax: Existing axes to plot on (creates new if None)

        Returns:
            Tuple of (Figure, Axes)
        """
        if ax is None:
            fig, ax = self._new_figure()
        else:
            fig = ax.get_figure()

        data = to_display_crs(dataset.data)
        drawable = _drawable(data)
        fills = [_with_alpha(c, style.alpha) for c in style.feature_colors]

        painted = data[drawable].copy()
        painted["_fill"] = [f for f, ok in zip(fills, drawable) if ok]
        for fill, group in painted.groupby("_fill", sort=False):
            self._paint(ax, group.geometry, fill, style)

        if style.title:
            ax.set_title(style.title, fontsize=14, fontweight='bold')

        if style.legend:
            self._add_legend(fig, ax, style)

        # Annotations are placed relative to the final data limits
        ax.set_axis_off()
        if style.scale_bar is not None:
            meters_per_unit = data.crs.axis_info[0].unit_conversion_factor
            self._add_scale_bar(ax, style, meters_per_unit)
        if style.north_arrow is not None:
            self._add_north_arrow(ax, style)
        if style.credits:
            fig.text(0.99, 0.01, style.credits, ha="right", va="bottom",
                     fontsize=8, color="dimgray")

        return fig, ax

    def _paint(self, ax: Axes, geometry: gpd.GeoSeries, fill: str, style: ResolvedStyle):
        """Paint features sharing one fill colour."""
        geom_types = geometry.geom_type
        polygons = geometry[geom_types.isin(POLYGON_TYPES)]
        lines = geometry[geom_types.isin(LINE_TYPES)]
        points = geometry[~geom_types.isin(POLYGON_TYPES + LINE_TYPES)]

        if not polygons.empty:
            polygons.plot(ax=ax, color=fill, edgecolor=style.edge_color,
                          linewidth=style.edge_width)
        if not lines.empty:
            lines.plot(ax=ax, color=fill, linewidth=max(style.edge_width, 1.0))
        if not points.empty:
            points.plot(ax=ax, color=fill, edgecolor=style.edge_color,
                        linewidth=style.edge_width, markersize=30)

    def _add_legend(self, fig: Figure, ax: Axes, style: ResolvedStyle):
        if style.is_continuous and style.vmin is not None:
            mappable = ScalarMappable(
                norm=mcolors.Normalize(vmin=style.vmin, vmax=style.vmax),
                cmap=style.palette,
            )
            mappable.set_array([])
            fig.colorbar(mappable, ax=ax, shrink=0.6, label=style.legend_label)

        if style.legend_entries:
            handles = [
                Patch(facecolor=entry.color, edgecolor=style.edge_color, label=entry.label)
                for entry in style.legend_entries
            ]
            ax.legend(
                handles=handles,
                loc=style.legend_position,
                title=None if style.is_continuous else style.legend_label,
                frameon=True,
                fontsize=9,
            )

    def _add_scale_bar(self, ax: Axes, style: ResolvedStyle, meters_per_unit: float):
        """Draw alternating scale bar segments with km labels."""
        scale = style.scale_bar
        x0, x1 = ax.get_xlim()
        y0, y1 = ax.get_ylim()
        width, height = x1 - x0, y1 - y0
        ax.set_autoscale_on(False)

        units_per_km = 1000.0 / meters_per_unit
        length = scale.length_km * units_per_km
        bar_height = height * 0.012
        is_right, is_upper = _corner(scale.position)

        start = x1 - width * ANNOTATION_MARGIN - length if is_right else x0 + width * ANNOTATION_MARGIN
        base = y1 - height * (ANNOTATION_MARGIN + 0.03) if is_upper else y0 + height * ANNOTATION_MARGIN

        for i, (lo, hi) in enumerate(zip(scale.breaks_km, scale.breaks_km[1:])):
            ax.add_patch(Rectangle(
                (start + lo * units_per_km, base),
                (hi - lo) * units_per_km,
                bar_height,
                facecolor="black" if i % 2 == 0 else "white",
                edgecolor="black",
                linewidth=0.8,
                zorder=20,
            ))

        for i, tick in enumerate(scale.breaks_km):
            label = f"{tick:g}"
            if i == len(scale.breaks_km) - 1:
                label += " km"
            ax.text(start + tick * units_per_km, base + bar_height * 2.0, label,
                    ha="center", va="bottom", fontsize=8, zorder=20)

    def _add_north_arrow(self, ax: Axes, style: ResolvedStyle):
        arrow = style.north_arrow
        is_right, is_upper = _corner(arrow.position)
        x = 1.0 - ANNOTATION_MARGIN if is_right else ANNOTATION_MARGIN
        tip = 1.0 - ANNOTATION_MARGIN if is_upper else ANNOTATION_MARGIN + arrow.size + 0.04
        ax.annotate(
            "N",
            xy=(x, tip),
            xytext=(x, tip - arrow.size),
            xycoords="axes fraction",
            textcoords="axes fraction",
            ha="center",
            va="top",
            fontsize=12,
            fontweight="bold",
            arrowprops=dict(facecolor="black", edgecolor="black", width=4, headwidth=12),
            zorder=20,
        )

    def to_bytes(
        self,
        fig: Figure,
        format: str = "png",
        dpi: Optional[int] = None,
        **kwargs
    ) -> bytes:
        """Serialise a figure to image bytes.

        Raises:
            RenderBackendError: If matplotlib cannot write the format
        """
        buffer = io.BytesIO()
        try:
            fig.savefig(
                buffer,
                format=format,
                dpi=dpi or self.settings.dpi,
                bbox_inches='tight',
                **kwargs
            )
        except Exception as e:
            raise RenderBackendError(f"Could not write {format} image: {e}") from e
        return buffer.getvalue()

    def to_data_uri(self, fig: Figure, format: str = "png", dpi: Optional[int] = None) -> str:
        """Serialise a figure to a base64 ``data:`` URI."""
        encoded = base64.b64encode(self.to_bytes(fig, format=format, dpi=dpi)).decode("ascii")
        return f"data:{MIME_TYPES.get(format, f'image/{format}')};base64,{encoded}"

    # ------------------------------------------------------------------
    # Interactive rendering
    # ------------------------------------------------------------------

    def _render_interactive(self, dataset: ThematicDataset, style: ResolvedStyle) -> MapArtifact:
        fmap, painted = self._build_interactive_map(dataset, style)
        try:
            document = fmap.get_root().render()
        except Exception as e:
            raise RenderBackendError(f"Could not render interactive document: {e}") from e

        return MapArtifact(
            mode=RenderMode.INTERACTIVE,
            format="html",
            content=document,
            feature_count=len(dataset),
            painted_regions=painted,
            title=style.title,
        )

    def build_interactive_map(self, dataset: ThematicDataset, style: ResolvedStyle) -> folium.Map:
        """Build the folium map without serialising it."""
        self._check_inputs(dataset, style)
        return self._build_interactive_map(dataset, style)[0]

    def _build_interactive_map(
        self,
        dataset: ThematicDataset,
        style: ResolvedStyle
    ) -> Tuple[folium.Map, int]:
        data = dataset.data.to_crs(epsg=4326)
        drawable = _drawable(data)

        edge_color, edge_opacity = _split_alpha(style.edge_color)
        fills, opacities = [], []
        for color in style.feature_colors:
            fill, opacity = _split_alpha(color)
            fills.append(fill)
            opacities.append(opacity * style.alpha)

        key, variable = dataset.key_field, style.variable
        layer = gpd.GeoDataFrame(
            {
                key: data[key].astype(str),
                variable: list(style.feature_values),
                "_fill": fills,
                "_fill_opacity": opacities,
            },
            geometry=data.geometry.to_numpy(),
            crs="EPSG:4326",
        )[drawable]

        minx, miny, maxx, maxy = layer.total_bounds
        try:
            fmap = folium.Map(
                location=[(miny + maxy) / 2.0, (minx + maxx) / 2.0],
                tiles=None,
                control_scale=style.scale_bar is not None,
            )
            folium.TileLayer(
                tiles=self.settings.tiles,
                attr=self.settings.tile_attribution,
                name="Basemap",
            ).add_to(fmap)
        except Exception as e:
            raise RenderBackendError(f"Could not initialise interactive map: {e}") from e

        def style_function(feature: Dict[str, Any]) -> Dict[str, Any]:
            props = feature["properties"]
            return {
                "fillColor": props["_fill"],
                "fillOpacity": props["_fill_opacity"],
                "color": edge_color,
                "opacity": edge_opacity,
                "weight": style.edge_width * 2,
            }

        folium.GeoJson(
            layer.to_json(),
            name=style.title or variable,
            style_function=style_function,
            tooltip=folium.GeoJsonTooltip(
                fields=[key, variable],
                aliases=[key, style.legend_label or variable],
            ),
        ).add_to(fmap)

        if style.legend:
            self._add_interactive_legend(fmap, style)
        self._add_caption(fmap, style)

        fmap.fit_bounds([[miny, minx], [maxy, maxx]])
        return fmap, int(drawable.sum())

    def _add_interactive_legend(self, fmap: folium.Map, style: ResolvedStyle):
        if style.is_continuous:
            if style.vmin is not None:
                colormap = bcm.LinearColormap(
                    colors=[c[:7] for c in style.colorbar_colors],
                    vmin=style.vmin,
                    vmax=style.vmax if style.vmax > style.vmin else style.vmin + 1.0,
                    caption=style.legend_label,
                )
                colormap.add_to(fmap)
        else:
            colormap = bcm.StepColormap(
                colors=[c[:7] for c in style.bucket_colors],
                index=list(style.breaks),
                vmin=style.breaks[0],
                vmax=style.breaks[-1],
                caption=style.legend_label,
            )
            colormap.add_to(fmap)

        if style.has_missing:
            fill, opacity = _split_alpha(style.missing_color)
            fmap.get_root().html.add_child(folium.Element(
                '<div class="thematic-missing" style="position: fixed; bottom: 30px; '
                'right: 10px; z-index: 9999; background: white; padding: 4px 8px; '
                'border: 1px solid grey; border-radius: 4px; font-size: 12px;">'
                f'<span style="display: inline-block; width: 14px; height: 14px; '
                f'background: {fill}; opacity: {opacity:.2f}; border: 1px solid black; '
                f'vertical-align: middle; margin-right: 4px;"></span>'
                f'{html.escape(style.missing_label)}</div>'
            ))

    def _add_caption(self, fmap: folium.Map, style: ResolvedStyle):
        parts: List[str] = []
        if style.title:
            parts.append(f'<h3 style="margin: 0;">{html.escape(style.title)}</h3>')
        if style.credits:
            parts.append(f'<small>{html.escape(style.credits)}</small>')
        if parts:
            fmap.get_root().html.add_child(folium.Element(
                '<div class="thematic-caption" style="position: fixed; top: 10px; '
                'left: 50px; z-index: 9999; background: white; padding: 4px 8px; '
                'border-radius: 4px;">' + "".join(parts) + '</div>'
            ))


def render(
    dataset: ThematicDataset,
    style: ResolvedStyle,
    mode: Union[str, RenderMode] = RenderMode.STATIC,
    settings: Optional[Settings] = None
) -> MapArtifact:
    """Convenience function for :meth:`MapRenderer.render`.

    Example:
        >>> artifact = render(dataset, resolve(dataset, StyleSpec("rate")))
        >>> artifact.save("rate.png")
    """
    return MapRenderer(settings).render(dataset, style, mode)
