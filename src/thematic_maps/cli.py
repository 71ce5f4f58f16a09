"""Command line entry point for rendering thematic maps."""

import argparse
import sys
from typing import Any, Dict, List, Optional

from thematic_maps.config import Settings, load_mapping
from thematic_maps.exceptions import ThematicMapError
from thematic_maps.logging_config import setup_logging
from thematic_maps.pipeline import MapRequest, run_request
from thematic_maps.styling import ColorScale


def _parse_breaks(value: str):
    if value.strip().lower() == "continuous":
        return "continuous"
    try:
        return [float(v) for v in value.split(",")]
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"breaks must be 'continuous' or comma-separated numbers, got '{value}'"
        )


def _parse_numbers(value: str) -> List[float]:
    try:
        return [float(v) for v in value.split(",")]
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected comma-separated numbers, got '{value}'")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="thematic-map",
        description="Render a choropleth map from boundaries and an attribute table",
    )

    source = parser.add_argument_group("geometry source (choose one)")
    source.add_argument("--features", dest="features_path",
                        help="Vector file or URL (Shapefile, GeoJSON, GeoPackage, ...)")
    source.add_argument("--layer", help="Layer of a multi-layer vector file")
    source.add_argument("--raster", dest="raster_path",
                        help="Raster file; each valid cell becomes a feature")
    source.add_argument("--band", dest="raster_band", type=int, help="Raster band (default 1)")
    source.add_argument("--boundary", dest="boundary_region",
                        help="ISO3 country code to fetch administrative boundaries for")
    source.add_argument("--level", dest="boundary_level", type=int,
                        help="Administrative level of --boundary (default 1)")
    source.add_argument("--dataset", help="Name of a registered dataset, e.g. 'countries'")
    source.add_argument("--key", dest="key_field", help="Join key column on the features")

    attrs = parser.add_argument_group("attributes")
    attrs.add_argument("--attributes", dest="attributes_path",
                       help="CSV, Excel, Parquet or JSON attribute table")
    attrs.add_argument("--attributes-key",
                       help="Key column of the attribute table if it differs from --key")

    style = parser.add_argument_group("style")
    style.add_argument("--style", dest="style_file", help="YAML or JSON file of style options")
    style.add_argument("--variable", help="Attribute to map")
    style.add_argument("--title", help="Map title")
    style.add_argument("--palette", help=f"Colormap name, e.g. {[c.value for c in ColorScale][:5]}")
    style.add_argument("--breaks", type=_parse_breaks,
                       help="Comma-separated class breaks, or 'continuous'")
    style.add_argument("--missing-color", help="Colour for features without data")
    style.add_argument("--legend-position", help="Legend location, e.g. 'lower right'")
    style.add_argument("--legend-label", help="Legend caption")
    style.add_argument("--no-legend", action="store_true", help="Do not draw a legend")
    style.add_argument("--no-scale-bar", action="store_true", help="Do not draw a scale bar")
    style.add_argument("--scale-bar-breaks", type=_parse_numbers,
                       help="Comma-separated scale bar distances in km")
    style.add_argument("--compass", action="store_true", help="Draw a north arrow")
    style.add_argument("--credits", help="Credits text")

    output = parser.add_argument_group("output")
    output.add_argument("--request", dest="request_file",
                        help="YAML or JSON file holding a complete request; flags override it")
    output.add_argument("--mode", choices=["static", "interactive"], help="Output kind")
    output.add_argument("-o", "--output", help="Output file (.png/.svg/.pdf/.jpg or .html)")
    output.add_argument("--config", help="Settings file (YAML or JSON)")
    output.add_argument("--dpi", type=int, help="Static image resolution")
    output.add_argument("--format", dest="image_format",
                        choices=["png", "svg", "pdf", "jpg"], help="Static image format")
    output.add_argument("-v", "--verbose", action="count", default=0, help="More logging")
    output.add_argument("-q", "--quiet", action="count", default=0, help="Less logging")
    output.add_argument("--log-file", help="Also write the log to this file")
    return parser


REQUEST_FLAGS = (
    "features_path", "layer", "raster_path", "raster_band", "boundary_region",
    "boundary_level", "dataset", "key_field", "attributes_path", "attributes_key",
    "mode", "output",
)


def build_request(args: argparse.Namespace) -> Dict[str, Any]:
    """Merge the request file, style file and flags into request options."""
    options: Dict[str, Any] = dict(load_mapping(args.request_file)) if args.request_file else {}
    for name in REQUEST_FLAGS:
        value = getattr(args, name)
        if value is not None:
            options[name] = value
    if "mode" not in options and str(options.get("output", "")).lower().endswith(".html"):
        options["mode"] = "interactive"

    style: Dict[str, Any] = dict(options.get("style") or {})
    if args.style_file:
        style.update(load_mapping(args.style_file))

    flags = {
        "variable": args.variable,
        "title": args.title,
        "palette": args.palette,
        "breaks": args.breaks,
        "missing_color": args.missing_color,
        "legend_position": args.legend_position,
        "legend_label": args.legend_label,
        "scale_bar_breaks": args.scale_bar_breaks,
        "credits": args.credits,
    }
    style.update({k: v for k, v in flags.items() if v is not None})
    if args.no_legend:
        style["legend"] = False
    if args.no_scale_bar:
        style["scale_bar"] = False
    if args.compass:
        style["annotate_compass"] = True

    options["style"] = style
    return options


def build_settings(args: argparse.Namespace) -> Settings:
    settings = Settings.load_from_file(args.config) if args.config else Settings()
    if args.dpi is not None:
        settings.dpi = args.dpi
    if args.image_format is not None:
        settings.image_format = args.image_format
    elif args.output:
        suffix = args.output.rsplit(".", 1)[-1].lower()
        if suffix in ("png", "svg", "pdf", "jpg"):
            settings.image_format = suffix
    return settings


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(verbosity=args.verbose - args.quiet, log_file=args.log_file)

    try:
        settings = build_settings(args)
        options = build_request(args)
        if not options.get("output"):
            parser.error("an output path is required (--output or 'output' in --request)")
        request = MapRequest.from_dict(options)
        artifact = run_request(request, settings)
    except ThematicMapError as e:
        print(f"Map rendering failed: {e}", file=sys.stderr)
        return 1

    print(
        f"Wrote {artifact.mode.value} map to {request.output} "
        f"({artifact.painted_regions} of {artifact.feature_count} features painted)"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
