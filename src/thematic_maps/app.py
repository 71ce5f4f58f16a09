"""
Flask application serving thematic maps.

Clients post a map request (geometry source, attributes, style options)
and receive either a static image or an interactive HTML document. Every
request loads its own inputs; nothing is cached between requests.
"""

from dataclasses import replace
from typing import Any, Dict, List

from flask import Flask, Response, jsonify, request

from thematic_maps.config import Settings, list_datasets, register_dataset
from thematic_maps.datasource import DatasetConfig
from thematic_maps.exceptions import (
    ConfigurationError,
    NotFoundError,
    RenderBackendError,
    ThematicMapError,
)
from thematic_maps.pipeline import run_request
from thematic_maps.styling import ColorScale
from thematic_maps.visualizer import MIME_TYPES, RenderMode

app = Flask(__name__)


def get_settings() -> Settings:
    """Settings for this application, created on first use."""
    settings = app.config.get("THEMATIC_MAPS_SETTINGS")
    if settings is None:
        settings = Settings()
        app.config["THEMATIC_MAPS_SETTINGS"] = settings
    return settings


def get_available_colormaps() -> List[str]:
    """Get list of available colormaps."""
    return [cs.value for cs in ColorScale]


def _status_for(error: ThematicMapError) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, RenderBackendError):
        return 500
    return 400


@app.errorhandler(ThematicMapError)
def handle_map_error(error: ThematicMapError):
    return jsonify({
        "error": error.message,
        "stage": error.stage,
        "type": type(error).__name__,
    }), _status_for(error)


def _request_options() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ConfigurationError("Request body must be a JSON object", stage="load")
    if "output" in data:
        raise ConfigurationError("'output' cannot be set over HTTP", stage="load")
    return data


@app.route("/api/datasets")
def api_list_datasets():
    """API endpoint to list registered datasets."""
    return jsonify(list_datasets())


@app.route("/api/datasets/register", methods=["POST"])
def api_register_dataset():
    """API endpoint to register a new dataset."""
    data = request.get_json(silent=True) or {}

    required = ["name", "path", "id_column"]
    for field in required:
        if field not in data:
            return jsonify({"error": f"Missing required field: {field}"}), 400

    config = DatasetConfig(
        path=data["path"],
        id_column=data["id_column"],
        value_column=data.get("value_column"),
        layer=data.get("layer"),
        name=data.get("display_name", data["name"]),
    )

    register_dataset(data["name"], config)
    return jsonify({"success": True, "name": data["name"]})


@app.route("/api/colormaps")
def api_colormaps():
    """API endpoint to list the pre-defined colour scales."""
    return jsonify(get_available_colormaps())


@app.route("/api/render", methods=["POST"])
def api_render():
    """Render a map request.

    Static maps are returned as a data URI, interactive maps as HTML text.
    """
    artifact = run_request(_request_options(), get_settings())

    body: Dict[str, Any] = {
        "success": True,
        "mode": artifact.mode.value,
        "format": artifact.format,
        "num_features": artifact.feature_count,
        "painted_regions": artifact.painted_regions,
        "title": artifact.title,
    }
    if artifact.mode is RenderMode.STATIC:
        body["image"] = artifact.to_data_uri()
    else:
        body["html"] = artifact.content
    return jsonify(body)


@app.route("/api/render/map.<format>", methods=["POST"])
def api_render_file(format: str):
    """Render a map request and return the file itself."""
    if format not in MIME_TYPES:
        return jsonify({"error": f"Unsupported format: {format}"}), 400

    options = _request_options()
    options["mode"] = "interactive" if format == "html" else "static"

    settings = get_settings()
    if format != "html":
        settings = replace(settings, image_format=format)

    artifact = run_request(options, settings)
    return Response(artifact.to_bytes(), mimetype=artifact.media_type)


if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=5000)
