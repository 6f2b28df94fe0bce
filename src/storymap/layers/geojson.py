"""Parse GeoJSON (RFC 7946) layer data into a Layer.

Handles FeatureCollection, Feature and bare geometries.  Features whose
geometry cannot be parsed are skipped; the rest of the layer survives.
"""

from __future__ import annotations

import json

from loguru import logger

from storymap.geometry import GeometryError, parse_geometry
from storymap.layers.layer import Layer, LayerFeature


def parse_geojson_layer(layer_id: str, data: str | dict, name: str = "",
                        style: dict | None = None) -> Layer:
    """Build a Layer from GeoJSON content.

    Args:
        layer_id: Identifier for the resulting layer.
        data: GeoJSON as a string or an already decoded dict.
        name: Display name; derived from the payload when empty.
        style: Layer-wide style hints.

    Raises:
        GeometryError: If ``data`` is not decodable JSON or not an object.
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise GeometryError(f"Layer {layer_id} data is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise GeometryError(f"Layer {layer_id} data must be a GeoJSON object")

    features: list[LayerFeature] = []
    kind = data.get("type")
    if kind == "FeatureCollection":
        raw_features = data.get("features") or []
    elif kind == "Feature":
        raw_features = [data]
    else:
        raw_features = [{"type": "Feature", "geometry": data, "properties": {}}]

    for idx, raw in enumerate(raw_features):
        feature = _parse_feature(layer_id, raw, idx)
        if feature is not None:
            features.append(feature)

    return Layer(
        layer_id=layer_id,
        name=name or data.get("name", "") or layer_id,
        features=features,
        style=dict(style or {}),
    )


def _parse_feature(layer_id: str, raw: dict, idx: int) -> LayerFeature | None:
    """Parse a single GeoJSON Feature dict into a LayerFeature."""
    if not isinstance(raw, dict):
        return None
    try:
        geometry = parse_geometry(raw.get("geometry"))
    except GeometryError as e:
        logger.warning(f"Layer {layer_id}: skipping feature {idx}: {e}")
        return None

    properties = raw.get("properties") or {}
    if not isinstance(properties, dict):
        properties = {}

    feature_id = raw.get("id", f"{layer_id}-{idx}")
    if not isinstance(feature_id, str):
        feature_id = str(feature_id)

    style = properties.get("style") if isinstance(properties.get("style"), dict) else None
    return LayerFeature(
        feature_id=feature_id,
        geometry=geometry,
        properties=properties,
        style=style,
    )
