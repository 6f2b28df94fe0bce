"""Per-map data layers — records, GeoJSON parsing and the layer registry.

Parsing uses only the stdlib json module plus the shared geometry helpers.
"""

from storymap.layers.geojson import parse_geojson_layer
from storymap.layers.layer import Layer, LayerFeature
from storymap.layers.registry import LayerRegistry

__all__ = ["Layer", "LayerFeature", "LayerRegistry", "parse_geojson_layer"]
