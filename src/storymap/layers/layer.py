"""Layer and LayerFeature dataclasses for per-map data layers.

All coordinates are stored in GeoJSON convention: [lng, lat].
"""

from __future__ import annotations

from dataclasses import dataclass, field

from storymap.geometry import Bounds, GeometryError, geometry_bounds


@dataclass
class LayerFeature:
    """A single feature (point, line, polygon) within a data layer.

    Attributes:
        feature_id: Unique identifier for this feature.
        geometry: Parsed GeoJSON geometry dict (``type`` + ``coordinates``).
        properties: Arbitrary key-value metadata.
        style: Optional per-feature rendering hints (color, weight, fillColor).
    """

    feature_id: str
    geometry: dict
    properties: dict = field(default_factory=dict)
    style: dict | None = None

    @property
    def geometry_type(self) -> str:
        return self.geometry.get("type", "")

    def bounds(self) -> Bounds | None:
        try:
            return geometry_bounds(self.geometry)
        except GeometryError:
            return None


@dataclass
class Layer:
    """A named collection of geographic features attached to a map.

    Attributes:
        layer_id: Unique identifier for this layer.
        name: Human-readable display name.
        features: List of LayerFeature instances.
        style: Layer-wide style applied under each feature's own style.
        metadata: Arbitrary key-value metadata about the layer.
    """

    layer_id: str
    name: str
    features: list[LayerFeature]
    style: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
