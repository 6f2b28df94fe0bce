"""LayerRegistry — registry of data layers available to a map.

Acts as the layer-loading collaborator of the geometry renderer: given a
segment's layer reference it resolves the layer body, either from the
payload delivered inline with the segment or from the map's layers
fetched by the data source when a session loads its story.
"""

from __future__ import annotations

from typing import Iterable

from storymap.layers.layer import Layer
from storymap.layers.geojson import parse_geojson_layer
from storymap.models import SegmentLayer


class LayerRegistry:
    """Registry of known map layers."""

    def __init__(self) -> None:
        self._layers: dict[str, Layer] = {}

    def __len__(self) -> int:
        return len(self._layers)

    def add_layer(self, layer: Layer) -> str:
        """Add a layer to the registry.

        Args:
            layer: The Layer to register.

        Returns:
            The layer_id of the added layer.
        """
        self._layers[layer.layer_id] = layer
        return layer.layer_id

    def replace_all(self, layers: Iterable[Layer]) -> None:
        """Swap the registered layers for a freshly fetched set."""
        self._layers = {layer.layer_id: layer for layer in layers}

    def get_layer(self, layer_id: str) -> Layer | None:
        return self._layers.get(layer_id)

    def load(self, ref: SegmentLayer) -> Layer:
        """Resolve the layer body for a segment's layer reference.

        Inline data wins over the registry so a freshly edited layer is
        shown even before the registry is refreshed.

        Raises:
            KeyError: If the layer has no inline data and is not registered.
            GeometryError: If the inline data is not a GeoJSON object.
        """
        payload = ref.layer
        if payload is not None and payload.layer_data is not None:
            return parse_geojson_layer(
                ref.layer_id,
                payload.layer_data,
                name=payload.layer_name,
                style=payload.layer_style,
            )
        layer = self._layers.get(ref.layer_id)
        if layer is None:
            raise KeyError(f"Layer not found: {ref.layer_id}")
        return layer
