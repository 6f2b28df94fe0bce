"""Geometry renderer — turns a segment into drawables on the map surface.

Zones, locations and data layers are drawn in that order, each group in
``displayOrder``.  A failure on one item (bad geometry, missing layer,
surface refusing a drawable) is logged and skipped; the rest of the
segment is still drawn.  Only drawables that were actually attached are
returned.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Callable

from loguru import logger

from storymap.geometry import Bounds, GeometryError, geometry_bounds, point_coordinates
from storymap.layers.layer import Layer
from storymap.models import Location, Segment, SegmentLayer, SegmentZone
from storymap.surface import Drawable, DrawableKind, MapSurface

LayerLoader = Callable[[SegmentLayer], Layer]

DEFAULT_LOCATION_GLYPH = "\U0001F4CD"

_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg")
_VIDEO_EXTENSIONS = (".mp4", ".webm", ".ogg", ".mov")


@dataclass
class RenderResult:
    """Drawables attached by one render pass and their geographic bounds."""

    drawables: list[Drawable] = field(default_factory=list)
    bounds: list[Bounds] = field(default_factory=list)

    @property
    def union(self) -> Bounds | None:
        return Bounds.union_all(self.bounds)

    def __len__(self) -> int:
        return len(self.drawables)


def zone_style(sz: SegmentZone) -> dict:
    """Path style for a segment zone; disabled fill/boundary collapse to zero."""
    return {
        "color": sz.boundary_color,
        "weight": sz.boundary_width if sz.highlight_boundary else 0,
        "fillColor": sz.fill_color,
        "fillOpacity": sz.fill_opacity if sz.fill_zone else 0,
    }


def location_popup(loc: Location) -> dict | None:
    """Popup body bound to a location marker, or None when it has none."""
    if not (loc.open_popup_on_click and loc.popup_content):
        return None
    media = []
    for line in (loc.media_resources or "").splitlines():
        url = line.strip()
        path = url.lower().split("?", 1)[0]
        if path.endswith(_IMAGE_EXTENSIONS):
            media.append({"type": "image", "url": url})
        elif path.endswith(_VIDEO_EXTENSIONS):
            media.append({"type": "video", "url": url})
    return {
        "title": loc.title,
        "subtitle": loc.subtitle,
        "body": loc.popup_content,
        "media": media,
        "audio": loc.audio_url if loc.play_audio_on_click else None,
        "link": loc.external_url,
    }


class GeometryRenderer:
    """Draws a segment's zones, locations and data layers.

    Args:
        surface: Map surface drawables are attached to.
        layer_loader: Resolves a segment layer reference to its features.
            Without one, segment layers are skipped.
    """

    def __init__(self, surface: MapSurface, layer_loader: LayerLoader | None = None) -> None:
        self._surface = surface
        self._layer_loader = layer_loader
        self._ids = itertools.count(1)

    def render(self, segment: Segment, fade_in: bool = False) -> RenderResult:
        """Attach every drawable of ``segment`` to the surface.

        With ``fade_in`` the drawables are attached fully transparent and
        left for the transition manager to bring up to their target opacity.
        """
        result = RenderResult()
        for sz in sorted(segment.zones, key=lambda z: z.display_order):
            self._render_zone(segment, sz, result, fade_in)
        for loc in sorted(segment.locations, key=lambda x: x.display_order):
            self._render_location(segment, loc, result, fade_in)
        for ref in sorted(segment.layers, key=lambda x: x.display_order):
            self._render_layer(segment, ref, result, fade_in)
        logger.debug(
            f"Rendered segment {segment.segment_id}: {len(result)} drawables, "
            f"{len(result.bounds)} bounded"
        )
        return result

    # -- items ----------------------------------------------------------

    def _render_zone(self, segment: Segment, sz: SegmentZone,
                     result: RenderResult, fade_in: bool) -> None:
        if not sz.is_visible:
            return
        zone = sz.zone
        if zone is None or zone.geometry is None:
            logger.warning(f"Segment {segment.segment_id}: zone {sz.zone_id} has no geometry, skipped")
            return
        try:
            bounds = geometry_bounds(zone.geometry)
        except GeometryError as e:
            logger.warning(f"Segment {segment.segment_id}: zone {sz.zone_id} skipped: {e}")
            return

        polygon = self._drawable(
            segment, DrawableKind.ZONE, zone.zone_id,
            geometry=zone.geometry,
            style=zone_style(sz),
            bounds=bounds,
            z_index=sz.z_index,
            tooltip=zone.name or None,
        )
        if not self._attach(polygon, result, fade_in):
            return

        if sz.show_label:
            text = sz.label_override or zone.name
            anchor = zone.centroid or bounds.center
            label = self._drawable(
                segment, DrawableKind.ZONE_LABEL, zone.zone_id,
                geometry={"type": "Point", "coordinates": list(anchor)},
                style={"className": "zone-label"},
                z_index=sz.z_index + 1,
                label=text,
            )
            self._attach(label, result, fade_in)

    def _render_location(self, segment: Segment, loc: Location,
                         result: RenderResult, fade_in: bool) -> None:
        if not loc.is_visible:
            return
        if loc.marker_geometry is None:
            logger.warning(f"Segment {segment.segment_id}: location {loc.location_id} has no geometry, skipped")
            return
        try:
            lng, lat = point_coordinates(loc.marker_geometry)
        except GeometryError as e:
            logger.warning(f"Segment {segment.segment_id}: location {loc.location_id} skipped: {e}")
            return

        tooltip = None
        if loc.show_tooltip:
            tooltip = loc.title or loc.tooltip_content or None
        marker = self._drawable(
            segment, DrawableKind.LOCATION, loc.location_id,
            geometry={"type": "Point", "coordinates": [lng, lat]},
            style={
                "glyph": loc.icon_url or loc.icon_type or DEFAULT_LOCATION_GLYPH,
                "size": loc.icon_size,
                "color": loc.icon_color,
            },
            bounds=Bounds(lng, lat, lng, lat),
            z_index=loc.z_index,
            tooltip=tooltip,
            popup=location_popup(loc),
        )
        self._attach(marker, result, fade_in)

    def _render_layer(self, segment: Segment, ref: SegmentLayer,
                      result: RenderResult, fade_in: bool) -> None:
        if not ref.is_visible:
            return
        if self._layer_loader is None:
            logger.warning(f"Segment {segment.segment_id}: no layer loader, layer {ref.layer_id} skipped")
            return
        try:
            layer = self._layer_loader(ref)
        except Exception as e:
            logger.warning(f"Segment {segment.segment_id}: layer {ref.layer_id} failed to load: {e}")
            return

        for feature in layer.features:
            style = dict(layer.style)
            style.update(feature.style or {})
            style.update(ref.style_override or {})
            drawable = self._drawable(
                segment, DrawableKind.LAYER_FEATURE, f"{layer.layer_id}/{feature.feature_id}",
                geometry=feature.geometry,
                style=style,
                bounds=feature.bounds(),
                z_index=ref.z_index,
                tooltip=feature.properties.get("name"),
            )
            drawable.target_opacity = ref.opacity
            self._attach(drawable, result, fade_in)

    # -- helpers --------------------------------------------------------

    def _drawable(self, segment: Segment, kind: DrawableKind, source_id: str, **kw) -> Drawable:
        handle_id = f"{segment.segment_id}/{kind.value}/{source_id}#{next(self._ids)}"
        return Drawable(handle_id=handle_id, kind=kind, source_id=source_id, **kw)

    def _attach(self, drawable: Drawable, result: RenderResult, fade_in: bool) -> bool:
        drawable.opacity = 0.0 if fade_in else drawable.target_opacity
        try:
            self._surface.attach(drawable)
        except Exception as e:
            logger.error(f"Map surface rejected {drawable.handle_id}: {e}")
            return False
        result.drawables.append(drawable)
        if drawable.bounds is not None:
            result.bounds.append(drawable.bounds)
        return True
