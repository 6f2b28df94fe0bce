"""Geographic helpers: GeoJSON geometry parsing, bounds, projection, paths.

All coordinates follow the GeoJSON convention: (lng, lat).

Web-Mercator math matches the 256px tile pyramid used by slippy maps:
at zoom z the world is ``256 * 2**z`` pixels wide.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Iterable, Iterator

_TILE_SIZE = 256.0
_MAX_LAT = 85.0511287798
_EARTH_RADIUS_M = 6_371_000.0

_GEOMETRY_TYPES = (
    "Point",
    "MultiPoint",
    "LineString",
    "MultiLineString",
    "Polygon",
    "MultiPolygon",
    "GeometryCollection",
)


class GeometryError(ValueError):
    """Raised when a geometry payload is unparseable or empty."""


@dataclass(frozen=True)
class Bounds:
    """Axis-aligned geographic rectangle in degrees."""

    west: float
    south: float
    east: float
    north: float

    @classmethod
    def from_points(cls, points: Iterable[tuple[float, float]]) -> Bounds:
        """Smallest bounds containing every (lng, lat) point.

        Raises:
            GeometryError: If ``points`` is empty.
        """
        west = south = math.inf
        east = north = -math.inf
        for lng, lat in points:
            west = min(west, lng)
            east = max(east, lng)
            south = min(south, lat)
            north = max(north, lat)
        if west == math.inf:
            raise GeometryError("No coordinates to bound")
        return cls(west, south, east, north)

    @classmethod
    def union_all(cls, items: Iterable[Bounds]) -> Bounds | None:
        """Union of many bounds, or None when there are none."""
        result: Bounds | None = None
        for b in items:
            result = b if result is None else result.union(b)
        return result

    def union(self, other: Bounds) -> Bounds:
        return Bounds(
            min(self.west, other.west),
            min(self.south, other.south),
            max(self.east, other.east),
            max(self.north, other.north),
        )

    def contains(self, other: Bounds) -> bool:
        return (
            self.west <= other.west
            and self.south <= other.south
            and self.east >= other.east
            and self.north >= other.north
        )

    def contains_point(self, lng: float, lat: float) -> bool:
        return self.west <= lng <= self.east and self.south <= lat <= self.north

    def pad(self, ratio: float) -> Bounds:
        """Grow each side by ``ratio`` of the span (Leaflet ``pad`` semantics)."""
        dx = (self.east - self.west) * ratio
        dy = (self.north - self.south) * ratio
        return Bounds(self.west - dx, self.south - dy, self.east + dx, self.north + dy)

    @property
    def center(self) -> tuple[float, float]:
        return ((self.west + self.east) / 2.0, (self.south + self.north) / 2.0)

    @property
    def is_point(self) -> bool:
        return self.west == self.east and self.south == self.north

    def to_list(self) -> list[float]:
        return [self.west, self.south, self.east, self.north]


# ---------------------------------------------------------------------------
# GeoJSON parsing
# ---------------------------------------------------------------------------

def parse_geometry(raw: str | dict | None) -> dict:
    """Normalize a GeoJSON payload (string or dict) into a geometry dict.

    Features are unwrapped to their geometry; FeatureCollections become a
    GeometryCollection of their member geometries.

    Raises:
        GeometryError: On invalid JSON, unknown types, or missing coordinates.
    """
    if raw is None:
        raise GeometryError("Geometry is missing")
    if isinstance(raw, str):
        if not raw.strip():
            raise GeometryError("Geometry is empty")
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise GeometryError(f"Geometry is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise GeometryError(f"Geometry must be an object, got {type(raw).__name__}")

    gtype = raw.get("type")
    if gtype == "Feature":
        return parse_geometry(raw.get("geometry"))
    if gtype == "FeatureCollection":
        members = [parse_geometry(f) for f in raw.get("features") or []]
        return {"type": "GeometryCollection", "geometries": members}
    if gtype not in _GEOMETRY_TYPES:
        raise GeometryError(f"Unsupported geometry type: {gtype!r}")
    if gtype == "GeometryCollection":
        members = [parse_geometry(g) for g in raw.get("geometries") or []]
        return {"type": gtype, "geometries": members}
    if raw.get("coordinates") is None:
        raise GeometryError(f"{gtype} has no coordinates")
    return {"type": gtype, "coordinates": raw["coordinates"]}


def iter_positions(geometry: dict) -> Iterator[tuple[float, float]]:
    """Yield every (lng, lat) position in a parsed geometry."""
    if geometry.get("type") == "GeometryCollection":
        for member in geometry.get("geometries", []):
            yield from iter_positions(member)
        return
    yield from _walk(geometry.get("coordinates"))


def _walk(coords) -> Iterator[tuple[float, float]]:
    if not isinstance(coords, (list, tuple)) or not coords:
        return
    if isinstance(coords[0], (int, float)):
        if len(coords) < 2:
            raise GeometryError(f"Position needs two numbers: {coords!r}")
        yield (float(coords[0]), float(coords[1]))
        return
    for item in coords:
        yield from _walk(item)


def geometry_bounds(geometry: dict) -> Bounds:
    """Bounds of a parsed geometry. Raises GeometryError if it has no positions."""
    return Bounds.from_points(iter_positions(geometry))


def point_coordinates(geometry: dict) -> tuple[float, float]:
    """Return the (lng, lat) of a Point geometry."""
    if geometry.get("type") != "Point":
        raise GeometryError(f"Expected Point, got {geometry.get('type')!r}")
    positions = list(iter_positions(geometry))
    if not positions:
        raise GeometryError("Point has no position")
    return positions[0]


def line_coordinates(raw: str | dict | list) -> list[tuple[float, float]]:
    """Extract the path of a LineString given as GeoJSON or a bare list."""
    if isinstance(raw, list):
        path = list(_walk(raw))
    else:
        geometry = parse_geometry(raw)
        if geometry["type"] != "LineString":
            raise GeometryError(f"Expected LineString, got {geometry['type']!r}")
        path = list(iter_positions(geometry))
    if len(path) < 2:
        raise GeometryError("A route path needs at least two positions")
    return path


# ---------------------------------------------------------------------------
# Web-Mercator projection
# ---------------------------------------------------------------------------

def project(lng: float, lat: float, zoom: float) -> tuple[float, float]:
    """(lng, lat) -> world pixel (x, y) at ``zoom``."""
    scale = _TILE_SIZE * (2.0 ** zoom)
    lat = max(-_MAX_LAT, min(_MAX_LAT, lat))
    sin_lat = math.sin(math.radians(lat))
    x = (lng + 180.0) / 360.0 * scale
    y = (0.5 - math.log((1 + sin_lat) / (1 - sin_lat)) / (4 * math.pi)) * scale
    return (x, y)


def unproject(x: float, y: float, zoom: float) -> tuple[float, float]:
    """World pixel (x, y) at ``zoom`` -> (lng, lat)."""
    scale = _TILE_SIZE * (2.0 ** zoom)
    lng = x / scale * 360.0 - 180.0
    n = math.pi - 2.0 * math.pi * y / scale
    lat = math.degrees(math.atan(math.sinh(n)))
    return (lng, lat)


def fit_zoom(bounds: Bounds, width_px: float, height_px: float,
             padding_px: float, max_zoom: float) -> float:
    """Largest integer zoom at which ``bounds`` fits inside the padded viewport."""
    avail_w = max(1.0, width_px - 2 * padding_px)
    avail_h = max(1.0, height_px - 2 * padding_px)
    x0, y0 = project(bounds.west, bounds.north, 0)
    x1, y1 = project(bounds.east, bounds.south, 0)
    span_x = abs(x1 - x0)
    span_y = abs(y1 - y0)
    if span_x == 0 and span_y == 0:
        return float(max_zoom)
    ratio = min(
        avail_w / span_x if span_x else math.inf,
        avail_h / span_y if span_y else math.inf,
    )
    zoom = math.floor(math.log2(ratio))
    return float(min(max_zoom, zoom))


def viewport_bounds(center: tuple[float, float], zoom: float,
                    width_px: float, height_px: float) -> Bounds:
    """Geographic bounds visible in a viewport of the given pixel size."""
    cx, cy = project(center[0], center[1], zoom)
    west, north = unproject(cx - width_px / 2, cy - height_px / 2, zoom)
    east, south = unproject(cx + width_px / 2, cy + height_px / 2, zoom)
    return Bounds(west, south, east, north)


def projected_center(bounds: Bounds) -> tuple[float, float]:
    """Center of ``bounds`` taken in projected space (matches fit-bounds)."""
    x0, y0 = project(bounds.west, bounds.north, 0)
    x1, y1 = project(bounds.east, bounds.south, 0)
    return unproject((x0 + x1) / 2, (y0 + y1) / 2, 0)


# ---------------------------------------------------------------------------
# Path measurement
# ---------------------------------------------------------------------------

def haversine_m(a: tuple[float, float], b: tuple[float, float]) -> float:
    """Great-circle distance in meters between two (lng, lat) points."""
    lng1, lat1 = map(math.radians, a)
    lng2, lat2 = map(math.radians, b)
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * _EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def path_length_m(path: list[tuple[float, float]]) -> float:
    return sum(haversine_m(path[i], path[i + 1]) for i in range(len(path) - 1))


def path_prefix(path: list[tuple[float, float]], progress: float) -> list[tuple[float, float]]:
    """The part of ``path`` covered after travelling ``progress`` (0..1) of it.

    The last vertex is interpolated linearly inside the partially covered leg.
    """
    if progress <= 0 or len(path) < 2:
        return path[:1]
    if progress >= 1:
        return list(path)

    target = path_length_m(path) * progress
    visited = [path[0]]
    travelled = 0.0
    for i in range(len(path) - 1):
        leg = haversine_m(path[i], path[i + 1])
        if travelled + leg <= target:
            visited.append(path[i + 1])
            travelled += leg
            continue
        ratio = (target - travelled) / leg if leg else 0.0
        (lng1, lat1), (lng2, lat2) = path[i], path[i + 1]
        visited.append((lng1 + (lng2 - lng1) * ratio, lat1 + (lat2 - lat1) * ratio))
        break
    return visited


def heading_deg(a: tuple[float, float], b: tuple[float, float]) -> float:
    """Screen-space angle of the leg a -> b in degrees (east = 0, north = 90)."""
    return math.degrees(math.atan2(b[1] - a[1], b[0] - a[0]))
