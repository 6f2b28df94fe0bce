"""Map surface interface and the drawable handles placed on it.

The real surface is an external rendering widget.  The engine only needs a
handful of primitives (attach, detach, opacity, camera moves, viewport
query) captured by :class:`MapSurface`.

:class:`HeadlessSurface` implements the same primitives in memory with
Web-Mercator viewport math.  The service uses it to keep an authoritative
server-side picture of a mirrored session; tests use it to observe what
the engine did.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from loguru import logger

from storymap.geometry import (
    Bounds,
    fit_zoom,
    projected_center,
    viewport_bounds,
)


class DrawableKind(str, Enum):
    ZONE = "zone"
    ZONE_LABEL = "zone-label"
    LOCATION = "location"
    LAYER_FEATURE = "layer-feature"
    ROUTE = "route"


@dataclass(eq=False)
class Drawable:
    """Opaque handle to something drawn on the surface.

    Owned by exactly one party at a time: the render pass that created it,
    then the transition manager that fades and releases it.
    """

    handle_id: str
    kind: DrawableKind
    source_id: str
    geometry: dict
    style: dict = field(default_factory=dict)
    bounds: Bounds | None = None
    z_index: int = 0
    label: str | None = None
    tooltip: str | None = None
    popup: dict | None = None
    opacity: float = 1.0
    target_opacity: float = 1.0

    def to_dict(self) -> dict:
        return {
            "handle_id": self.handle_id,
            "kind": self.kind.value,
            "source_id": self.source_id,
            "geometry": self.geometry,
            "style": self.style,
            "bounds": self.bounds.to_list() if self.bounds else None,
            "z_index": self.z_index,
            "label": self.label,
            "tooltip": self.tooltip,
            "popup": self.popup,
            "opacity": round(self.opacity, 4),
        }


class MapSurface(Protocol):
    """Primitives the playback engine requires from a map widget."""

    def is_ready(self) -> bool: ...

    def attach(self, drawable: Drawable) -> None: ...

    def detach(self, drawable: Drawable) -> None: ...

    def set_opacity(self, drawable: Drawable, opacity: float) -> None: ...

    def update_geometry(self, drawable: Drawable, geometry: dict) -> None: ...

    def fit_bounds(self, bounds: Bounds, padding_px: float, max_zoom: float,
                   duration_ms: float, easing: str) -> None: ...

    def animate_to(self, center: tuple[float, float], zoom: float,
                   duration_ms: float, easing: str) -> None: ...

    def get_current_bounds(self) -> Bounds: ...

    def get_center(self) -> tuple[float, float]: ...

    def get_zoom(self) -> float: ...


@dataclass
class Motion:
    """A camera command received by a headless surface."""

    kind: str  # "animate" or "fit"
    center: tuple[float, float]
    zoom: float
    duration_ms: float
    easing: str


class HeadlessSurface:
    """In-memory map surface.

    Camera commands take effect immediately (the interpolation between
    poses is the widget's concern) and are recorded in :attr:`motions`.
    :attr:`motions` and :attr:`detached` keep only the last ``history``
    entries so a long-lived session surface stays bounded.
    """

    def __init__(self, width_px: float = 1280, height_px: float = 800,
                 center: tuple[float, float] = (0.0, 0.0), zoom: float = 2.0,
                 ready: bool = True, history: int = 100) -> None:
        self.width_px = width_px
        self.height_px = height_px
        self.ready = ready
        self.history = max(1, history)
        self._center = center
        self._zoom = zoom
        self._attached: dict[str, Drawable] = {}
        self.motions: list[Motion] = []
        self.detached: list[str] = []

    # -- readiness ------------------------------------------------------

    def is_ready(self) -> bool:
        return self.ready

    # -- drawables ------------------------------------------------------

    def attach(self, drawable: Drawable) -> None:
        if drawable.handle_id in self._attached:
            raise ValueError(f"Drawable already attached: {drawable.handle_id}")
        self._attached[drawable.handle_id] = drawable

    def detach(self, drawable: Drawable) -> None:
        if self._attached.pop(drawable.handle_id, None) is None:
            logger.debug(f"Detach of unknown drawable {drawable.handle_id} ignored")
            return
        self._record(self.detached, drawable.handle_id)

    def set_opacity(self, drawable: Drawable, opacity: float) -> None:
        drawable.opacity = max(0.0, min(1.0, opacity))

    def update_geometry(self, drawable: Drawable, geometry: dict) -> None:
        drawable.geometry = geometry

    @property
    def drawables(self) -> list[Drawable]:
        return list(self._attached.values())

    def is_attached(self, drawable: Drawable) -> bool:
        return self._attached.get(drawable.handle_id) is drawable

    # -- camera ---------------------------------------------------------

    def fit_bounds(self, bounds: Bounds, padding_px: float, max_zoom: float,
                   duration_ms: float, easing: str) -> None:
        zoom = fit_zoom(bounds, self.width_px, self.height_px, padding_px, max_zoom)
        center = projected_center(bounds)
        self._center, self._zoom = center, zoom
        self._record(self.motions, Motion("fit", center, zoom, duration_ms, easing))

    def animate_to(self, center: tuple[float, float], zoom: float,
                   duration_ms: float, easing: str) -> None:
        self._center, self._zoom = tuple(center), zoom
        self._record(self.motions, Motion("animate", self._center, zoom, duration_ms, easing))

    def get_current_bounds(self) -> Bounds:
        return viewport_bounds(self._center, self._zoom, self.width_px, self.height_px)

    def get_center(self) -> tuple[float, float]:
        return self._center

    def get_zoom(self) -> float:
        return self._zoom

    # -- inspection -----------------------------------------------------

    def _record(self, log: list, entry) -> None:
        log.append(entry)
        if len(log) > self.history:
            del log[:len(log) - self.history]

    def snapshot(self) -> dict:
        return {
            "center": list(self._center),
            "zoom": self._zoom,
            "bounds": self.get_current_bounds().to_list(),
            "drawables": [d.to_dict() for d in self._attached.values()],
        }
