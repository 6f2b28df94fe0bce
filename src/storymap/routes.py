"""Route animator — draws a segment's routes in as time passes.

Progress is a pure function of the time elapsed since the segment became
active, so a late frame never loses ground and a refresh of the same
segment does not restart anything.  Routes play in display order; routes
without an explicit start offset run one after another.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Iterable

from loguru import logger

from storymap.clock import Scheduler, TimerHandle
from storymap.easing import get_easing
from storymap.geometry import Bounds, heading_deg, path_prefix
from storymap.models import CameraStrategy, RouteAnimation, Segment
from storymap.surface import Drawable, DrawableKind, MapSurface

if TYPE_CHECKING:
    from storymap.camera import CameraController

DEFAULT_ROUTE_GAP_MS = 500.0
ROUTE_CAMERA_DURATION_MS = 800.0


# ---------------------------------------------------------------------------
# Ordering and timing
# ---------------------------------------------------------------------------

def order_routes(routes: Iterable[RouteAnimation]) -> list[RouteAnimation]:
    """Playback order: displayOrder, then explicit start offset, then creation order."""
    indexed = list(enumerate(routes))

    def key(item: tuple[int, RouteAnimation]):
        idx, r = item
        created = r.created_at.timestamp() if r.created_at is not None else math.inf
        return (
            r.display_order,
            r.start_time_ms is None,
            r.start_time_ms or 0.0,
            created,
            idx,
        )

    return [r for _, r in sorted(indexed, key=key)]


@dataclass(frozen=True)
class RouteSlot:
    """When a route draws, relative to the segment start."""

    route: RouteAnimation
    start_ms: float
    end_ms: float

    @property
    def route_id(self) -> str:
        return self.route.route_animation_id


def schedule_routes(routes: Iterable[RouteAnimation],
                    gap_ms: float = DEFAULT_ROUTE_GAP_MS) -> list[RouteSlot]:
    """Assign start/end offsets to every playable route, in playback order.

    Routes with an explicit ``startTimeMs`` keep it.  The others start at a
    cursor that moves past each one, plus either its arrival-info display
    time or ``gap_ms``.
    """
    slots: list[RouteSlot] = []
    cursor = 0.0
    for route in order_routes(routes):
        if not route.auto_play or not route.is_visible:
            continue
        if route.start_time_ms is not None:
            start = route.start_time_ms
            end = route.end_time_ms if route.end_time_ms is not None else start + route.duration_ms
            slots.append(RouteSlot(route, start, max(start, end)))
            continue
        start = cursor + route.start_delay_ms
        end = start + route.duration_ms
        slots.append(RouteSlot(route, start, end))
        if route.show_location_info_on_arrival and route.location_info_display_duration_ms:
            cursor = end + route.location_info_display_duration_ms
        else:
            cursor = end + gap_ms
    return slots


def effective_duration(segment: Segment, gap_ms: float = DEFAULT_ROUTE_GAP_MS,
                       extend_for_routes: bool = True) -> float:
    """How long a segment stays active: its duration, stretched to cover its routes."""
    if not extend_for_routes:
        return segment.duration_ms
    slots = schedule_routes(segment.route_animations, gap_ms)
    if not slots:
        return segment.duration_ms
    return max(segment.duration_ms, max(s.end_ms for s in slots))


# ---------------------------------------------------------------------------
# Animator
# ---------------------------------------------------------------------------

class RouteState(str, Enum):
    PENDING = "pending"
    DRAWING = "drawing"
    COMPLETE = "complete"


@dataclass(frozen=True)
class RouteProgress:
    route_id: str
    state: RouteState
    progress: float
    head: tuple[float, float] | None = None
    heading: float | None = None

    def to_dict(self) -> dict:
        return {
            "route_id": self.route_id,
            "state": self.state.value,
            "progress": round(self.progress, 4),
            "head": list(self.head) if self.head else None,
            "heading": self.heading,
        }


ArrivalCallback = Callable[[RouteAnimation], None]
CompleteCallback = Callable[[str], None]


class RouteAnimator:
    """Frame-driven route draw-in for the active segment.

    Args:
        surface: Map surface the route polylines are attached to.
        scheduler: Frame timer source.
        camera: When given, routes' before/after camera states are flown to.
        apply_camera_after: Fly to ``cameraStateAfter`` when a route ends.
        on_arrival: Called when a route flagged ``showLocationInfoOnArrival``
            completes.
        on_complete: Called with the segment id once every route is drawn.
    """

    def __init__(self, surface: MapSurface, scheduler: Scheduler,
                 camera: CameraController | None = None, *,
                 frame_interval_ms: float = 50.0,
                 gap_ms: float = DEFAULT_ROUTE_GAP_MS,
                 apply_camera_after: bool = True,
                 on_arrival: ArrivalCallback | None = None,
                 on_complete: CompleteCallback | None = None) -> None:
        self._surface = surface
        self._scheduler = scheduler
        self._camera = camera
        self.frame_interval_ms = frame_interval_ms
        self.gap_ms = gap_ms
        self.apply_camera_after = apply_camera_after
        self.on_arrival = on_arrival
        self.on_complete = on_complete

        self.segment_id: str | None = None
        self.origin_ms: float | None = None
        self._slots: list[RouteSlot] = []
        self._states: dict[str, RouteState] = {}
        self._progress: dict[str, RouteProgress] = {}
        self._drawables: dict[str, Drawable] = {}
        self._timer: TimerHandle | None = None

    @property
    def running(self) -> bool:
        return self._timer is not None and self._timer.active

    @property
    def order(self) -> list[str]:
        return [s.route_id for s in self._slots]

    @property
    def elapsed_ms(self) -> float:
        if self.origin_ms is None:
            return 0.0
        return self._scheduler.now() - self.origin_ms

    def begin(self, segment_id: str, routes: Iterable[RouteAnimation]) -> None:
        """Start the routes of a newly active segment; the time origin is now."""
        self.clear()
        self.segment_id = segment_id
        self.origin_ms = self._scheduler.now()
        self._slots = schedule_routes(routes, self.gap_ms)
        if not self._slots:
            return
        logger.debug(f"Segment {segment_id}: animating {len(self._slots)} route(s) {self.order}")
        self._tick()

    def refresh(self, routes: Iterable[RouteAnimation]) -> None:
        """Swap in new route data for the same segment, keeping the time origin."""
        if self.segment_id is None:
            return
        self._slots = schedule_routes(routes, self.gap_ms)
        keep = {s.route_id for s in self._slots}
        for route_id in list(self._drawables):
            if route_id not in keep:
                self._detach(self._drawables.pop(route_id))
                self._states.pop(route_id, None)
                self._progress.pop(route_id, None)
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._tick()

    def clear(self) -> None:
        """Stop animating and remove every route drawable."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for drawable in self._drawables.values():
            self._detach(drawable)
        self._drawables.clear()
        self._states.clear()
        self._progress.clear()
        self._slots = []
        self.segment_id = None
        self.origin_ms = None

    def snapshot(self) -> list[RouteProgress]:
        result = []
        for slot in self._slots:
            result.append(self._progress.get(
                slot.route_id, RouteProgress(slot.route_id, RouteState.PENDING, 0.0)
            ))
        return result

    # -- frames ---------------------------------------------------------

    def _tick(self) -> None:
        self._timer = None
        elapsed = self.elapsed_ms
        all_done = True
        for slot in self._slots:
            if self._states.get(slot.route_id) is RouteState.COMPLETE:
                continue
            if elapsed < slot.start_ms:
                all_done = False
                continue
            self._advance(slot, elapsed)
            if self._states.get(slot.route_id) is not RouteState.COMPLETE:
                all_done = False

        if all_done:
            segment_id = self.segment_id
            logger.debug(f"Segment {segment_id}: all routes drawn")
            if self.on_complete is not None and segment_id is not None:
                self.on_complete(segment_id)
            return
        self._timer = self._scheduler.call_later(self.frame_interval_ms, self._tick)

    def _advance(self, slot: RouteSlot, elapsed: float) -> None:
        route = slot.route
        route_id = slot.route_id
        if route_id not in self._states:
            self._states[route_id] = RouteState.DRAWING
            self._on_start(route)

        span = slot.end_ms - slot.start_ms
        t = 1.0 if span <= 0 else min(1.0, (elapsed - slot.start_ms) / span)
        progress = get_easing(route.easing)(t)
        visited = path_prefix(route.route_path, progress)

        if len(visited) >= 2:
            self._draw(route, visited)
        head = visited[-1]
        heading = heading_deg(visited[-2], visited[-1]) if len(visited) >= 2 else None

        state = RouteState.COMPLETE if t >= 1.0 else RouteState.DRAWING
        self._progress[route_id] = RouteProgress(route_id, state, progress, head, heading)
        if state is RouteState.COMPLETE:
            self._states[route_id] = RouteState.COMPLETE
            self._on_end(route)

    def _draw(self, route: RouteAnimation, visited: list[tuple[float, float]]) -> None:
        geometry = {"type": "LineString", "coordinates": [list(p) for p in visited]}
        drawable = self._drawables.get(route.route_animation_id)
        if drawable is not None:
            try:
                self._surface.update_geometry(drawable, geometry)
            except Exception as e:
                logger.error(f"Route {route.route_animation_id} update failed: {e}")
            drawable.bounds = Bounds.from_points(visited)
            return

        drawable = Drawable(
            handle_id=f"{self.segment_id}/route/{route.route_animation_id}",
            kind=DrawableKind.ROUTE,
            source_id=route.route_animation_id,
            geometry=geometry,
            style={
                "color": route.visited_color,
                "pendingColor": route.route_color,
                "weight": route.route_width,
                "icon": route.icon_url or route.icon_type,
            },
            bounds=Bounds.from_points(visited),
            z_index=route.z_index,
            tooltip=_route_label(route),
        )
        try:
            self._surface.attach(drawable)
        except Exception as e:
            logger.error(f"Route {route.route_animation_id} could not be drawn: {e}")
            return
        self._drawables[route.route_animation_id] = drawable

    def _on_start(self, route: RouteAnimation) -> None:
        if self._camera is not None and route.camera_state_before is not None:
            self._camera.move_to(
                route.camera_state_before, CameraStrategy.EASE, ROUTE_CAMERA_DURATION_MS
            )

    def _on_end(self, route: RouteAnimation) -> None:
        if (self._camera is not None and self.apply_camera_after
                and route.camera_state_after is not None):
            self._camera.move_to(
                route.camera_state_after, CameraStrategy.EASE, ROUTE_CAMERA_DURATION_MS
            )
        if route.show_location_info_on_arrival and self.on_arrival is not None:
            self.on_arrival(route)

    def _detach(self, drawable: Drawable) -> None:
        try:
            self._surface.detach(drawable)
        except Exception as e:
            logger.error(f"Detach failed for {drawable.handle_id}: {e}")


def _route_label(route: RouteAnimation) -> str | None:
    if route.from_name and route.to_name:
        return f"{route.from_name} → {route.to_name}"
    return route.to_name or route.from_name
