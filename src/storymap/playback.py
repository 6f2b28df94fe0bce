"""Playback controller — the story-map state machine.

States::

    STOPPED --start--> PLAYING(i) --advance--> PLAYING(i+1) ... --end--> STOPPED
                         |    ^
      gate on (i-1 -> i) |    | continue_after_user_action
                         v    |
                       WAITING(i)

    PLAYING/WAITING --pause--> PAUSED(i) --resume--> PLAYING(i)

Every render runs the same cycle: compare the segment's content hash with
the one last rendered (identical: nothing to do; same segment with new
content: quick in-place update; different segment: full render with
camera motion, cross-fade and a fresh route origin).  The rendered id and
hash live in the immutable :class:`PlaybackState`, replaced as a whole.

Advance timers carry the generation they were armed in; any control
that changes what is active bumps the generation, so a stale timer
firing late does nothing.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Protocol

from loguru import logger

from storymap.camera import CameraController
from storymap.clock import Scheduler, TimerHandle
from storymap.models import CameraStrategy, RouteAnimation, Segment, Story, Transition, TransitionStyle
from storymap.renderer import GeometryRenderer, LayerLoader
from storymap.routes import RouteAnimator, effective_duration
from storymap.surface import MapSurface
from storymap.transitions import LayerTransitionManager


class PlaybackStateError(RuntimeError):
    """Raised for a control that is not valid in the current state or role."""


class PlaybackStatus(str, Enum):
    STOPPED = "stopped"
    PLAYING = "playing"
    WAITING = "waiting-for-user-action"
    PAUSED = "paused"


class Role(str, Enum):
    STANDALONE = "standalone"
    CONTROLLER = "controller"
    VIEWER = "viewer"


@dataclass(frozen=True)
class PlaybackState:
    """Complete playback state; replaced, never mutated."""

    status: PlaybackStatus = PlaybackStatus.STOPPED
    index: int = 0
    pending_transition: Transition | None = None
    rendered_segment_id: str | None = None
    rendered_hash: str | None = None
    segment_started_at: float | None = None
    generation: int = 0
    routes_only: bool = False

    @property
    def is_playing(self) -> bool:
        return self.status in (PlaybackStatus.PLAYING, PlaybackStatus.WAITING)

    def to_dict(self) -> dict:
        pending = self.pending_transition
        return {
            "status": self.status.value,
            "index": self.index,
            "is_playing": self.is_playing,
            "segment_id": self.rendered_segment_id,
            "segment_started_at": self.segment_started_at,
            "routes_only": self.routes_only,
            "generation": self.generation,
            "pending_transition": None if pending is None else {
                "id": pending.timeline_transition_id,
                "from": pending.from_segment_id,
                "to": pending.to_segment_id,
                "button_text": pending.trigger_button_text,
            },
        }


@dataclass
class PlaybackOptions:
    """Engine tunables (all times in milliseconds)."""

    advance_retry_delay_ms: float = 250.0
    default_fade_duration_ms: float = 800.0
    quick_update_duration_ms: float = 200.0
    default_camera_duration_ms: float = 1500.0
    fly_zoom_threshold: float = 1.0
    fly_intermediate_zoom_offset: float = 2.0
    fit_padding_px: float = 80.0
    fit_max_zoom: float = 15.0
    camera_ready_retry_ms: float = 50.0
    camera_ready_retry_limit: int = 10
    route_frame_interval_ms: float = 50.0
    fade_frame_interval_ms: float = 16.0
    route_gap_ms: float = 500.0
    extend_duration_for_routes: bool = True


class StatePublisher(Protocol):
    """Outbound side of the sync channel as seen by a controller."""

    def publish_segment_change(self, index: int, segment: Segment) -> None: ...

    def publish_play_state(self, is_playing: bool, stopped: bool = False) -> None: ...


class PlaybackController:
    """Drives one map surface through a story.

    Args:
        story: Validated segments and transitions.
        surface: Map surface to draw on.
        scheduler: Timer source (asyncio in the service, manual in tests).
        layer_loader: Resolves segment data layers.
        publisher: Broadcast target for the controller role.
        role: STANDALONE, CONTROLLER (publishes) or VIEWER (remote driven).
        options: Engine tunables.
        on_arrival: Called when a route with arrival info completes.
    """

    def __init__(self, story: Story, surface: MapSurface, scheduler: Scheduler, *,
                 layer_loader: LayerLoader | None = None,
                 publisher: StatePublisher | None = None,
                 role: Role = Role.STANDALONE,
                 options: PlaybackOptions | None = None,
                 on_arrival: Callable[[RouteAnimation], None] | None = None) -> None:
        self.options = options or PlaybackOptions()
        self.role = role
        self._story = story
        self._surface = surface
        self._scheduler = scheduler
        self._publisher = publisher

        o = self.options
        self.renderer = GeometryRenderer(surface, layer_loader)
        self.camera = CameraController(
            surface, scheduler,
            zoom_threshold=o.fly_zoom_threshold,
            intermediate_zoom_offset=o.fly_intermediate_zoom_offset,
            fit_padding_px=o.fit_padding_px,
            fit_max_zoom=o.fit_max_zoom,
            ready_retry_ms=o.camera_ready_retry_ms,
            ready_retry_limit=o.camera_ready_retry_limit,
        )
        self.transitions = LayerTransitionManager(surface, scheduler, o.fade_frame_interval_ms)
        self.routes = RouteAnimator(
            surface, scheduler, self.camera,
            frame_interval_ms=o.route_frame_interval_ms,
            gap_ms=o.route_gap_ms,
            apply_camera_after=role is not Role.VIEWER,
            on_arrival=on_arrival,
            on_complete=self._on_routes_complete,
        )

        self._state = PlaybackState()
        self._advance_timer: TimerHandle | None = None
        self._remote_playing = False

    # -- read side ------------------------------------------------------

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def story(self) -> Story:
        return self._story

    @property
    def index(self) -> int:
        return self._state.index

    @property
    def is_playing(self) -> bool:
        return self._state.is_playing

    @property
    def current_segment(self) -> Segment | None:
        if self._state.rendered_segment_id is None:
            return None
        return self._story.get_segment(self._state.rendered_segment_id)

    def snapshot(self) -> dict:
        data = self._state.to_dict()
        data["role"] = self.role.value
        data["segment_count"] = len(self._story)
        data["live_drawables"] = len(self.transitions.live)
        data["camera"] = None if self.camera.current is None else self.camera.current.phase.value
        data["routes"] = [p.to_dict() for p in self.routes.snapshot()]
        return data

    # -- controls -------------------------------------------------------

    def start(self, from_index: int | None = None) -> None:
        """Begin automatic playback at ``from_index`` (default 0)."""
        self._require_local_control("start")
        if not self._story.segments:
            logger.warning(f"Map {self._story.map_id}: nothing to play, story has no segments")
            return
        index = 0 if from_index is None else from_index
        self._check_index(index)
        self._cancel_advance()
        st = self._state
        self._state = replace(
            st, status=PlaybackStatus.PLAYING, pending_transition=None,
            routes_only=False, generation=st.generation + 1,
        )
        logger.info(f"Map {self._story.map_id}: playback started at segment {index}")
        self._publish_play_state(True)
        self._show(index, restart_routes=True)
        self._schedule_next()

    def stop(self) -> None:
        """Cancel everything, clear the map and return to STOPPED at index 0."""
        self._require_local_control("stop")
        self._halt()
        logger.info(f"Map {self._story.map_id}: playback stopped")
        self._publish_play_state(False, stopped=True)

    def go_to(self, index: int) -> None:
        """Seek to ``index``; keeps auto-advancing only if playback was running."""
        self._require_local_control("go_to")
        self._check_index(index)
        self._seek(index)

    def continue_after_user_action(self) -> None:
        """Release a requireUserAction gate and advance."""
        self._require_local_control("continue_after_user_action")
        if self._state.status is not PlaybackStatus.WAITING:
            raise PlaybackStateError(
                f"Not waiting for user action (status is {self._state.status.value})"
            )
        self._step_forward()

    def pause(self) -> None:
        self._require_local_control("pause")
        st = self._state
        if not st.is_playing:
            raise PlaybackStateError(f"Cannot pause while {st.status.value}")
        self._cancel_advance()
        self._state = replace(
            st, status=PlaybackStatus.PAUSED, pending_transition=None,
            generation=st.generation + 1,
        )
        logger.info(f"Map {self._story.map_id}: paused at segment {st.index}")
        self._publish_play_state(False)

    def resume(self) -> None:
        self._require_local_control("resume")
        st = self._state
        if st.status is not PlaybackStatus.PAUSED:
            raise PlaybackStateError(f"Cannot resume while {st.status.value}")
        self._state = replace(st, status=PlaybackStatus.PLAYING, generation=st.generation + 1)
        logger.info(f"Map {self._story.map_id}: resumed at segment {st.index}")
        self._publish_play_state(True)
        self._schedule_next()

    def play_route_animation_only(self, segment_id: str) -> None:
        """Replay a segment's routes without camera motion or re-rendering.

        Automatic advance is suspended until the routes have finished.
        """
        self._require_local_control("play_route_animation_only")
        segment = self._story.get_segment(segment_id)
        if segment is None:
            raise PlaybackStateError(f"Unknown segment {segment_id}")
        self._cancel_advance()
        st = self._state
        self._state = replace(st, routes_only=True, generation=st.generation + 1)
        logger.info(f"Map {self._story.map_id}: playing routes of segment {segment_id} only")
        self.routes.begin(segment.segment_id, segment.route_animations)
        if not self.routes.running:
            self._end_routes_only()

    def update_story(self, story: Story) -> None:
        """Replace the segment data mid-session.

        The active segment keeps playing: its new content is diffed by hash
        and refreshed in place, without touching the advance timer or the
        route origin.  If it was removed, playback seeks to the nearest
        remaining index.
        """
        self._story = story
        st = self._state
        if st.rendered_segment_id is None:
            if st.index >= len(story):
                self._state = replace(st, index=0)
            return
        if not story.segments:
            logger.warning(f"Map {story.map_id}: story is now empty, stopping playback")
            self._halt()
            self._publish_play_state(False, stopped=True)
            return
        index = story.index_of(st.rendered_segment_id)
        if index is not None:
            self._show(index)
            return
        target = min(st.index, len(story) - 1)
        logger.warning(
            f"Map {story.map_id}: active segment {st.rendered_segment_id} was removed, "
            f"seeking to {target}"
        )
        self._seek(target)

    def resync(self) -> None:
        """Re-publish the current state for late-joining viewers."""
        if self.role is not Role.CONTROLLER or self._publisher is None:
            return
        st = self._state
        if st.rendered_segment_id is not None:
            self._publish_segment_change()
        self._publish_play_state(st.is_playing, stopped=st.status is PlaybackStatus.STOPPED)

    # -- remote side (viewer) -------------------------------------------

    def apply_segment_change(self, index: int, segment: Segment | None = None) -> None:
        """Adopt a controller's active segment as authoritative."""
        if segment is not None:
            known = self._story.get_segment(segment.segment_id)
            if known is None:
                logger.warning(f"Map {self._story.map_id}: remote segment {segment.segment_id} is unknown locally")
            elif known.content_hash != segment.content_hash:
                self._story = self._story.with_segment(segment)
        if not 0 <= index < len(self._story):
            logger.warning(f"Map {self._story.map_id}: remote index {index} out of range, ignored")
            return
        st = self._state
        status = PlaybackStatus.PLAYING if self._remote_playing else PlaybackStatus.PAUSED
        self._state = replace(
            st, status=status, pending_transition=None, routes_only=False,
            generation=st.generation + 1,
        )
        self._show(index)

    def apply_play_state(self, is_playing: bool, stopped: bool = False) -> None:
        """Adopt a controller's play/pause/stop state as authoritative."""
        self._remote_playing = is_playing
        if stopped:
            self._halt()
            return
        st = self._state
        if st.status is PlaybackStatus.STOPPED:
            return
        status = PlaybackStatus.PLAYING if is_playing else PlaybackStatus.PAUSED
        self._state = replace(st, status=status)

    # -- render cycle ---------------------------------------------------

    def _show(self, index: int, restart_routes: bool = False) -> None:
        segment = self._story.segments[index]
        digest = segment.content_hash
        st = self._state
        self._state = replace(st, index=index)

        if st.rendered_segment_id == segment.segment_id:
            if st.rendered_hash == digest:
                logger.debug(f"Segment {segment.segment_id} unchanged, render skipped")
                if restart_routes:
                    self.routes.begin(segment.segment_id, segment.route_animations)
                    self._state = replace(self._state, segment_started_at=self._scheduler.now())
                if index != st.index:
                    self._publish_segment_change()
                return
            self._quick_update(segment)
            return
        self._full_render(segment, st.rendered_segment_id)

    def _full_render(self, segment: Segment, previous_id: str | None) -> None:
        o = self.options
        transition = self._story.find_transition(previous_id, segment.segment_id)
        if transition is None:
            style = TransitionStyle.JUMP
            fade_ms = 0.0
            strategy = CameraStrategy.FLY
            camera_ms = o.default_camera_duration_ms
        else:
            style = transition.transition_type
            fade_ms = (transition.duration_ms if transition.duration_ms is not None
                       else o.default_fade_duration_ms)
            strategy = transition.camera_strategy
            camera_ms = (transition.camera_animation_duration_ms
                         if transition.camera_animation_duration_ms is not None
                         else o.default_camera_duration_ms)

        had_content = bool(self.transitions.live)
        fading = style is not TransitionStyle.JUMP and fade_ms > 0
        result = self.renderer.render(segment, fade_in=fading)

        if segment.camera_state is not None:
            self.camera.move_to(segment.camera_state, strategy, camera_ms, has_content=had_content)
        else:
            self.camera.fit(result.union, strategy, camera_ms)

        self.transitions.transition(result.drawables, style, fade_ms)
        self.routes.begin(segment.segment_id, segment.route_animations)

        self._state = replace(
            self._state,
            rendered_segment_id=segment.segment_id,
            rendered_hash=segment.content_hash,
            segment_started_at=self._scheduler.now(),
        )
        logger.info(
            f"Map {self._story.map_id}: segment {self._state.index} "
            f"'{segment.name or segment.segment_id}' active"
        )
        self._publish_segment_change()

    def _quick_update(self, segment: Segment) -> None:
        result = self.renderer.render(segment, fade_in=True)
        self.transitions.transition(
            result.drawables, TransitionStyle.EASE, self.options.quick_update_duration_ms
        )
        if self.routes.segment_id == segment.segment_id:
            self.routes.refresh(segment.route_animations)
        self._state = replace(self._state, rendered_hash=segment.content_hash)
        logger.info(f"Segment {segment.segment_id} content changed, refreshed in place")
        self._publish_segment_change()

    # -- scheduling -----------------------------------------------------

    def _schedule_next(self) -> None:
        st = self._state
        if self.role is Role.VIEWER or st.status is not PlaybackStatus.PLAYING or st.routes_only:
            return
        segments = self._story.segments
        segment = segments[st.index]
        if st.index > 0:
            gate = self._story.find_transition(segments[st.index - 1].segment_id, segment.segment_id)
            if gate is not None and gate.require_user_action:
                self._state = replace(st, status=PlaybackStatus.WAITING, pending_transition=gate)
                logger.info(
                    f"Map {self._story.map_id}: waiting for user action at segment {st.index} "
                    f"('{gate.trigger_button_text or 'Continue'}')"
                )
                return
        delay = effective_duration(
            segment, self.options.route_gap_ms, self.options.extend_duration_for_routes
        )
        self._cancel_advance()
        generation = st.generation
        self._advance_timer = self._scheduler.call_later(
            delay, lambda: self._on_advance_due(generation)
        )

    def _on_advance_due(self, generation: int) -> None:
        self._advance_timer = None
        st = self._state
        if generation != st.generation or st.status is not PlaybackStatus.PLAYING or st.routes_only:
            logger.debug(f"Stale advance timer (generation {generation}) ignored")
            return
        if not self._surface.is_ready():
            retry = self.options.advance_retry_delay_ms
            logger.warning(f"Map surface not ready, retrying advance in {retry:.0f}ms")
            self._advance_timer = self._scheduler.call_later(
                retry, lambda: self._on_advance_due(generation)
            )
            return
        self._step_forward()

    def _step_forward(self) -> None:
        st = self._state
        nxt = st.index + 1
        if nxt >= len(self._story):
            logger.info(f"Map {self._story.map_id}: reached the last segment, playback finished")
            self._halt()
            self._publish_play_state(False, stopped=True)
            return
        self._state = replace(
            st, status=PlaybackStatus.PLAYING, pending_transition=None,
            generation=st.generation + 1,
        )
        self._show(nxt)
        self._schedule_next()

    def _seek(self, index: int) -> None:
        self._cancel_advance()
        st = self._state
        status = PlaybackStatus.PLAYING if st.is_playing else PlaybackStatus.PAUSED
        self._state = replace(
            st, status=status, pending_transition=None, routes_only=False,
            generation=st.generation + 1,
        )
        self._show(index)
        self._schedule_next()

    def _halt(self) -> None:
        self._cancel_advance()
        self.camera.cancel()
        self.routes.clear()
        self.transitions.clear()
        self._state = PlaybackState(generation=self._state.generation + 1)

    def _cancel_advance(self) -> None:
        if self._advance_timer is not None:
            self._advance_timer.cancel()
            self._advance_timer = None

    def _on_routes_complete(self, segment_id: str) -> None:
        if self._state.routes_only:
            logger.info(f"Routes of segment {segment_id} finished")
            self._end_routes_only()

    def _end_routes_only(self) -> None:
        # Routes replayed for another segment must not linger as the active one's.
        if self.routes.segment_id != self._state.rendered_segment_id:
            self.routes.clear()
        self._state = replace(self._state, routes_only=False)
        self._schedule_next()

    # -- helpers --------------------------------------------------------

    def _require_local_control(self, operation: str) -> None:
        if self.role is Role.VIEWER:
            raise PlaybackStateError(f"{operation}() is disabled for a viewer under remote control")

    def _check_index(self, index: int) -> None:
        if not 0 <= index < len(self._story):
            raise IndexError(f"Segment index {index} out of range [0, {len(self._story)})")

    def _publish_segment_change(self) -> None:
        if self.role is not Role.CONTROLLER or self._publisher is None:
            return
        index = self._state.index
        self._publisher.publish_segment_change(index, self._story.segments[index])

    def _publish_play_state(self, is_playing: bool, stopped: bool = False) -> None:
        if self.role is not Role.CONTROLLER or self._publisher is None:
            return
        self._publisher.publish_play_state(is_playing, stopped)
