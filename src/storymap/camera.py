"""Camera controller — moves the viewport between poses.

Every request creates a :class:`CameraMotion`, which doubles as the
cancellation token for that request.  Starting a motion cancels the one
in flight, including a pending second phase of a fly, so motions never
queue behind each other.

A fly whose zoom delta exceeds the threshold (or which starts over
rendered content) runs as ``PHASE1 -> PHASE2 -> SETTLED``: first up to
``min(current, target) - offset`` at the target center, then down to the
target zoom.
"""

from __future__ import annotations

import itertools
from enum import Enum
from typing import Callable

from loguru import logger

from storymap.clock import Scheduler, TimerHandle
from storymap.geometry import Bounds
from storymap.models import CameraPose, CameraStrategy
from storymap.surface import MapSurface

_MIN_PHASE_MS = 200.0
_PHASE1_SHARE = 0.4
_PHASE2_SHARE = 0.6

_EASING_FOR = {
    CameraStrategy.INSTANT: "linear",
    CameraStrategy.LINEAR: "linear",
    CameraStrategy.EASE: "ease-in-out",
    CameraStrategy.FLY: "ease-in-out",
}


class FlyPhase(str, Enum):
    """Progress of a camera motion.

    PHASE2 is the leg that ends on the target pose; single-phase motions
    start there directly.
    """

    PENDING = "pending"
    PHASE1 = "phase1"
    PHASE2 = "phase2"
    SETTLED = "settled"
    CANCELLED = "cancelled"


class CameraMotion:
    """One requested camera move and its cancellation token."""

    def __init__(self, motion_id: int, strategy: CameraStrategy, duration_ms: float,
                 center: tuple[float, float] | None = None, zoom: float | None = None,
                 bounds: Bounds | None = None) -> None:
        self.motion_id = motion_id
        self.strategy = strategy
        self.duration_ms = duration_ms
        self.center = center
        self.zoom = zoom
        self.bounds = bounds
        self.phase = FlyPhase.PENDING
        self.two_phase = False
        self._timer: TimerHandle | None = None

    @property
    def cancelled(self) -> bool:
        return self.phase is FlyPhase.CANCELLED

    @property
    def settled(self) -> bool:
        return self.phase is FlyPhase.SETTLED

    @property
    def in_flight(self) -> bool:
        return self.phase not in (FlyPhase.SETTLED, FlyPhase.CANCELLED)

    def cancel(self) -> None:
        if not self.in_flight:
            return
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.phase = FlyPhase.CANCELLED

    def __repr__(self) -> str:
        return f"CameraMotion(id={self.motion_id}, {self.strategy.value}, phase={self.phase.value})"


class CameraController:
    """Drives the map surface camera with instant, linear, eased and fly moves."""

    def __init__(self, surface: MapSurface, scheduler: Scheduler, *,
                 zoom_threshold: float = 1.0,
                 intermediate_zoom_offset: float = 2.0,
                 fit_padding_px: float = 80.0,
                 fit_max_zoom: float = 15.0,
                 ready_retry_ms: float = 50.0,
                 ready_retry_limit: int = 10) -> None:
        self._surface = surface
        self._scheduler = scheduler
        self.zoom_threshold = zoom_threshold
        self.intermediate_zoom_offset = intermediate_zoom_offset
        self.fit_padding_px = fit_padding_px
        self.fit_max_zoom = fit_max_zoom
        self.ready_retry_ms = ready_retry_ms
        self.ready_retry_limit = ready_retry_limit
        self._ids = itertools.count(1)
        self._current: CameraMotion | None = None

    @property
    def current(self) -> CameraMotion | None:
        return self._current

    @property
    def busy(self) -> bool:
        return self._current is not None and self._current.in_flight

    def cancel(self) -> None:
        """Cancel the motion in flight, if any."""
        if self._current is not None and self._current.in_flight:
            logger.debug(f"Cancelling {self._current!r}")
            self._current.cancel()

    def move_to(self, pose: CameraPose, strategy: CameraStrategy = CameraStrategy.FLY,
                duration_ms: float = 1500.0, has_content: bool = False) -> CameraMotion:
        """Move to an authored pose.

        Args:
            pose: Target center and zoom.
            strategy: Motion style.
            duration_ms: Total duration across all phases.
            has_content: Whether the map currently shows rendered content;
                forces a two-phase fly.
        """
        motion = self._begin(strategy, duration_ms, center=pose.center, zoom=pose.zoom)
        self._when_ready(motion, lambda: self._run_pose(motion, has_content))
        return motion

    def fit(self, bounds: Bounds | None, strategy: CameraStrategy = CameraStrategy.FLY,
            duration_ms: float = 1500.0) -> CameraMotion | None:
        """Fit the viewport around ``bounds``; without bounds nothing moves."""
        if bounds is None:
            logger.warning("Auto-fit skipped: segment has no camera state and nothing rendered")
            return None
        motion = self._begin(strategy, duration_ms, bounds=bounds)
        self._when_ready(motion, lambda: self._run_fit(motion))
        return motion

    # -- internals ------------------------------------------------------

    def _begin(self, strategy: CameraStrategy, duration_ms: float, **target) -> CameraMotion:
        self.cancel()
        motion = CameraMotion(next(self._ids), strategy, max(0.0, duration_ms), **target)
        self._current = motion
        return motion

    def _when_ready(self, motion: CameraMotion, run: Callable[[], None], attempt: int = 0) -> None:
        if motion.cancelled:
            return
        if not self._surface.is_ready():
            if attempt < self.ready_retry_limit:
                motion._timer = self._scheduler.call_later(
                    self.ready_retry_ms, lambda: self._when_ready(motion, run, attempt + 1)
                )
                return
            logger.warning(f"Map surface not ready after {attempt} attempts, jumping to target")
            motion.strategy = CameraStrategy.INSTANT
            motion.duration_ms = 0.0
        try:
            run()
        except Exception as e:
            logger.error(f"Camera motion {motion.motion_id} failed: {e}")
            motion.cancel()

    def _run_pose(self, motion: CameraMotion, has_content: bool) -> None:
        if motion.strategy is CameraStrategy.INSTANT or motion.duration_ms <= 0:
            self._surface.animate_to(motion.center, motion.zoom, 0.0, "linear")
            motion.phase = FlyPhase.SETTLED
            return

        if motion.strategy is CameraStrategy.FLY:
            current_zoom = self._surface.get_zoom()
            motion.two_phase = (
                abs(current_zoom - motion.zoom) > self.zoom_threshold or has_content
            )
            if motion.two_phase:
                mid_zoom = min(current_zoom, motion.zoom) - self.intermediate_zoom_offset
                phase1_ms = max(_MIN_PHASE_MS, motion.duration_ms * _PHASE1_SHARE)
                phase2_ms = max(_MIN_PHASE_MS, motion.duration_ms * _PHASE2_SHARE)
                motion.phase = FlyPhase.PHASE1
                self._surface.animate_to(motion.center, mid_zoom, phase1_ms, "ease-in-out")
                motion._timer = self._scheduler.call_later(
                    phase1_ms, lambda: self._run_phase2(motion, phase2_ms)
                )
                return

        motion.phase = FlyPhase.PHASE2
        self._surface.animate_to(
            motion.center, motion.zoom, motion.duration_ms, _EASING_FOR[motion.strategy]
        )
        self._settle_after(motion, motion.duration_ms)

    def _run_phase2(self, motion: CameraMotion, phase2_ms: float) -> None:
        if motion.cancelled:
            return
        motion.phase = FlyPhase.PHASE2
        try:
            self._surface.animate_to(motion.center, motion.zoom, phase2_ms, "ease-in-out")
        except Exception as e:
            logger.error(f"Camera motion {motion.motion_id} phase 2 failed: {e}")
            motion.cancel()
            return
        self._settle_after(motion, phase2_ms)

    def _run_fit(self, motion: CameraMotion) -> None:
        duration = 0.0 if motion.strategy is CameraStrategy.INSTANT else motion.duration_ms
        motion.phase = FlyPhase.PHASE2
        self._surface.fit_bounds(
            motion.bounds, self.fit_padding_px, self.fit_max_zoom,
            duration, _EASING_FOR[motion.strategy],
        )
        self._settle_after(motion, duration)

    def _settle_after(self, motion: CameraMotion, delay_ms: float) -> None:
        if delay_ms <= 0:
            motion.phase = FlyPhase.SETTLED
            motion._timer = None
            return

        def _settle() -> None:
            if motion.in_flight:
                motion.phase = FlyPhase.SETTLED
                motion._timer = None

        motion._timer = self._scheduler.call_later(delay_ms, _settle)
