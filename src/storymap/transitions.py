"""Layer transition manager — cross-fades drawable sets between renders.

Incoming drawables arrive already attached (transparent when a fade is
requested).  Outgoing drawables fade out over the same duration and are
detached only once the fade completes, so the map never shows a blank
frame.  A new transition arriving mid-fade snaps the running one to its
end state first.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from storymap.clock import Scheduler, TimerHandle
from storymap.easing import EasingFn, ease_in_out, linear
from storymap.models import TransitionStyle
from storymap.surface import Drawable, MapSurface


@dataclass(eq=False)
class _Fade:
    incoming: list[Drawable]
    outgoing: list[Drawable]
    started_at: float
    duration_ms: float
    easing: EasingFn
    outgoing_from: dict[str, float] = field(default_factory=dict)
    timer: TimerHandle | None = None


class LayerTransitionManager:
    """Owns the live drawable set and retires the previous one."""

    def __init__(self, surface: MapSurface, scheduler: Scheduler,
                 frame_interval_ms: float = 16.0) -> None:
        self._surface = surface
        self._scheduler = scheduler
        self.frame_interval_ms = frame_interval_ms
        self._live: list[Drawable] = []
        self._fade: _Fade | None = None

    @property
    def live(self) -> list[Drawable]:
        return list(self._live)

    @property
    def fading(self) -> bool:
        return self._fade is not None

    def transition(self, incoming: list[Drawable], style: TransitionStyle,
                   duration_ms: float) -> None:
        """Make ``incoming`` the live set, retiring the current one.

        ``TransitionStyle.JUMP`` (or a non-positive duration) swaps at once,
        still detaching the old set only after the new one is in place.
        """
        self._finish_fade()
        outgoing = self._live
        self._live = list(incoming)

        if style is TransitionStyle.JUMP or duration_ms <= 0:
            for d in incoming:
                self._set_opacity(d, d.target_opacity)
            self._release(outgoing)
            return

        fade = _Fade(
            incoming=list(incoming),
            outgoing=outgoing,
            started_at=self._scheduler.now(),
            duration_ms=duration_ms,
            easing=linear if style is TransitionStyle.LINEAR else ease_in_out,
            outgoing_from={d.handle_id: d.opacity for d in outgoing},
        )
        self._fade = fade
        logger.debug(
            f"Cross-fade {len(outgoing)} -> {len(incoming)} drawables over {duration_ms:.0f}ms"
        )
        self._step(fade)

    def clear(self) -> None:
        """Detach every drawable this manager owns."""
        self._finish_fade()
        live, self._live = self._live, []
        self._release(live)

    # -- frames ---------------------------------------------------------

    def _step(self, fade: _Fade) -> None:
        if fade is not self._fade:
            return
        t = (self._scheduler.now() - fade.started_at) / fade.duration_ms
        p = fade.easing(t)
        for d in fade.incoming:
            self._set_opacity(d, d.target_opacity * p)
        for d in fade.outgoing:
            self._set_opacity(d, fade.outgoing_from.get(d.handle_id, 1.0) * (1.0 - p))
        if t >= 1.0:
            self._fade = None
            self._release(fade.outgoing)
            return
        fade.timer = self._scheduler.call_later(self.frame_interval_ms, lambda: self._step(fade))

    def _finish_fade(self) -> None:
        fade, self._fade = self._fade, None
        if fade is None:
            return
        if fade.timer is not None:
            fade.timer.cancel()
        for d in fade.incoming:
            self._set_opacity(d, d.target_opacity)
        self._release(fade.outgoing)

    def _set_opacity(self, drawable: Drawable, value: float) -> None:
        try:
            self._surface.set_opacity(drawable, value)
        except Exception as e:
            logger.error(f"set_opacity failed for {drawable.handle_id}: {e}")

    def _release(self, drawables: list[Drawable]) -> None:
        for d in drawables:
            try:
                self._surface.detach(d)
            except Exception as e:
                logger.error(f"Detach failed for {d.handle_id}: {e}")
