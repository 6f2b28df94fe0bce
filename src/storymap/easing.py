"""Easing curves mapping normalized time t in [0, 1] to progress in [0, 1]."""

from __future__ import annotations

from typing import Callable

EasingFn = Callable[[float], float]


def _clamp(t: float) -> float:
    return 0.0 if t < 0 else 1.0 if t > 1 else t


def linear(t: float) -> float:
    return _clamp(t)


def ease_in(t: float) -> float:
    t = _clamp(t)
    return t * t


def ease_out(t: float) -> float:
    t = _clamp(t)
    return t * (2 - t)


def ease_in_out(t: float) -> float:
    """Quadratic ease-in-out."""
    t = _clamp(t)
    return 2 * t * t if t < 0.5 else -1 + (4 - 2 * t) * t


_BY_NAME: dict[str, EasingFn] = {
    "linear": linear,
    "ease": ease_in_out,
    "ease-in": ease_in,
    "ease-out": ease_out,
    "ease-in-out": ease_in_out,
}


def get_easing(name: str | None) -> EasingFn:
    """Look up an easing by name; unknown names fall back to linear."""
    if not name:
        return linear
    return _BY_NAME.get(name.lower(), linear)
