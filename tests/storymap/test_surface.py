"""Tests for HeadlessSurface — drawable bookkeeping and bounded command history."""

from __future__ import annotations

import pytest

from storymap.surface import Drawable, DrawableKind, HeadlessSurface

pytestmark = pytest.mark.unit


def _drawable(name):
    return Drawable(
        handle_id=name,
        kind=DrawableKind.ZONE,
        source_id=name,
        geometry={"type": "Point", "coordinates": [0, 0]},
    )


class TestDrawables:

    def test_attach_and_detach(self, surface):
        d = _drawable("a")
        surface.attach(d)
        assert surface.is_attached(d)
        surface.detach(d)
        assert surface.drawables == []
        assert surface.detached == ["a"]

    def test_double_attach_rejected(self, surface):
        d = _drawable("a")
        surface.attach(d)
        with pytest.raises(ValueError):
            surface.attach(d)

    def test_unknown_detach_ignored(self, surface):
        surface.detach(_drawable("ghost"))
        assert surface.detached == []


class TestHistory:

    def test_motions_keep_the_most_recent(self):
        surface = HeadlessSurface(history=3)
        for i in range(5):
            surface.animate_to((float(i), 0.0), 4.0, 100, "ease")
        assert [m.center for m in surface.motions] == [(2.0, 0.0), (3.0, 0.0), (4.0, 0.0)]
        assert surface.get_center() == (4.0, 0.0)

    def test_detached_keeps_the_most_recent(self):
        surface = HeadlessSurface(history=2)
        for name in ("a", "b", "c"):
            d = _drawable(name)
            surface.attach(d)
            surface.detach(d)
        assert surface.detached == ["b", "c"]
