"""Shared fixtures for STORYMAP tests."""

from __future__ import annotations

import pytest

from storymap.clock import ManualScheduler
from storymap.surface import HeadlessSurface


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def surface():
    return HeadlessSurface(width_px=1280, height_px=800, center=(0.0, 0.0), zoom=2.0)
