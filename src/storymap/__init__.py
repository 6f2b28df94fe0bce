"""STORYMAP engine — story-map playback and live synchronization.

Turns an authored, ordered list of segments (zones, locations, data
layers, a camera pose, animated routes) into a timed guided tour on a map
surface, optionally mirrored from a controller to any number of viewers.
"""

from storymap.clock import AsyncioScheduler, ManualScheduler, Scheduler, TimerHandle
from storymap.models import (
    CameraPose,
    CameraStrategy,
    RouteAnimation,
    Segment,
    SegmentValidationError,
    Story,
    Transition,
    TransitionStyle,
    load_segment,
    load_segments,
)
from storymap.playback import (
    PlaybackController,
    PlaybackOptions,
    PlaybackState,
    PlaybackStateError,
    PlaybackStatus,
    Role,
)
from storymap.surface import Drawable, HeadlessSurface, MapSurface
from storymap.sync import LocalSyncHub, SyncPublisher, ViewerFollower, channel_name

__version__ = "0.1.0"

__all__ = [
    "AsyncioScheduler",
    "CameraPose",
    "CameraStrategy",
    "Drawable",
    "HeadlessSurface",
    "LocalSyncHub",
    "ManualScheduler",
    "MapSurface",
    "PlaybackController",
    "PlaybackOptions",
    "PlaybackState",
    "PlaybackStateError",
    "PlaybackStatus",
    "RouteAnimation",
    "Role",
    "Scheduler",
    "Segment",
    "SegmentValidationError",
    "Story",
    "SyncPublisher",
    "TimerHandle",
    "Transition",
    "TransitionStyle",
    "ViewerFollower",
    "channel_name",
    "load_segment",
    "load_segments",
]
