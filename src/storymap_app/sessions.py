"""Live playback sessions, one per map id.

A session is a controller-role PlaybackController drawing on a headless
surface and publishing on the map's sync channel.  Operators drive it
through the REST router; viewers follow it over the WebSocket relay.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone

from loguru import logger

from storymap.clock import AsyncioScheduler
from storymap.layers import LayerRegistry
from storymap.models import RouteAnimation
from storymap.playback import PlaybackController, PlaybackOptions, PlaybackStatus, Role
from storymap.source import SegmentSource, load_map_layers, load_story
from storymap.surface import HeadlessSurface
from storymap.sync import SyncChannel, SyncPublisher


@dataclass
class PlaybackSession:
    map_id: str
    controller: PlaybackController
    surface: HeadlessSurface
    publisher: SyncPublisher
    layers: LayerRegistry
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def channel(self) -> str:
        return self.publisher.name

    def close(self) -> None:
        if self.controller.state.status is not PlaybackStatus.STOPPED:
            self.controller.stop()

    def describe(self) -> dict:
        return {
            "map_id": self.map_id,
            "channel": self.channel,
            "created_at": self.created_at.isoformat(),
            "layers": len(self.layers),
            "segments": [
                {"index": i, "segment_id": s.segment_id, "name": s.name, "duration_ms": s.duration_ms}
                for i, s in enumerate(self.controller.story.segments)
            ],
            "state": self.controller.snapshot(),
        }


class SessionRegistry:
    """Creates, looks up and tears down playback sessions."""

    def __init__(self, source: SegmentSource, channel: SyncChannel,
                 options: PlaybackOptions | None = None,
                 viewport: tuple[int, int] = (1280, 800)) -> None:
        self._source = source
        self._channel = channel
        self._options = options or PlaybackOptions()
        self._viewport = viewport
        self._sessions: dict[str, PlaybackSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, map_id: str) -> PlaybackSession | None:
        return self._sessions.get(map_id)

    def list_sessions(self) -> list[PlaybackSession]:
        return list(self._sessions.values())

    async def open(self, map_id: str) -> PlaybackSession:
        """Load the story of ``map_id`` and start a fresh session for it.

        An existing session for the same map is stopped and replaced.
        """
        story, map_layers = await asyncio.gather(
            load_story(self._source, map_id),
            load_map_layers(self._source, map_id),
        )
        self.close(map_id)

        width, height = self._viewport
        surface = HeadlessSurface(width_px=width, height_px=height)
        layers = LayerRegistry()
        layers.replace_all(map_layers)
        publisher = SyncPublisher(self._channel, map_id)

        def _on_arrival(route: RouteAnimation) -> None:
            logger.info(
                f"Map {map_id}: route {route.route_animation_id} arrived"
                f" at {route.to_location_id or route.to_name or 'destination'}"
            )

        controller = PlaybackController(
            story, surface, AsyncioScheduler(),
            layer_loader=layers.load,
            publisher=publisher,
            role=Role.CONTROLLER,
            options=self._options,
            on_arrival=_on_arrival,
        )
        session = PlaybackSession(map_id, controller, surface, publisher, layers)
        self._sessions[map_id] = session
        logger.info(f"Session opened for map {map_id} on {session.channel} ({len(story)} segments)")
        return session

    async def refresh(self, map_id: str) -> PlaybackSession | None:
        """Reload the story of a running session without restarting playback."""
        session = self._sessions.get(map_id)
        if session is None:
            return None
        story, map_layers = await asyncio.gather(
            load_story(self._source, map_id),
            load_map_layers(self._source, map_id),
        )
        session.layers.replace_all(map_layers)
        session.controller.update_story(story)
        return session

    def close(self, map_id: str) -> bool:
        session = self._sessions.pop(map_id, None)
        if session is None:
            return False
        session.close()
        logger.info(f"Session closed for map {map_id}")
        return True

    def close_all(self) -> None:
        for map_id in list(self._sessions):
            self.close(map_id)
