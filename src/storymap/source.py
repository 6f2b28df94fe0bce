"""Segment data source — fetches a map's story from the backend.

The backend is treated as slow and partially failing: each category
(segments, transitions, per-segment route animations, map layers) that
cannot be fetched degrades to an empty list with a warning, and playback
goes on with whatever did arrive.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Protocol

import httpx
from loguru import logger

from storymap.layers import Layer, parse_geojson_layer
from storymap.models import (
    LayerPayload,
    Segment,
    Story,
    load_route_animations,
    load_segments,
    load_transitions,
)


class SegmentSource(Protocol):
    async def fetch_segments(self, map_id: str) -> list[dict]: ...

    async def fetch_transitions(self, map_id: str) -> list[dict]: ...

    async def fetch_route_animations(self, map_id: str, segment_id: str) -> list[dict]: ...

    async def fetch_map_layers(self, map_id: str) -> list[dict]: ...


def _as_list(payload: Any, what: str) -> list:
    """Accept a bare JSON array or an object wrapping one under items/data."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ("items", "data", what):
            if isinstance(payload.get(key), list):
                return payload[key]
    raise ValueError(f"Expected a list of {what}, got {type(payload).__name__}")


class HttpSegmentSource:
    """Fetches story data from the REST backend with httpx."""

    def __init__(self, base_url: str, timeout: float = 10.0,
                 client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _client_or_new(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _get_list(self, path: str, what: str) -> list:
        client = await self._client_or_new()
        resp = await client.get(f"{self.base_url}{path}", timeout=self.timeout)
        resp.raise_for_status()
        return _as_list(resp.json(), what)

    async def fetch_segments(self, map_id: str) -> list[dict]:
        return await self._get_list(f"/storymaps/{map_id}/segments", "segments")

    async def fetch_transitions(self, map_id: str) -> list[dict]:
        return await self._get_list(f"/storymaps/{map_id}/timeline-transitions", "transitions")

    async def fetch_route_animations(self, map_id: str, segment_id: str) -> list[dict]:
        return await self._get_list(
            f"/storymaps/{map_id}/segments/{segment_id}/route-animations", "routeAnimations"
        )

    async def fetch_map_layers(self, map_id: str) -> list[dict]:
        # The map detail document carries the layers with their GeoJSON bodies.
        return await self._get_list(f"/maps/{map_id}", "layers")

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class StaticSegmentSource:
    """Serves story data from in-memory payloads (fixtures, exported tours)."""

    def __init__(self, segments: dict[str, list[dict]] | None = None,
                 transitions: dict[str, list[dict]] | None = None,
                 route_animations: dict[str, list[dict]] | None = None,
                 layers: dict[str, list[dict]] | None = None) -> None:
        self.segments = segments or {}
        self.transitions = transitions or {}
        self.route_animations = route_animations or {}
        self.layers = layers or {}

    async def fetch_segments(self, map_id: str) -> list[dict]:
        return list(self.segments.get(map_id, []))

    async def fetch_transitions(self, map_id: str) -> list[dict]:
        return list(self.transitions.get(map_id, []))

    async def fetch_route_animations(self, map_id: str, segment_id: str) -> list[dict]:
        return list(self.route_animations.get(segment_id, []))

    async def fetch_map_layers(self, map_id: str) -> list[dict]:
        return list(self.layers.get(map_id, []))


async def _fetch(what: str, pending: Awaitable[list]) -> list:
    try:
        return await pending
    except (httpx.HTTPError, ValueError) as e:
        logger.warning(f"Fetching {what} failed, continuing without: {e}")
        return []


async def load_story(source: SegmentSource, map_id: str) -> Story:
    """Fetch and validate the whole story of ``map_id``.

    Route animations delivered inline with a segment are kept; segments
    without any get theirs from the per-segment endpoint.
    """
    raw_segments, raw_transitions = await asyncio.gather(
        _fetch("segments", source.fetch_segments(map_id)),
        _fetch("transitions", source.fetch_transitions(map_id)),
    )
    segments = load_segments(raw_segments)
    transitions = load_transitions(raw_transitions)

    missing = [s for s in segments if not s.route_animations]
    fetched = await asyncio.gather(*(
        _fetch(
            f"route animations of {s.segment_id}",
            source.fetch_route_animations(map_id, s.segment_id),
        )
        for s in missing
    ))
    by_id: dict[str, Segment] = {}
    for segment, raw_routes in zip(missing, fetched):
        routes = load_route_animations(raw_routes)
        if routes:
            by_id[segment.segment_id] = segment.model_copy(update={"route_animations": routes})
    segments = [by_id.get(s.segment_id, s) for s in segments]

    logger.info(
        f"Map {map_id}: loaded {len(segments)} segments, {len(transitions)} transitions, "
        f"{sum(len(s.route_animations) for s in segments)} route animations"
    )
    return Story(map_id=map_id, segments=segments, transitions=transitions)


async def load_map_layers(source: SegmentSource, map_id: str) -> list[Layer]:
    """Fetch the data layers of ``map_id`` for the layer registry.

    Layers whose body is missing or is not GeoJSON are skipped.
    """
    layers: list[Layer] = []
    for raw in await _fetch("map layers", source.fetch_map_layers(map_id)):
        try:
            payload = LayerPayload.model_validate(raw)
            if not payload.id or payload.layer_data is None:
                raise ValueError("missing id or layerData")
            layers.append(parse_geojson_layer(
                payload.id, payload.layer_data,
                name=payload.layer_name, style=payload.layer_style,
            ))
        except ValueError as e:
            logger.warning(f"Map {map_id}: skipping layer {_raw_id(raw)}: {e}")
    logger.info(f"Map {map_id}: loaded {len(layers)} data layers")
    return layers


def _raw_id(raw: Any) -> str:
    return str(raw.get("id", "?")) if isinstance(raw, dict) else "?"
