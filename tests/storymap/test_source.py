"""Tests for segment data sources and story loading (partial failure tolerance)."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from storymap.source import HttpSegmentSource, StaticSegmentSource, load_map_layers, load_story
from tests.lib.payloads import route_item, segment_payload, square, transition_payload, zone_item

pytestmark = pytest.mark.unit

BASE = "http://backend.test/api"

ROADS = {
    "type": "FeatureCollection",
    "features": [{"type": "Feature", "geometry": square(1, 1), "properties": {"name": "Block"}}],
}


def _run(coro):
    return asyncio.run(coro)


def _http_source(routes: dict[str, httpx.Response]) -> HttpSegmentSource:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/api")
        resp = routes.get(path)
        if resp is None:
            return httpx.Response(404, json={"detail": "not found"})
        return resp

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpSegmentSource(BASE, client=client)


class TestStaticSource:

    def test_loads_ordered_story(self):
        source = StaticSegmentSource(
            segments={"m": [segment_payload("b", 1000, 1), segment_payload("a", 1000, 0)]},
            transitions={"m": [transition_payload("a", "b", requireUserAction=True)]},
        )
        story = _run(load_story(source, "m"))
        assert [s.segment_id for s in story.segments] == ["a", "b"]
        assert story.find_transition("a", "b").require_user_action

    def test_route_animations_fetched_for_segments_without_inline_routes(self):
        inline = [route_item("inline", [[0, 0], [1, 1]])]
        source = StaticSegmentSource(
            segments={"m": [
                segment_payload("a", 1000, 0, routeAnimations=inline),
                segment_payload("b", 1000, 1),
            ]},
            route_animations={
                "a": [route_item("ignored", [[0, 0], [1, 1]])],
                "b": [route_item("fetched", [[0, 0], [1, 1]])],
            },
        )
        story = _run(load_story(source, "m"))
        assert [r.route_animation_id for r in story.get_segment("a").route_animations] == ["inline"]
        assert [r.route_animation_id for r in story.get_segment("b").route_animations] == ["fetched"]

    def test_unknown_map_is_empty(self):
        story = _run(load_story(StaticSegmentSource(), "ghost"))
        assert len(story) == 0


class TestHttpSource:

    def test_full_story_over_http(self):
        source = _http_source({
            "/storymaps/m/segments": httpx.Response(200, json=[
                segment_payload("a", 1000, 0, zones=[zone_item("z", 0, 0)]),
            ]),
            "/storymaps/m/timeline-transitions": httpx.Response(200, json={"items": []}),
            "/storymaps/m/segments/a/route-animations": httpx.Response(200, json={
                "routeAnimations": [route_item("r", [[0, 0], [1, 1]])],
            }),
        })
        story = _run(load_story(source, "m"))
        segment = story.get_segment("a")
        assert len(segment.zones) == 1
        assert [r.route_animation_id for r in segment.route_animations] == ["r"]

    def test_failing_categories_degrade_to_empty(self):
        source = _http_source({
            "/storymaps/m/segments": httpx.Response(200, json=[segment_payload("a", 1000, 0)]),
            "/storymaps/m/timeline-transitions": httpx.Response(500, text="boom"),
        })
        story = _run(load_story(source, "m"))
        assert [s.segment_id for s in story.segments] == ["a"]
        assert story.transitions == []
        assert story.get_segment("a").route_animations == []

    def test_unexpected_shape_degrades_to_empty(self):
        source = _http_source({
            "/storymaps/m/segments": httpx.Response(200, json={"unexpected": True}),
        })
        assert len(_run(load_story(source, "m"))) == 0

    def test_malformed_segments_dropped(self):
        source = _http_source({
            "/storymaps/m/segments": httpx.Response(200, json=[
                {"durationMs": 10}, segment_payload("ok", 1000, 0),
            ]),
        })
        story = _run(load_story(source, "m"))
        assert [s.segment_id for s in story.segments] == ["ok"]

    def test_aclose_leaves_injected_client_open(self):
        source = _http_source({})

        async def scenario():
            await source.aclose()
            return source._client.is_closed

        assert _run(scenario()) is False


class TestMapLayers:

    def test_static_layers_parsed(self):
        source = StaticSegmentSource(layers={"m": [
            {"id": "roads", "layerName": "Roads", "layerData": ROADS,
             "layerStyle": '{"color": "#333"}'},
        ]})
        layers = _run(load_map_layers(source, "m"))
        assert [layer.layer_id for layer in layers] == ["roads"]
        assert layers[0].name == "Roads"
        assert layers[0].style == {"color": "#333"}
        assert len(layers[0].features) == 1

    def test_layers_without_usable_body_skipped(self):
        source = StaticSegmentSource(layers={"m": [
            {"id": "empty", "layerName": "No data"},
            {"id": "broken", "layerData": "{nope"},
            {"layerData": ROADS},
            "not-a-layer",
            {"id": "ok", "layerData": ROADS},
        ]})
        assert [layer.layer_id for layer in _run(load_map_layers(source, "m"))] == ["ok"]

    def test_layers_from_map_detail(self):
        source = _http_source({
            "/maps/m": httpx.Response(200, json={
                "id": "m", "name": "Tour",
                "layers": [{"id": "roads", "layerName": "Roads", "layerData": ROADS}],
            }),
        })
        layers = _run(load_map_layers(source, "m"))
        assert [layer.layer_id for layer in layers] == ["roads"]

    def test_map_detail_failure_degrades_to_no_layers(self):
        source = _http_source({"/maps/m": httpx.Response(503, text="busy")})
        assert _run(load_map_layers(source, "m")) == []
