"""Tests for the validated story-map schema — defaults, leniency, ordering, hashing."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from storymap.models import (
    CameraStrategy,
    Location,
    RouteAnimation,
    Segment,
    SegmentValidationError,
    SegmentZone,
    Story,
    Transition,
    TransitionStyle,
    load_route_animations,
    load_segment,
    load_segments,
    load_transitions,
)
from tests.lib.payloads import (
    location_item,
    make_story,
    route_item,
    segment_payload,
    transition_payload,
    zone_item,
)

pytestmark = pytest.mark.unit


class TestSegment:

    def test_camel_case_payload(self):
        seg = load_segment(segment_payload("s1", 2500, 3))
        assert seg.segment_id == "s1"
        assert seg.duration_ms == 2500
        assert seg.display_order == 3
        assert seg.zones == [] and seg.locations == [] and seg.route_animations == []

    @pytest.mark.parametrize("duration", [None, 0])
    def test_missing_duration_defaults_to_5000(self, duration):
        seg = load_segment(segment_payload("s1", duration))
        assert seg.duration_ms == 5000

    def test_negative_duration_rejected(self):
        with pytest.raises(SegmentValidationError):
            load_segment(segment_payload("s1", -1))

    def test_missing_id_rejected(self):
        with pytest.raises(SegmentValidationError):
            load_segment({"name": "no id"})

    def test_camera_state_json_string(self):
        seg = load_segment(segment_payload(
            "s1", cameraState=json.dumps({"center": [10.5, 50.2], "zoom": 12})
        ))
        assert seg.camera_state.center == (10.5, 50.2)
        assert seg.camera_state.zoom == 12

    def test_camera_state_zero_zoom_defaults(self):
        seg = load_segment(segment_payload("s1", cameraState={"center": [1, 2], "zoom": 0}))
        assert seg.camera_state.zoom == 10

    def test_invalid_camera_state_treated_as_absent(self):
        seg = load_segment(segment_payload("s1", cameraState="{broken"))
        assert seg.camera_state is None

    def test_invalid_items_dropped_individually(self):
        bad_zone = {"zoneId": "bad", "zone": {"zoneId": "bad", "geometry": "{nope"}}
        bad_location = {"title": "no id"}
        seg = load_segment(segment_payload(
            "s1",
            zones=[zone_item("z1", 0, 0), bad_zone],
            locations=[bad_location, location_item("l1", 0, 0)],
        ))
        assert [z.zone_id for z in seg.zones] == ["z1"]
        assert [l.location_id for l in seg.locations] == ["l1"]

    def test_content_hash_tracks_content(self):
        a = load_segment(segment_payload("s1", 1000))
        b = load_segment(segment_payload("s1", 1000))
        c = load_segment(segment_payload("s1", 1200))
        assert a.content_hash == b.content_hash
        assert a.content_hash != c.content_hash

    def test_load_segments_lenient_and_strict(self):
        raws = [segment_payload("s1"), {"durationMs": 5}]
        assert [s.segment_id for s in load_segments(raws)] == ["s1"]
        with pytest.raises(SegmentValidationError):
            load_segments(raws, strict=True)


class TestItems:

    def test_zone_defaults(self):
        sz = SegmentZone.model_validate(zone_item("z1", 0, 0))
        assert sz.fill_color == "#FFD700"
        assert sz.boundary_color == "#FFD700"
        assert sz.fill_opacity == 0.3
        assert sz.boundary_width == 2
        assert sz.zone.geometry["type"] == "Polygon"

    def test_zone_centroid_from_point_geometry(self):
        raw = zone_item("z1", 0, 0)
        raw["zone"]["centroid"] = json.dumps({"type": "Point", "coordinates": [0.5, 0.25]})
        assert SegmentZone.model_validate(raw).zone.centroid == (0.5, 0.25)

    def test_location_defaults_and_aliases(self):
        loc = Location.model_validate({"poiId": "p1", "iconSize": 0, "zIndex": None})
        assert loc.location_id == "p1"
        assert loc.icon_size == 32
        assert loc.z_index == 100
        assert loc.icon_color == "#FF0000"
        assert loc.is_visible is True

    def test_route_path_and_defaults(self):
        route = RouteAnimation.model_validate(route_item("r1", [[0, 0], [1, 1]], startDelayMs=None))
        assert route.route_path == [(0.0, 0.0), (1.0, 1.0)]
        assert route.start_delay_ms == 0
        assert route.auto_play is True

    def test_route_requires_positive_duration(self):
        assert load_route_animations([route_item("r1", [[0, 0], [1, 1]], duration_ms=0)]) == []

    def test_route_with_short_path_dropped(self):
        assert load_route_animations([route_item("r1", [[0, 0]])]) == []


class TestTransition:

    @pytest.mark.parametrize("raw,expected", [
        ("Jump", TransitionStyle.JUMP),
        ("EASE", TransitionStyle.EASE),
        ("linear", TransitionStyle.LINEAR),
        ("wobble", TransitionStyle.LINEAR),
        (None, TransitionStyle.EASE),
    ])
    def test_style_normalization(self, raw, expected):
        t = Transition.model_validate(transition_payload("a", "b", transitionType=raw))
        assert t.transition_type is expected

    @pytest.mark.parametrize("raw,expected", [
        ("Fly", CameraStrategy.FLY),
        ("Jump", CameraStrategy.INSTANT),
        ("instant", CameraStrategy.INSTANT),
        ("Ease", CameraStrategy.EASE),
        ("spiral", CameraStrategy.FLY),
    ])
    def test_camera_normalization(self, raw, expected):
        t = Transition.model_validate(transition_payload("a", "b", cameraAnimationType=raw))
        assert t.camera_animation_type is expected

    def test_animate_camera_false_means_instant(self):
        t = Transition.model_validate(transition_payload(
            "a", "b", cameraAnimationType="Fly", animateCamera=False
        ))
        assert t.camera_strategy is CameraStrategy.INSTANT

    def test_malformed_transitions_dropped(self):
        assert load_transitions([{"toSegmentId": "b"}, transition_payload("a", "b")])[0].to_segment_id == "b"
        assert len(load_transitions([{"toSegmentId": "b"}])) == 0


class TestStory:

    def test_segments_sorted_by_display_order(self):
        story = make_story([
            segment_payload("c", display_order=2),
            segment_payload("a", display_order=0),
            segment_payload("b", display_order=1),
        ])
        assert [s.segment_id for s in story.segments] == ["a", "b", "c"]
        assert story.index_of("c") == 2
        assert story.index_of("zzz") is None
        assert len(story) == 3

    def test_find_transition(self):
        story = make_story(
            [segment_payload("a"), segment_payload("b", display_order=1)],
            [transition_payload("a", "b", requireUserAction=True)],
        )
        assert story.find_transition("a", "b").require_user_action is True
        assert story.find_transition("b", "a") is None
        assert story.find_transition(None, "a") is None

    def test_with_segment_replaces_by_id(self):
        story = make_story([segment_payload("a", 1000), segment_payload("b", 1000, 1)])
        updated = story.with_segment(load_segment(segment_payload("a", 4000)))
        assert updated.get_segment("a").duration_ms == 4000
        assert story.get_segment("a").duration_ms == 1000
        assert isinstance(updated, Story)

    def test_segment_is_immutable(self):
        seg = load_segment(segment_payload("a"))
        with pytest.raises(ValidationError):
            seg.duration_ms = 1
        assert isinstance(seg, Segment)
