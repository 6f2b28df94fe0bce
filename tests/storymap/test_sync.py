"""Tests for the sync channel: wire messages, LocalSyncHub, publisher and follower."""

from __future__ import annotations

import json

import pytest

from storymap.playback import PlaybackController, PlaybackStatus, Role
from storymap.surface import HeadlessSurface
from storymap.sync import (
    SYNC_PROTOCOL_VERSION,
    LocalSyncHub,
    PlayStateMessage,
    SegmentChangeMessage,
    SyncMessageError,
    SyncPublisher,
    ViewerFollower,
    channel_name,
    encode_message,
    parse_message,
)
from tests.lib.payloads import three_segment_story

pytestmark = pytest.mark.unit


class FakePlayback:
    def __init__(self):
        self.calls = []

    def apply_segment_change(self, index, segment=None):
        self.calls.append(("segment", index, segment.segment_id if segment else None))

    def apply_play_state(self, is_playing, stopped=False):
        self.calls.append(("play", is_playing, stopped))


class TestMessages:

    def test_wire_format_is_camel_case(self):
        msg = SegmentChangeMessage(seq=3, sender="c1", segment_index=2, timestamp=5.0)
        wire = encode_message(msg)
        assert wire["type"] == "segment-change"
        assert wire["segmentIndex"] == 2
        assert wire["version"] == SYNC_PROTOCOL_VERSION

    def test_parse_dispatches_on_type(self):
        raw = json.dumps({"type": "play-state", "isPlaying": True, "seq": 1, "sender": "c"})
        msg = parse_message(raw)
        assert isinstance(msg, PlayStateMessage)
        assert msg.is_playing and not msg.stopped

    @pytest.mark.parametrize("raw", [
        "{not json",
        {"type": "teleport"},
        {"type": "segment-change", "segmentIndex": -1},
        {"type": "play-state"},
    ])
    def test_malformed_messages_rejected(self, raw):
        with pytest.raises(SyncMessageError):
            parse_message(raw)


class TestLocalSyncHub:

    def test_no_echo_to_sender(self):
        hub = LocalSyncHub()
        got_a, got_b = [], []
        hub.subscribe("ch", got_a.append, "a")
        hub.subscribe("ch", got_b.append, "b")
        hub.publish("ch", {"n": 1}, sender="a")
        assert got_a == []
        assert got_b == [{"n": 1}]

    def test_channels_are_isolated(self):
        hub = LocalSyncHub()
        got = []
        hub.subscribe("one", got.append)
        hub.publish("two", {"n": 1})
        assert got == []

    def test_closed_subscription_receives_nothing(self):
        hub = LocalSyncHub()
        got = []
        sub = hub.subscribe("ch", got.append)
        sub.close()
        hub.publish("ch", {"n": 1})
        assert got == []
        assert hub.subscriber_count("ch") == 0

    def test_failing_handler_does_not_block_others(self):
        hub = LocalSyncHub()
        got = []

        def boom(message):
            raise RuntimeError("handler bug")

        hub.subscribe("ch", boom)
        hub.subscribe("ch", got.append)
        hub.publish("ch", {"n": 1})
        assert got == [{"n": 1}]

    def test_scheduled_delivery(self, scheduler):
        hub = LocalSyncHub(scheduler, delay_ms=30)
        got = []
        hub.subscribe("ch", got.append)
        hub.publish("ch", {"n": 1})
        assert got == []
        scheduler.advance(30)
        assert got == [{"n": 1}]


class TestPublisher:

    def test_sequence_numbers_increase(self):
        hub = LocalSyncHub()
        got = []
        hub.subscribe(channel_name("m"), got.append)
        pub = SyncPublisher(hub, "m", sender="ctl")
        pub.publish_play_state(True)
        pub.publish_play_state(False, stopped=True)
        assert [m["seq"] for m in got] == [1, 2]
        assert got[1]["stopped"] is True
        assert all(m["sender"] == "ctl" for m in got)

    def test_channel_failure_disables_publisher(self):
        class BrokenChannel:
            def __init__(self):
                self.calls = 0

            def publish(self, name, message, sender=None):
                self.calls += 1
                raise ConnectionError("channel closed")

        channel = BrokenChannel()
        pub = SyncPublisher(channel, "m")
        pub.publish_play_state(True)
        pub.publish_play_state(False)
        assert pub.disabled
        assert channel.calls == 1


class TestViewerFollower:

    @pytest.fixture
    def follower(self):
        return ViewerFollower(FakePlayback(), LocalSyncHub(), "m", viewer_id="v1")

    def test_applies_valid_messages(self, follower):
        assert follower.handle({"type": "play-state", "isPlaying": True, "seq": 1, "sender": "c"})
        assert follower.handle({"type": "segment-change", "segmentIndex": 2, "seq": 2, "sender": "c"})
        assert follower._playback.calls == [("play", True, False), ("segment", 2, None)]
        assert follower.applied == 2

    def test_stale_sequence_dropped(self, follower):
        follower.handle({"type": "segment-change", "segmentIndex": 2, "seq": 5, "sender": "c"})
        assert not follower.handle({"type": "segment-change", "segmentIndex": 1, "seq": 4, "sender": "c"})
        assert follower._playback.calls == [("segment", 2, None)]
        assert follower.dropped == 1

    def test_sequence_tracked_per_type(self, follower):
        follower.handle({"type": "segment-change", "segmentIndex": 2, "seq": 5, "sender": "c"})
        assert follower.handle({"type": "play-state", "isPlaying": False, "seq": 3, "sender": "c"})

    def test_sequence_tracked_per_sender(self, follower):
        follower.handle({"type": "play-state", "isPlaying": True, "seq": 9, "sender": "c1"})
        assert follower.handle({"type": "play-state", "isPlaying": False, "seq": 1, "sender": "c2"})

    def test_stop_supersedes_older_segment_change(self, follower):
        assert follower.handle({"type": "play-state", "isPlaying": False, "stopped": True,
                                "seq": 5, "sender": "c"})
        assert not follower.handle({"type": "segment-change", "segmentIndex": 2, "seq": 4, "sender": "c"})
        assert follower.handle({"type": "segment-change", "segmentIndex": 1, "seq": 6, "sender": "c"})
        assert follower._playback.calls == [("play", False, True), ("segment", 1, None)]

    def test_stop_only_supersedes_its_own_sender(self, follower):
        follower.handle({"type": "play-state", "isPlaying": False, "stopped": True, "seq": 5, "sender": "c1"})
        assert follower.handle({"type": "segment-change", "segmentIndex": 2, "seq": 1, "sender": "c2"})

    def test_newer_protocol_version_dropped(self, follower):
        raw = {"type": "play-state", "isPlaying": True, "seq": 1, "version": SYNC_PROTOCOL_VERSION + 1}
        assert not follower.handle(raw)
        assert follower._playback.calls == []

    def test_malformed_dropped(self, follower):
        assert not follower.handle("{garbage")
        assert follower.dropped == 1

    def test_invalid_attached_segment_ignored(self, follower):
        follower.handle({
            "type": "segment-change", "segmentIndex": 0, "seq": 1, "sender": "c",
            "segment": {"durationMs": 10},
        })
        assert follower._playback.calls == [("segment", 0, None)]


class TestMirroring:
    """Controller and viewer connected through a LocalSyncHub."""

    def test_viewer_converges_on_controller(self, scheduler):
        hub = LocalSyncHub()
        ctl_surface, viewer_surface = HeadlessSurface(), HeadlessSurface()
        publisher = SyncPublisher(hub, "map-1", sender="ctl")
        controller = PlaybackController(
            three_segment_story(), ctl_surface, scheduler,
            publisher=publisher, role=Role.CONTROLLER,
        )
        viewer = PlaybackController(three_segment_story(), viewer_surface, scheduler, role=Role.VIEWER)
        follower = ViewerFollower(viewer, hub, "map-1", viewer_id="v1")
        follower.attach()

        controller.start()
        assert viewer.index == 0
        assert viewer.is_playing

        controller.go_to(2)
        assert viewer.index == 2
        assert viewer.current_segment.segment_id == "s2"

        controller.pause()
        assert viewer.state.status is PlaybackStatus.PAUSED

        controller.stop()
        assert viewer.state.status is PlaybackStatus.STOPPED
        assert viewer.index == 0
        assert viewer_surface.drawables == []

    def test_viewer_stays_stopped_when_delivery_is_reversed(self, scheduler):
        hub = LocalSyncHub()
        captured = []
        hub.subscribe(channel_name("map-1"), captured.append, "tap")
        publisher = SyncPublisher(hub, "map-1", sender="ctl")
        controller = PlaybackController(
            three_segment_story(), HeadlessSurface(), scheduler,
            publisher=publisher, role=Role.CONTROLLER,
        )
        viewer_surface = HeadlessSurface()
        viewer = PlaybackController(three_segment_story(), viewer_surface, scheduler, role=Role.VIEWER)
        follower = ViewerFollower(viewer, hub, "map-1", viewer_id="v1")

        controller.start()
        controller.go_to(2)
        controller.stop()
        for raw in reversed(captured):
            follower.handle(raw)

        assert viewer.index == controller.index == 0
        assert viewer.state.status is PlaybackStatus.STOPPED
        assert viewer_surface.drawables == []

    def test_detached_follower_stops_listening(self, scheduler):
        hub = LocalSyncHub()
        playback = FakePlayback()
        follower = ViewerFollower(playback, hub, "map-1")
        follower.attach()
        follower.detach()
        SyncPublisher(hub, "map-1").publish_play_state(True)
        assert playback.calls == []
