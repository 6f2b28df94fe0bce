"""Unit tests for the /ws/storymap/{map_id} sync relay.

Tests:
  - ping/pong and error replies for bad client input
  - Valid sync messages are forwarded to the other clients of the channel
  - A controller session's broadcasts reach connected clients
  - Late joiners receive the session state on connect
"""
from __future__ import annotations

import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from storymap.playback import PlaybackOptions
from storymap.source import StaticSegmentSource
from storymap.sync import LocalSyncHub, channel_name
from storymap_app.routers.sync import ChannelRelay, router
from storymap_app.sessions import SessionRegistry
from tests.lib.payloads import segment_payload, zone_item

MAP_ID = "map-1"
WS_PATH = f"/ws/storymap/{MAP_ID}"


def _make_app():
    """Create a minimal FastAPI app with the sync relay and a session registry."""
    hub = LocalSyncHub()
    source = StaticSegmentSource(segments={MAP_ID: [
        segment_payload("s0", 60_000, 0, zones=[zone_item("z0", 10.0, 50.0)]),
        segment_payload("s1", 60_000, 1, zones=[zone_item("z1", 11.0, 50.5)]),
    ]})
    app = FastAPI()
    app.include_router(router)
    app.state.relay = ChannelRelay(hub)
    app.state.sessions = SessionRegistry(source, hub, PlaybackOptions())
    return app


@pytest.fixture
def client():
    with TestClient(_make_app()) as c:
        yield c


def _open_session(client):
    return client.portal.call(client.app.state.sessions.open, MAP_ID)


@pytest.mark.unit
class TestClientMessages:

    def test_ping_pong(self, client):
        with client.websocket_connect(WS_PATH) as ws:
            ws.send_json({"type": "ping"})
            reply = ws.receive_json()
            assert reply["type"] == "pong"
            assert "timestamp" in reply

    def test_invalid_json(self, client):
        with client.websocket_connect(WS_PATH) as ws:
            ws.send_text("{nope")
            assert ws.receive_json() == {"type": "error", "message": "Invalid JSON"}

    def test_invalid_sync_message(self, client):
        with client.websocket_connect(WS_PATH) as ws:
            ws.send_json({"type": "segment-change", "segmentIndex": -3})
            reply = ws.receive_json()
            assert reply["type"] == "error"

    def test_message_forwarded_to_other_clients(self, client):
        with client.websocket_connect(WS_PATH) as sender, \
                client.websocket_connect(WS_PATH) as viewer:
            sender.send_json({"type": "play-state", "isPlaying": True, "seq": 4, "sender": "page-a"})
            msg = viewer.receive_json()
            assert msg["type"] == "play-state"
            assert msg["isPlaying"] is True
            assert msg["seq"] == 4
            assert msg["sender"] == "page-a"

            # Sender gets nothing back; its next ping is answered first.
            sender.send_json({"type": "ping"})
            assert sender.receive_json()["type"] == "pong"


@pytest.mark.unit
class TestSessionBroadcast:

    def test_late_joiner_receives_current_state(self, client):
        session = _open_session(client)
        client.portal.call(_start, session)
        with client.websocket_connect(WS_PATH) as ws:
            first = ws.receive_json()
            second = ws.receive_json()
            assert first["type"] == "segment-change"
            assert first["segmentIndex"] == 0
            assert first["segment"]["segmentId"] == "s0"
            assert second["type"] == "play-state"
            assert second["isPlaying"] is True
            assert second["stopped"] is False

    def test_controls_are_relayed(self, client):
        session = _open_session(client)
        with client.websocket_connect(WS_PATH) as ws:
            assert ws.receive_json()["stopped"] is True
            client.portal.call(_go_to, session, 1)
            msg = ws.receive_json()
            assert msg["type"] == "segment-change"
            assert msg["segmentIndex"] == 1

    def test_relay_unsubscribes_after_last_client(self, client):
        hub = client.app.state.relay._hub
        with client.websocket_connect(WS_PATH) as ws:
            ws.send_json({"type": "ping"})
            ws.receive_json()
            assert hub.subscriber_count(channel_name(MAP_ID)) == 1
        client.portal.call(asyncio.sleep, 0.05)
        assert hub.subscriber_count(channel_name(MAP_ID)) == 0


async def _start(session):
    session.controller.start()


async def _go_to(session, index):
    session.controller.go_to(index)
