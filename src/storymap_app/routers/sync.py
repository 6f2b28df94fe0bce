"""WebSocket relay for the story-map sync channel.

Each ``/ws/storymap/{map_id}`` connection joins the channel
``storymap-{map_id}``.  A valid sync message sent by one client is
forwarded to every other client of the channel; messages published by a
server-side controller session are forwarded to all of them.  When a
client connects, the controller session (if any) re-publishes its state
so the newcomer does not wait for the next segment change.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from loguru import logger

from storymap.sync import (
    LocalSyncHub,
    Subscription,
    SyncMessageError,
    channel_name,
    encode_message,
    parse_message,
)

router = APIRouter(prefix="/ws", tags=["websocket"])

RELAY_SUBSCRIBER = "ws-relay"


class ChannelRelay:
    """Manages WebSocket connections grouped by sync channel."""

    def __init__(self, hub: LocalSyncHub | None = None) -> None:
        self.connections: dict[str, set[WebSocket]] = {}
        self._lock = asyncio.Lock()
        self._hub = hub
        self._hub_subscriptions: dict[str, Subscription] = {}
        self._tasks: set[asyncio.Task] = set()

    def count(self, name: str) -> int:
        return len(self.connections.get(name, ()))

    async def connect(self, name: str, websocket: WebSocket) -> None:
        """Accept and register a connection on channel ``name``."""
        await websocket.accept()
        async with self._lock:
            self.connections.setdefault(name, set()).add(websocket)
            if self._hub is not None and name not in self._hub_subscriptions:
                self._hub_subscriptions[name] = self._hub.subscribe(
                    name, self._forwarder(name), RELAY_SUBSCRIBER
                )
        logger.info(f"WebSocket joined {name}. Connections on channel: {self.count(name)}")

    async def disconnect(self, name: str, websocket: WebSocket) -> None:
        async with self._lock:
            members = self.connections.get(name)
            if members is not None:
                members.discard(websocket)
                if not members:
                    del self.connections[name]
                    sub = self._hub_subscriptions.pop(name, None)
                    if sub is not None:
                        sub.close()
        logger.info(f"WebSocket left {name}. Connections on channel: {self.count(name)}")

    async def broadcast(self, name: str, message: dict,
                        exclude: WebSocket | None = None) -> int:
        """Send ``message`` to every client of ``name`` except ``exclude``."""
        members = self.connections.get(name)
        if not members:
            return 0

        message_str = json.dumps(message)
        disconnected = set()
        sent = 0

        async with self._lock:
            for connection in list(members):
                if connection is exclude:
                    continue
                try:
                    await connection.send_text(message_str)
                    sent += 1
                except Exception as e:
                    logger.warning(f"Failed to send to websocket on {name}: {e}")
                    disconnected.add(connection)

            members -= disconnected
        return sent

    async def send_to(self, websocket: WebSocket, message: dict) -> None:
        """Send a message to a specific client."""
        try:
            await websocket.send_text(json.dumps(message))
        except Exception as e:
            logger.warning(f"Failed to send to websocket: {e}")

    def _forwarder(self, name: str):
        def _forward(message: dict) -> None:
            task = asyncio.get_running_loop().create_task(self.broadcast(name, message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return _forward


@router.websocket("/storymap/{map_id}")
async def storymap_channel(websocket: WebSocket, map_id: str):
    """Sync channel endpoint shared by control pages and viewers."""
    relay: ChannelRelay = websocket.app.state.relay
    name = channel_name(map_id)
    await relay.connect(name, websocket)

    sessions = getattr(websocket.app.state, "sessions", None)
    session = sessions.get(map_id) if sessions is not None else None
    if session is not None:
        session.controller.resync()

    try:
        while True:
            data = await websocket.receive_text()
            await handle_client_message(relay, name, websocket, data)
    except WebSocketDisconnect:
        await relay.disconnect(name, websocket)


async def handle_client_message(relay: ChannelRelay, name: str,
                                websocket: WebSocket, data: str) -> None:
    """Validate one client message and fan it out to the rest of the channel."""
    try:
        raw = json.loads(data)
    except json.JSONDecodeError:
        await relay.send_to(websocket, {"type": "error", "message": "Invalid JSON"})
        return

    if isinstance(raw, dict) and raw.get("type") == "ping":
        await relay.send_to(
            websocket,
            {"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()},
        )
        return

    try:
        message = parse_message(raw)
    except SyncMessageError as e:
        logger.warning(f"{name}: rejected client message: {e}")
        await relay.send_to(websocket, {"type": "error", "message": str(e)})
        return

    forwarded = await relay.broadcast(name, encode_message(message), exclude=websocket)
    logger.debug(f"{name}: relayed {message.type} seq={message.seq} to {forwarded} client(s)")
