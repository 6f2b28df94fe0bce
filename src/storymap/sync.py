"""Sync channel — mirrors a controller's playback onto viewers.

Messages travel on a channel named ``storymap-<mapId>``.  Delivery is
at-most-once and unordered, with no acknowledgement and no replay for
late subscribers.  Every message carries an envelope: ``version`` (the
protocol version), ``seq`` (monotonic per sender) and ``sender``.  A
viewer applies a message only if its ``seq`` is newer than the last one
applied for the same sender and message type, so it converges on the most
recent state of each type whatever the arrival order.  A stop also
supersedes every older segment change from the same sender, so a stale
``segment-change`` cannot revive a stopped viewer.

Wire format (camelCase JSON)::

    {"type": "segment-change", "segmentIndex": 2, "segment": {...},
     "timestamp": 1718000000000, "version": 1, "seq": 7, "sender": "..."}
    {"type": "play-state", "isPlaying": false, "stopped": true,
     "version": 1, "seq": 8, "sender": "..."}
"""

from __future__ import annotations

import itertools
import json
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Annotated, Any, Callable, Literal, Protocol, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from storymap.clock import Scheduler
from storymap.models import Segment, SegmentValidationError, load_segment

SYNC_PROTOCOL_VERSION = 1

Handler = Callable[[dict], None]


def channel_name(map_id: str) -> str:
    return f"storymap-{map_id}"


class SyncMessageError(ValueError):
    """Raised for a payload that is not a valid sync message."""


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class _Envelope(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    version: int = SYNC_PROTOCOL_VERSION
    seq: int = 0
    sender: str = ""


class SegmentChangeMessage(_Envelope):
    type: Literal["segment-change"] = "segment-change"
    segment_index: int = Field(ge=0)
    segment: dict | None = None
    timestamp: float = 0.0


class PlayStateMessage(_Envelope):
    type: Literal["play-state"] = "play-state"
    is_playing: bool
    stopped: bool = False


SyncMessage = Annotated[
    Union[SegmentChangeMessage, PlayStateMessage],
    Field(discriminator="type"),
]
_MESSAGE_ADAPTER: TypeAdapter = TypeAdapter(SyncMessage)


def parse_message(raw: str | bytes | dict) -> SegmentChangeMessage | PlayStateMessage:
    """Decode and validate a wire message.

    Raises:
        SyncMessageError: On invalid JSON, an unknown type or bad fields.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise SyncMessageError(f"Sync message is not valid JSON: {e}") from e
    try:
        return _MESSAGE_ADAPTER.validate_python(raw)
    except ValidationError as e:
        raise SyncMessageError(f"Invalid sync message: {e.error_count()} error(s)") from e


def encode_message(message: SegmentChangeMessage | PlayStateMessage) -> dict:
    return message.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

class SyncChannel(Protocol):
    """Named publish/subscribe transport."""

    def publish(self, name: str, message: dict, sender: str | None = None) -> None: ...

    def subscribe(self, name: str, handler: Handler,
                  subscriber: str | None = None) -> Subscription: ...


@dataclass(eq=False)
class Subscription:
    name: str
    handler: Handler
    subscriber: str | None
    _hub: LocalSyncHub | None = None

    def close(self) -> None:
        if self._hub is not None:
            self._hub.unsubscribe(self)
            self._hub = None


class LocalSyncHub:
    """In-process channel hub.

    A message is handed to every subscriber of its channel except the one
    registered under the sending id.  With a scheduler, delivery happens
    on a later tick instead of inside ``publish``.  A failing handler is
    logged and does not affect other subscribers.
    """

    def __init__(self, scheduler: Scheduler | None = None, delay_ms: float = 0.0) -> None:
        self._lock = threading.Lock()
        self._channels: dict[str, list[Subscription]] = {}
        self._scheduler = scheduler
        self._delay_ms = delay_ms

    def subscribe(self, name: str, handler: Handler,
                  subscriber: str | None = None) -> Subscription:
        sub = Subscription(name, handler, subscriber, self)
        with self._lock:
            self._channels.setdefault(name, []).append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._channels.get(sub.name, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._channels.pop(sub.name, None)

    def subscriber_count(self, name: str) -> int:
        with self._lock:
            return len(self._channels.get(name, []))

    def publish(self, name: str, message: dict, sender: str | None = None) -> None:
        with self._lock:
            targets = [
                s for s in self._channels.get(name, [])
                if sender is None or s.subscriber != sender
            ]
        for sub in targets:
            if self._scheduler is None:
                self._deliver(sub, message)
            else:
                self._scheduler.call_later(
                    self._delay_ms, lambda s=sub: self._deliver(s, message)
                )

    def _deliver(self, sub: Subscription, message: dict) -> None:
        if sub._hub is None:
            return
        try:
            sub.handler(message)
        except Exception as e:
            logger.error(f"Sync handler on {sub.name} failed: {e}")


# ---------------------------------------------------------------------------
# Controller and viewer ends
# ---------------------------------------------------------------------------

class SyncPublisher:
    """Controller end: turns playback decisions into channel messages.

    If the channel fails the publisher logs once and goes quiet; the
    controller keeps playing standalone.
    """

    def __init__(self, channel: SyncChannel, map_id: str, sender: str | None = None) -> None:
        self._channel = channel
        self.map_id = map_id
        self.name = channel_name(map_id)
        self.sender = sender or uuid.uuid4().hex[:12]
        self._seq = itertools.count(1)
        self.disabled = False

    def publish_segment_change(self, index: int, segment: Segment) -> None:
        self._send(SegmentChangeMessage(
            seq=next(self._seq),
            sender=self.sender,
            segment_index=index,
            segment=segment.model_dump(mode="json", by_alias=True),
            timestamp=time.time() * 1000.0,
        ))

    def publish_play_state(self, is_playing: bool, stopped: bool = False) -> None:
        self._send(PlayStateMessage(
            seq=next(self._seq),
            sender=self.sender,
            is_playing=is_playing,
            stopped=stopped,
        ))

    def _send(self, message: SegmentChangeMessage | PlayStateMessage) -> None:
        if self.disabled:
            return
        try:
            self._channel.publish(self.name, encode_message(message), sender=self.sender)
        except Exception as e:
            logger.warning(f"Sync channel {self.name} unavailable, continuing standalone: {e}")
            self.disabled = True


class RemotePlayback(Protocol):
    def apply_segment_change(self, index: int, segment: Segment | None = None) -> None: ...

    def apply_play_state(self, is_playing: bool, stopped: bool = False) -> None: ...


class ViewerFollower:
    """Viewer end: applies channel messages to a viewer playback controller."""

    def __init__(self, playback: RemotePlayback, channel: SyncChannel, map_id: str,
                 viewer_id: str | None = None) -> None:
        self._playback = playback
        self._channel = channel
        self.name = channel_name(map_id)
        self.viewer_id = viewer_id or uuid.uuid4().hex[:12]
        self._last_seq: dict[tuple[str, str], int] = {}
        # sender -> seq of the last applied stopping play-state
        self._stopped_seq: dict[str, int] = {}
        self._subscription: Subscription | None = None
        self.applied = 0
        self.dropped = 0

    def attach(self) -> None:
        if self._subscription is None:
            self._subscription = self._channel.subscribe(self.name, self.handle, self.viewer_id)

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def handle(self, raw: Any) -> bool:
        """Apply one incoming message. Returns True if it changed anything."""
        try:
            message = parse_message(raw)
        except SyncMessageError as e:
            logger.warning(f"{self.name}: dropping malformed message: {e}")
            self.dropped += 1
            return False

        if message.version > SYNC_PROTOCOL_VERSION:
            logger.warning(
                f"{self.name}: unsupported protocol version {message.version} "
                f"(supported: {SYNC_PROTOCOL_VERSION}), message dropped"
            )
            self.dropped += 1
            return False

        key = (message.sender, message.type)
        last = self._last_seq.get(key)
        if last is not None and message.seq <= last:
            logger.debug(f"{self.name}: stale {message.type} seq={message.seq} (last {last})")
            self.dropped += 1
            return False
        if isinstance(message, SegmentChangeMessage) \
                and message.seq < self._stopped_seq.get(message.sender, 0):
            logger.debug(f"{self.name}: segment-change seq={message.seq} predates a stop")
            self.dropped += 1
            return False
        self._last_seq[key] = message.seq

        if isinstance(message, SegmentChangeMessage):
            segment = None
            if message.segment is not None:
                try:
                    segment = load_segment(message.segment)
                except SegmentValidationError as e:
                    logger.warning(f"{self.name}: ignoring attached segment payload: {e}")
            self._playback.apply_segment_change(message.segment_index, segment)
        else:
            if message.stopped:
                self._stopped_seq[message.sender] = message.seq
            self._playback.apply_play_state(message.is_playing, stopped=message.stopped)
        self.applied += 1
        return True
