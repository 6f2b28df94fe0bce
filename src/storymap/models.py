"""Validated story-map schema.

Every payload coming from the segment data source passes through these
models exactly once.  Defaults are applied here; JSON-in-a-string fields
(geometry, camera state, layer data) are decoded here; malformed items are
rejected here.  Rendering code downstream trusts the shapes it receives.

Wire names are camelCase (``segmentId``, ``durationMs``); Python attributes
are snake_case.  Both are accepted on input.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from loguru import logger
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from storymap.geometry import GeometryError, line_coordinates, parse_geometry, point_coordinates

DEFAULT_SEGMENT_DURATION_MS = 5000.0


class SegmentValidationError(ValueError):
    """Raised when a segment payload cannot be accepted."""


class _Schema(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class TransitionStyle(str, Enum):
    """How layers cross over between segments."""

    JUMP = "jump"
    EASE = "ease"
    LINEAR = "linear"

    @classmethod
    def _missing_(cls, value: object) -> TransitionStyle:
        if isinstance(value, str):
            for member in cls:
                if member.value == value.lower():
                    return member
        return cls.LINEAR


class CameraStrategy(str, Enum):
    """How the viewport travels to a new pose."""

    INSTANT = "jump"
    LINEAR = "linear"
    EASE = "ease"
    FLY = "fly"

    @classmethod
    def _missing_(cls, value: object) -> CameraStrategy:
        if isinstance(value, str):
            lowered = value.lower()
            if lowered == "instant":
                return cls.INSTANT
            for member in cls:
                if member.value == lowered:
                    return member
        return cls.FLY


def _decode_json(value: Any) -> Any:
    """Decode a JSON string; pass other values through; blank strings become None."""
    if isinstance(value, str):
        if not value.strip():
            return None
        return json.loads(value)
    return value


# ---------------------------------------------------------------------------
# Camera
# ---------------------------------------------------------------------------

class CameraPose(_Schema):
    """Viewport center (lng, lat) plus zoom level."""

    center: tuple[float, float]
    zoom: float = 10.0
    bearing: float | None = None
    pitch: float | None = None

    @model_validator(mode="before")
    @classmethod
    def _decode(cls, data: Any) -> Any:
        return _decode_json(data)

    @field_validator("zoom", mode="before")
    @classmethod
    def _default_zoom(cls, value: Any) -> Any:
        return value or 10.0


def _lenient_pose(value: Any, owner: str) -> CameraPose | None:
    """Parse an optional camera pose; an unusable pose counts as absent."""
    if value is None or isinstance(value, CameraPose):
        return value
    try:
        return CameraPose.model_validate(value)
    except (ValidationError, ValueError) as e:
        logger.warning(f"{owner}: ignoring invalid camera state ({e.__class__.__name__})")
        return None


# ---------------------------------------------------------------------------
# Zones
# ---------------------------------------------------------------------------

class Zone(_Schema):
    """Master zone record: a named polygon/multipolygon area."""

    zone_id: str
    name: str = ""
    zone_type: str | None = None
    geometry: dict | None = None
    centroid: tuple[float, float] | None = None

    @field_validator("geometry", mode="before")
    @classmethod
    def _parse_geometry(cls, value: Any) -> dict | None:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return parse_geometry(value)

    @field_validator("centroid", mode="before")
    @classmethod
    def _parse_centroid(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        if isinstance(value, (list, tuple)):
            return value
        return point_coordinates(parse_geometry(value))


class SegmentZone(_Schema):
    """A zone placed in a segment, with its per-segment styling flags."""

    segment_zone_id: str = ""
    zone_id: str = ""
    zone: Zone | None = None
    display_order: int = 0
    is_visible: bool = True
    z_index: int = 0
    highlight_boundary: bool = False
    boundary_color: str = "#FFD700"
    boundary_width: float = 2.0
    fill_zone: bool = False
    fill_color: str = "#FFD700"
    fill_opacity: float = 0.3
    show_label: bool = False
    label_override: str | None = None

    @field_validator("boundary_color", "fill_color", mode="before")
    @classmethod
    def _default_color(cls, value: Any) -> Any:
        return value or "#FFD700"

    @field_validator("boundary_width", mode="before")
    @classmethod
    def _default_width(cls, value: Any) -> Any:
        return value or 2.0

    @field_validator("fill_opacity", mode="before")
    @classmethod
    def _default_fill_opacity(cls, value: Any) -> Any:
        return 0.3 if value is None else value


# ---------------------------------------------------------------------------
# Locations
# ---------------------------------------------------------------------------

class Location(_Schema):
    """Point of interest shown as an icon marker."""

    location_id: str = Field(validation_alias=AliasChoices("locationId", "poiId", "location_id"))
    title: str = ""
    subtitle: str | None = None
    description: str | None = None
    marker_geometry: dict | None = None
    display_order: int = 0
    is_visible: bool = True
    z_index: int = 100
    icon_type: str | None = None
    icon_url: str | None = None
    icon_color: str = "#FF0000"
    icon_size: float = 32.0
    show_tooltip: bool = True
    tooltip_content: str | None = None
    open_popup_on_click: bool = False
    popup_content: str | None = None
    media_resources: str | None = None
    play_audio_on_click: bool = False
    audio_url: str | None = None
    external_url: str | None = None

    @field_validator("marker_geometry", mode="before")
    @classmethod
    def _parse_geometry(cls, value: Any) -> dict | None:
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return parse_geometry(value)

    @field_validator("z_index", mode="before")
    @classmethod
    def _default_z(cls, value: Any) -> Any:
        return value or 100

    @field_validator("icon_size", mode="before")
    @classmethod
    def _default_size(cls, value: Any) -> Any:
        return value or 32.0

    @field_validator("icon_color", mode="before")
    @classmethod
    def _default_color(cls, value: Any) -> Any:
        return value or "#FF0000"


# ---------------------------------------------------------------------------
# Data layers
# ---------------------------------------------------------------------------

class LayerPayload(_Schema):
    """Inline layer body delivered with a segment layer reference."""

    id: str = ""
    layer_name: str = ""
    layer_data: dict | None = None
    layer_style: dict | None = None

    @field_validator("layer_data", "layer_style", mode="before")
    @classmethod
    def _decode(cls, value: Any) -> Any:
        return _decode_json(value)


class SegmentLayer(_Schema):
    """Reference from a segment to a per-map data layer."""

    segment_layer_id: str = ""
    layer_id: str
    display_order: int = 0
    is_visible: bool = True
    opacity: float = 1.0
    z_index: int = 0
    style_override: dict | None = None
    layer: LayerPayload | None = None

    @field_validator("style_override", mode="before")
    @classmethod
    def _decode(cls, value: Any) -> Any:
        return _decode_json(value)


# ---------------------------------------------------------------------------
# Route animations
# ---------------------------------------------------------------------------

class RouteAnimation(_Schema):
    """A polyline that draws itself in during a segment."""

    route_animation_id: str
    segment_id: str = ""
    map_id: str = ""
    route_path: list[tuple[float, float]]
    from_name: str | None = None
    to_name: str | None = None
    to_location_id: str | None = None
    icon_type: str = "car"
    icon_url: str | None = None
    route_color: str = "#666666"
    visited_color: str = "#3b82f6"
    route_width: float = 4.0
    duration_ms: float = Field(default=5000.0, gt=0)
    start_delay_ms: float = Field(default=0.0, ge=0)
    easing: str = "linear"
    auto_play: bool = True
    is_visible: bool = True
    z_index: int = 0
    display_order: int = 0
    start_time_ms: float | None = Field(default=None, ge=0)
    end_time_ms: float | None = Field(default=None, ge=0)
    camera_state_before: CameraPose | None = None
    camera_state_after: CameraPose | None = None
    show_location_info_on_arrival: bool = False
    location_info_display_duration_ms: float | None = None
    follow_camera: bool = False
    created_at: datetime | None = None

    @field_validator("route_path", mode="before")
    @classmethod
    def _parse_path(cls, value: Any) -> Any:
        return line_coordinates(value)

    @field_validator("start_delay_ms", mode="before")
    @classmethod
    def _default_delay(cls, value: Any) -> Any:
        return value or 0.0

    @field_validator("camera_state_before", "camera_state_after", mode="before")
    @classmethod
    def _parse_pose(cls, value: Any, info) -> CameraPose | None:
        return _lenient_pose(value, f"route {info.field_name}")


# ---------------------------------------------------------------------------
# Segments
# ---------------------------------------------------------------------------

_ITEM_MODELS: dict[str, type[BaseModel]] = {}


class Segment(_Schema):
    """One step of the tour: geometry, camera pose and timing."""

    segment_id: str = Field(min_length=1)
    map_id: str = ""
    name: str = ""
    description: str | None = None
    display_order: int = 0
    duration_ms: float = DEFAULT_SEGMENT_DURATION_MS
    camera_state: CameraPose | None = None
    zones: list[SegmentZone] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)
    layers: list[SegmentLayer] = Field(default_factory=list)
    route_animations: list[RouteAnimation] = Field(default_factory=list)

    @field_validator("duration_ms", mode="before")
    @classmethod
    def _default_duration(cls, value: Any) -> Any:
        return value or DEFAULT_SEGMENT_DURATION_MS

    @field_validator("duration_ms")
    @classmethod
    def _positive_duration(cls, value: float) -> float:
        if value < 0:
            raise ValueError("durationMs must not be negative")
        return value

    @field_validator("camera_state", mode="before")
    @classmethod
    def _parse_pose(cls, value: Any) -> CameraPose | None:
        return _lenient_pose(value, "segment cameraState")

    @field_validator("zones", "locations", "layers", "route_animations", mode="before")
    @classmethod
    def _drop_invalid_items(cls, value: Any, info) -> list:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError(f"{info.field_name} must be a list")
        model = _ITEM_MODELS[info.field_name]
        kept = []
        for idx, raw in enumerate(value):
            try:
                kept.append(model.model_validate(raw))
            except (ValidationError, GeometryError) as e:
                logger.warning(f"Dropping invalid {info.field_name}[{idx}]: {e}")
        return kept

    @property
    def content_hash(self) -> str:
        """Stable digest of the segment content; changes iff the content changes."""
        payload = json.dumps(
            self.model_dump(mode="json", by_alias=True),
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha1(payload.encode("utf-8")).hexdigest()


_ITEM_MODELS.update(
    zones=SegmentZone,
    locations=Location,
    layers=SegmentLayer,
    route_animations=RouteAnimation,
)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

class Transition(_Schema):
    """Authored rules for moving from one segment to the next."""

    timeline_transition_id: str = ""
    from_segment_id: str
    to_segment_id: str
    transition_name: str | None = None
    transition_type: TransitionStyle = TransitionStyle.EASE
    duration_ms: float | None = None
    animate_camera: bool = True
    camera_animation_type: CameraStrategy = CameraStrategy.FLY
    camera_animation_duration_ms: float | None = None
    require_user_action: bool = False
    trigger_button_text: str | None = None

    @field_validator("transition_type", mode="before")
    @classmethod
    def _normalize_style(cls, value: Any) -> TransitionStyle:
        return TransitionStyle.EASE if value is None else TransitionStyle(value)

    @field_validator("camera_animation_type", mode="before")
    @classmethod
    def _normalize_camera(cls, value: Any) -> CameraStrategy:
        return CameraStrategy.FLY if value is None else CameraStrategy(value)

    @property
    def camera_strategy(self) -> CameraStrategy:
        if not self.animate_camera:
            return CameraStrategy.INSTANT
        return self.camera_animation_type


# ---------------------------------------------------------------------------
# Story (segments + transitions for one map)
# ---------------------------------------------------------------------------

class Story(_Schema):
    """Ordered segments and the transition table for a single map."""

    map_id: str
    segments: list[Segment] = Field(default_factory=list)
    transitions: list[Transition] = Field(default_factory=list)

    _transition_index: dict[tuple[str, str], Transition] = PrivateAttr(default_factory=dict)

    @field_validator("segments")
    @classmethod
    def _stable_order(cls, value: list[Segment]) -> list[Segment]:
        return sorted(value, key=lambda s: s.display_order)

    def model_post_init(self, __context: Any) -> None:
        self._transition_index = {
            (t.from_segment_id, t.to_segment_id): t for t in self.transitions
        }

    def __len__(self) -> int:
        return len(self.segments)

    def find_transition(self, from_id: str | None, to_id: str | None) -> Transition | None:
        if not from_id or not to_id:
            return None
        return self._transition_index.get((from_id, to_id))

    def index_of(self, segment_id: str) -> int | None:
        for idx, segment in enumerate(self.segments):
            if segment.segment_id == segment_id:
                return idx
        return None

    def get_segment(self, segment_id: str) -> Segment | None:
        idx = self.index_of(segment_id)
        return None if idx is None else self.segments[idx]

    def with_segment(self, segment: Segment) -> Story:
        """Copy with ``segment`` replacing the segment of the same id (if present)."""
        segments = [
            segment if s.segment_id == segment.segment_id else s for s in self.segments
        ]
        return Story(map_id=self.map_id, segments=segments, transitions=self.transitions)


# ---------------------------------------------------------------------------
# Load boundary
# ---------------------------------------------------------------------------

def load_segment(raw: Any) -> Segment:
    """Validate one segment payload.

    Raises:
        SegmentValidationError: If the payload is not an acceptable segment.
    """
    if isinstance(raw, Segment):
        return raw
    try:
        return Segment.model_validate(raw)
    except ValidationError as e:
        raise SegmentValidationError(f"Invalid segment payload: {e}") from e


def load_segments(raws: Iterable[Any], strict: bool = False) -> list[Segment]:
    """Validate a list of segment payloads.

    In lenient mode malformed segments are dropped with a warning; in strict
    mode the first malformed segment raises SegmentValidationError.
    """
    segments: list[Segment] = []
    for idx, raw in enumerate(raws or []):
        try:
            segments.append(load_segment(raw))
        except SegmentValidationError as e:
            if strict:
                raise
            logger.warning(f"Dropping segment #{idx}: {e}")
    return segments


def load_transitions(raws: Iterable[Any]) -> list[Transition]:
    """Validate transition payloads, dropping malformed entries."""
    transitions: list[Transition] = []
    for idx, raw in enumerate(raws or []):
        try:
            transitions.append(Transition.model_validate(raw))
        except ValidationError as e:
            logger.warning(f"Dropping transition #{idx}: {e.error_count()} error(s)")
    return transitions


def load_route_animations(raws: Iterable[Any]) -> list[RouteAnimation]:
    """Validate route animation payloads, dropping malformed entries."""
    routes: list[RouteAnimation] = []
    for idx, raw in enumerate(raws or []):
        try:
            routes.append(RouteAnimation.model_validate(raw))
        except (ValidationError, GeometryError) as e:
            logger.warning(f"Dropping route animation #{idx}: {e}")
    return routes
