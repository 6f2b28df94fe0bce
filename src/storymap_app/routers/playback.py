"""Playback control API — open a session, start/stop/seek, inspect state."""

from __future__ import annotations

from typing import Callable

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from storymap.playback import PlaybackStateError
from storymap_app.sessions import PlaybackSession, SessionRegistry

router = APIRouter(prefix="/api/storymaps", tags=["storymaps"])


class StartRequest(BaseModel):
    from_index: int | None = None


class GotoRequest(BaseModel):
    index: int


def _get_registry(request: Request) -> SessionRegistry:
    registry = getattr(request.app.state, "sessions", None)
    if registry is None:
        raise HTTPException(503, "Playback sessions not available")
    return registry


def _get_session(request: Request, map_id: str) -> PlaybackSession:
    session = _get_registry(request).get(map_id)
    if session is None:
        raise HTTPException(404, f"No playback session for map {map_id}")
    return session


def _control(session: PlaybackSession, action: Callable[[], None]) -> dict:
    """Run a playback control, mapping engine errors to HTTP statuses."""
    try:
        action()
    except PlaybackStateError as e:
        raise HTTPException(409, str(e))
    except IndexError as e:
        raise HTTPException(404, str(e))
    return session.controller.snapshot()


@router.post("/{map_id}/session")
async def open_session(map_id: str, request: Request):
    """Load the story from the data source and create (or replace) the session."""
    session = await _get_registry(request).open(map_id)
    return session.describe()


@router.delete("/{map_id}/session")
async def close_session(map_id: str, request: Request):
    if not _get_registry(request).close(map_id):
        raise HTTPException(404, f"No playback session for map {map_id}")
    return {"status": "closed", "map_id": map_id}


@router.get("/{map_id}/state")
async def get_state(map_id: str, request: Request):
    """Playback state plus what the session's map surface currently shows."""
    session = _get_session(request, map_id)
    state = session.controller.snapshot()
    state["surface"] = session.surface.snapshot()
    return state


@router.post("/{map_id}/start")
async def start(map_id: str, request: Request, body: StartRequest | None = None):
    session = _get_session(request, map_id)
    from_index = body.from_index if body is not None else None
    return _control(session, lambda: session.controller.start(from_index))


@router.post("/{map_id}/stop")
async def stop(map_id: str, request: Request):
    session = _get_session(request, map_id)
    return _control(session, session.controller.stop)


@router.post("/{map_id}/pause")
async def pause(map_id: str, request: Request):
    session = _get_session(request, map_id)
    return _control(session, session.controller.pause)


@router.post("/{map_id}/resume")
async def resume(map_id: str, request: Request):
    session = _get_session(request, map_id)
    return _control(session, session.controller.resume)


@router.post("/{map_id}/goto")
async def goto(map_id: str, body: GotoRequest, request: Request):
    session = _get_session(request, map_id)
    return _control(session, lambda: session.controller.go_to(body.index))


@router.post("/{map_id}/continue")
async def continue_after_user_action(map_id: str, request: Request):
    """Release a requireUserAction gate."""
    session = _get_session(request, map_id)
    return _control(session, session.controller.continue_after_user_action)


@router.post("/{map_id}/routes/{segment_id}")
async def play_routes_only(map_id: str, segment_id: str, request: Request):
    """Replay one segment's routes without re-rendering the segment."""
    session = _get_session(request, map_id)
    return _control(session, lambda: session.controller.play_route_animation_only(segment_id))


@router.post("/{map_id}/refresh")
async def refresh(map_id: str, request: Request):
    """Reload segment data mid-session; the active segment updates in place."""
    session = await _get_registry(request).refresh(map_id)
    if session is None:
        raise HTTPException(404, f"No playback session for map {map_id}")
    return session.describe()
