"""API routers."""

from storymap_app.routers.playback import router as playback_router
from storymap_app.routers.sync import router as sync_router

__all__ = ["playback_router", "sync_router"]
