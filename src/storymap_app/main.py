"""STORYMAP - story-map playback service.

Main FastAPI application.
"""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from storymap import __version__
from storymap.playback import PlaybackOptions
from storymap.source import HttpSegmentSource, SegmentSource
from storymap.sync import LocalSyncHub
from storymap_app.config import Settings, settings
from storymap_app.routers import playback_router, sync_router
from storymap_app.routers.sync import ChannelRelay
from storymap_app.sessions import SessionRegistry


def configure_logging(debug: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if debug else "INFO")


def playback_options(cfg: Settings) -> PlaybackOptions:
    """Engine tunables from application settings."""
    return PlaybackOptions(
        advance_retry_delay_ms=cfg.advance_retry_delay_ms,
        default_fade_duration_ms=cfg.default_fade_duration_ms,
        quick_update_duration_ms=cfg.quick_update_duration_ms,
        default_camera_duration_ms=cfg.default_camera_duration_ms,
        fly_zoom_threshold=cfg.fly_zoom_threshold,
        fly_intermediate_zoom_offset=cfg.fly_intermediate_zoom_offset,
        fit_padding_px=cfg.fit_padding_px,
        fit_max_zoom=cfg.fit_max_zoom,
        route_frame_interval_ms=cfg.route_frame_interval_ms,
        fade_frame_interval_ms=cfg.fade_frame_interval_ms,
        route_gap_ms=cfg.route_gap_ms,
        extend_duration_for_routes=cfg.extend_duration_for_routes,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    configure_logging(settings.debug)
    logger.info("=" * 60)
    logger.info(f"  {settings.app_name} v{__version__} - INITIALIZING")
    logger.info("=" * 60)

    source: SegmentSource | None = getattr(app.state, "segment_source", None)
    owned_source = None
    if source is None:
        owned_source = HttpSegmentSource(settings.segment_api_url, settings.segment_api_timeout)
        source = owned_source
        logger.info(f"Segment data source: {settings.segment_api_url}")

    hub = LocalSyncHub()
    app.state.sync_hub = hub
    app.state.relay = ChannelRelay(hub)
    app.state.sessions = SessionRegistry(
        source,
        hub,
        options=playback_options(settings),
        viewport=(settings.viewport_width_px, settings.viewport_height_px),
    )

    logger.info(f"  {settings.app_name} ONLINE")

    yield

    app.state.sessions.close_all()
    if owned_source is not None:
        await owned_source.aclose()
    logger.info(f"{settings.app_name} shutting down...")


def create_app(source: SegmentSource | None = None) -> FastAPI:
    """Build the application; ``source`` overrides the HTTP data source."""
    app = FastAPI(
        title=settings.app_name,
        description="Story-map playback and live synchronization",
        version=__version__,
        lifespan=lifespan,
    )
    if source is not None:
        app.state.segment_source = source

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(playback_router)
    app.include_router(sync_router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        sessions = getattr(app.state, "sessions", None)
        return {
            "status": "operational",
            "version": __version__,
            "system": settings.app_name,
            "sessions": len(sessions) if sessions is not None else 0,
        }

    return app


app = create_app()


def run() -> None:
    uvicorn.run(
        "storymap_app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
