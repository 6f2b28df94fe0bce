"""Configuration management using Pydantic settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "STORYMAP"
    debug: bool = False

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Segment data source (REST backend)
    segment_api_url: str = "http://localhost:5000/api"
    segment_api_timeout: float = 10.0  # seconds

    # Playback timing (milliseconds)
    advance_retry_delay_ms: float = 250.0   # surface not ready when an advance is due
    default_fade_duration_ms: float = 800.0
    quick_update_duration_ms: float = 200.0  # same-segment data refresh
    default_camera_duration_ms: float = 1500.0
    extend_duration_for_routes: bool = True

    # Camera
    fly_zoom_threshold: float = 1.0
    fly_intermediate_zoom_offset: float = 2.0
    fit_padding_px: float = 80.0
    fit_max_zoom: float = 15.0

    # Animation frames
    route_frame_interval_ms: float = 50.0
    fade_frame_interval_ms: float = 16.0
    route_gap_ms: float = 500.0  # pause between sequential routes

    # Headless surface used by server-side sessions
    viewport_width_px: int = 1280
    viewport_height_px: int = 800


settings = Settings()
