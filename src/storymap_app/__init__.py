"""STORYMAP service — REST control surface and WebSocket sync relay."""
