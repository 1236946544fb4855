"""API package: provides FastAPI dependencies and route definitions for the application."""

from .dependencies import get_app_settings, get_basiq_client, get_poll_registry, get_token_provider  # noqa: F401
from .routes import router  # noqa: F401
