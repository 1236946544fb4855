"""FastAPI dependencies for DI (settings, token provider, aggregation API client, poll registry).

The shared services are created once in the application lifespan and stored on app.state;
these helpers hand them to the endpoints and give tests a single seam to override.
"""

from fastapi import Request

from finance_dashboard.core.settings import Settings, get_settings
from finance_dashboard.services.basiq_client import BasiqClient
from finance_dashboard.services.token_provider import TokenProvider
from finance_dashboard.workers.job_poller import PollRegistry


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def get_token_provider(request: Request) -> TokenProvider:
    """Provide the process-wide TokenProvider."""
    return request.app.state.token_provider


def get_basiq_client(request: Request) -> BasiqClient:
    """Provide the shared aggregation API client."""
    return request.app.state.basiq_client


def get_poll_registry(request: Request) -> PollRegistry:
    """Provide the registry of background job polls."""
    return request.app.state.poll_registry
