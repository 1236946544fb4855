"""Pytest configuration and shared fixtures."""

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from finance_dashboard.api.dependencies import (
    get_app_settings,
    get_basiq_client,
    get_poll_registry,
    get_token_provider,
)
from finance_dashboard.core.settings import Settings
from finance_dashboard.services.basiq_client import BasiqClient
from finance_dashboard.services.token_provider import TokenProvider
from finance_dashboard.workers.job_poller import PollRegistry
from main import app
from tests.fakes import FakeAggregationApi, FakeClock, make_settings


@pytest.fixture
def fake_api() -> FakeAggregationApi:
    """A fresh fake aggregation API."""
    return FakeAggregationApi()


@pytest.fixture
def clock() -> FakeClock:
    """A clock frozen at 2025-06-15 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    """Test settings with zero poll intervals."""
    return make_settings()


@pytest.fixture
def api_client(fake_api: FakeAggregationApi, settings: Settings) -> Iterator[TestClient]:
    """A TestClient whose services talk to the fake aggregation API."""
    http = fake_api.client()
    tokens = TokenProvider(settings, http)
    basiq = BasiqClient(settings, http, tokens)
    registry = PollRegistry(
        basiq.get_job,
        interval=settings.poll_interval_seconds,
        max_attempts=settings.poll_max_attempts,
        max_finished=settings.poll_max_finished,
    )
    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_token_provider] = lambda: tokens
    app.dependency_overrides[get_basiq_client] = lambda: basiq
    app.dependency_overrides[get_poll_registry] = lambda: registry
    try:
        with TestClient(app) as client:
            yield client
            client.portal.call(registry.shutdown)
    finally:
        app.dependency_overrides.clear()
