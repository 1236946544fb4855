"""Main entrypoint and application factory for the Finance Dashboard API.

This module initializes the FastAPI application, configures logging, creates the shared HTTP
client, token provider, aggregation API client and job poll registry in the lifespan, maps
service errors to JSON responses, and exposes the Scalar API reference endpoint. It also
includes the main entrypoint for running the app with Uvicorn.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from scalar_fastapi import get_scalar_api_reference

from finance_dashboard.api.routes import router
from finance_dashboard.core.errors import FinanceDashboardError
from finance_dashboard.core.settings import get_settings
from finance_dashboard.core.utils import LOGGER_NAMESPACE, get_logger
from finance_dashboard.services.basiq_client import BasiqClient
from finance_dashboard.services.token_provider import TokenProvider
from finance_dashboard.workers.job_poller import PollRegistry


# --- Logging Setup ---
def setup_logging() -> None:
    """Configure logging to file and console, and ensure the log directory exists."""
    log_file = Path(get_settings().log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    logger = get_logger(LOGGER_NAMESPACE)
    logger.setLevel(logging.INFO)
    # Add file handler for persistent logs (not colorized)
    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        logger.addHandler(file_handler)
    logger.propagate = False


setup_logging()
logger = get_logger(f"{LOGGER_NAMESPACE}.main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Create the shared services on startup; cancel polls and close the HTTP client on shutdown."""
    settings = get_settings()
    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    token_provider = TokenProvider(settings, http_client)
    basiq_client = BasiqClient(settings, http_client, token_provider)
    poll_registry = PollRegistry(
        basiq_client.get_job,
        interval=settings.poll_interval_seconds,
        max_attempts=settings.poll_max_attempts,
        max_finished=settings.poll_max_finished,
    )
    app.state.token_provider = token_provider
    app.state.basiq_client = basiq_client
    app.state.poll_registry = poll_registry
    if not settings.basiq_api_key:
        logger.warning("BASIQ_API_KEY is not set; calls to the aggregation API will fail")
    logger.info(f"Finance Dashboard API started against {settings.basiq_base_url}")
    try:
        yield
    finally:
        await poll_registry.shutdown()
        await http_client.aclose()
        logger.info("Finance Dashboard API stopped")


app = FastAPI(
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    title="Finance Dashboard API",
    description="""
    The Finance Dashboard API onboards a user, links their bank accounts through the bank data
    aggregation API, follows the resulting data job, and serves accounts, transactions and the
    aggregated figures the dashboard renders.

    **Endpoints:**
    - `POST /users`: Create a user by email and issue their client token.
    - `POST /consent`: Build the consent URL for linking a bank.
    - `POST /jobs/{job_id}/poll`: Start following a bank-data job in the background.
    - `GET /jobs/{job_id}/poll`: Poll snapshot plus the status to display.
    - `GET /users/{user_id}/dashboard`: Net worth, trends, categories, monthly series, budgets, report.
    - `GET /health`: Health check endpoint.
    - `GET /scalar`: Interactive Scalar OpenAPI documentation.
    """,
    version="1.0.0",
)
app.include_router(router)


@app.exception_handler(FinanceDashboardError)
async def finance_dashboard_error_handler(request: Request, exc: FinanceDashboardError) -> JSONResponse:
    """Render service errors as JSON with their status code and user-facing message."""
    logger.error(f"{request.method} {request.url.path} failed with {type(exc).__name__}: {exc.message}")
    return JSONResponse({"detail": exc.message, "error": type(exc).__name__}, status_code=exc.status_code)


@app.get("/scalar", include_in_schema=False)
async def scalar_docs() -> HTMLResponse:
    """Return Scalar API reference."""
    return get_scalar_api_reference(openapi_url=app.openapi_url, title=app.title)


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("main:app", host=settings.server_host, port=settings.server_port, reload=True)
