"""FastAPI endpoints for the Finance Dashboard API.

This module defines the routes the dashboard UI calls: onboarding (user creation, tokens,
consent URLs), job status and background polling, accounts and transactions, insights and
reports, and the aggregated dashboard summary. It wires together the token provider, the
aggregation API client, the job poller and the aggregation views.
"""

import asyncio
import re
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from finance_dashboard.api.dependencies import (
    get_app_settings,
    get_basiq_client,
    get_poll_registry,
    get_token_provider,
)
from finance_dashboard.core.errors import UpstreamError
from finance_dashboard.core.models import (
    Account,
    ConnectMoreRequest,
    ConsentRequest,
    CreateUserRequest,
    DashboardSummary,
    Job,
    PollStatusResponse,
    ReportRequest,
    TokenRequest,
    TokenScope,
    Transaction,
)
from finance_dashboard.core.settings import Settings
from finance_dashboard.core.utils import get_logger
from finance_dashboard.services import aggregations
from finance_dashboard.services.basiq_client import BasiqClient
from finance_dashboard.services.status import derive_display_status, step_list
from finance_dashboard.services.token_provider import TokenProvider
from finance_dashboard.workers.job_poller import PollRegistry, wait_for_job

router = APIRouter()
logger = get_logger("finance-dashboard.api")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
HTTP_502_BAD_GATEWAY = 502


def _require_job_id(job_id: str) -> str:
    if not job_id or job_id == "null":
        raise HTTPException(400, "Job ID is required")
    return job_id


@router.post(
    "/users",
    summary="Create a user and issue their client token",
    description=(
        "Create a user in the aggregation API by email, then fetch a client access token for them. "
        "The token is what the consent flow needs to link bank accounts.\n\n"
        "**Response:**\n"
        "- 200 OK: `{ 'id', 'user_id', 'email', 'client_access_token', 'status': 'created' }`\n"
        "- 400 Bad Request: missing or malformed email.\n"
        "- 500 Internal Server Error: the application key is missing or the token endpoint failed."
    ),
    responses={
        400: {
            "description": "Invalid email.",
            "content": {"application/json": {"example": {"detail": "Invalid email format"}}},
        },
    },
)
async def create_user(
    body: CreateUserRequest,
    client: BasiqClient = Depends(get_basiq_client),
    tokens: TokenProvider = Depends(get_token_provider),
) -> dict[str, Any]:
    """Create a user by email and return their id and client access token."""
    email = body.email.strip()
    if not email:
        raise HTTPException(400, "Email is required")
    if not EMAIL_PATTERN.match(email):
        raise HTTPException(400, "Invalid email format")
    logger.info(f"Creating user for email={email}")
    user = await client.create_user(email)
    user_id = str(user["id"])
    credential = await tokens.get_user_token(user_id)
    return {
        "id": user_id,
        "user_id": user_id,
        "email": email,
        "client_access_token": credential.value,
        "status": "created",
    }


@router.get("/users/{user_id}", summary="Get user details")
async def get_user(user_id: str, client: BasiqClient = Depends(get_basiq_client)) -> dict[str, Any]:
    """Return the aggregation API's record of a user."""
    return await client.get_user(user_id)


@router.post(
    "/token",
    summary="Issue a client access token",
    description=(
        "Issue a user-scoped (`CLIENT_ACCESS`) token. Service tokens are never exposed; "
        "any other scope is rejected with 400."
    ),
)
async def issue_token(body: TokenRequest, tokens: TokenProvider = Depends(get_token_provider)) -> dict[str, Any]:
    """Issue a client access token for a user."""
    if body.scope != TokenScope.USER.value:
        raise HTTPException(400, "Invalid scope or missing userId for CLIENT_ACCESS")
    credential = await tokens.get_user_token(body.user_id or "")
    return {
        "access_token": credential.value,
        "token_type": "Bearer",
        "expires_in": int(credential.ttl.total_seconds()),
    }


@router.post("/consent", summary="Build the bank-linking consent URL")
async def consent(body: ConsentRequest, client: BasiqClient = Depends(get_basiq_client)) -> dict[str, Any]:
    """Return the consent URL the browser should navigate to for linking a bank."""
    if not body.user_id or not body.client_access_token:
        raise HTTPException(400, "User ID and client access token are required")
    consent_url = client.consent_url(body.client_access_token)
    logger.info(f"Generated consent URL for user {body.user_id}")
    return {
        "consent_url": consent_url,
        "redirect_uri": client.redirect_uri(),
        "user_id": body.user_id,
        "status": "ready",
    }


@router.post("/connect-more", summary="Build the URL for linking more accounts")
async def connect_more(
    body: ConnectMoreRequest,
    client: BasiqClient = Depends(get_basiq_client),
    tokens: TokenProvider = Depends(get_token_provider),
) -> dict[str, Any]:
    """Return a consent URL for connecting additional bank accounts."""
    if not body.user_id:
        raise HTTPException(400, "User ID is required")
    credential = await tokens.get_user_token(body.user_id)
    return {"connect_url": client.connect_more_url(credential.value)}


@router.get(
    "/jobs/{job_id}",
    response_model=Job,
    summary="Get aggregation job status",
    description=(
        "Fetch a bank-data job once.\n\n"
        "**Path parameter:**\n"
        "- `job_id`: the job identifier returned by the consent callback.\n\n"
        "**Response:**\n"
        "- 200 OK: the job with its ordered steps.\n"
        "- 400 Bad Request: missing job id.\n"
        "- Upstream error status with `detail` when the aggregation API rejects the request."
    ),
)
async def get_job(job_id: str, client: BasiqClient = Depends(get_basiq_client)) -> Job:
    """Fetch a job resource by id."""
    return await client.get_job(_require_job_id(job_id))


@router.post("/jobs/{job_id}/poll", status_code=202, summary="Start polling a job in the background")
async def start_poll(job_id: str, registry: PollRegistry = Depends(get_poll_registry)) -> JSONResponse:
    """Start a background poll; a second start while one is running is ignored."""
    already_running = registry.is_active(_require_job_id(job_id))
    poller = registry.start(job_id)
    logger.info(f"Poll requested for job {job_id} (already running: {already_running})")
    return JSONResponse(
        {"job_id": job_id, "state": poller.snapshot.state.value, "already_running": already_running},
        status_code=202,
    )


@router.get(
    "/jobs/{job_id}/poll",
    response_model=PollStatusResponse,
    summary="Get background poll status",
    description=(
        "Return the latest poll snapshot together with the derived display status "
        "(`IDLE`, `IN_PROGRESS`, `SUCCESS` or `ERROR`, with title, message and progress) and the "
        "progress list of the job's steps (`completed`, `active`, `failed` or `pending`). "
        "Once a finished poll has been read it is forgotten."
    ),
)
async def poll_status(job_id: str, registry: PollRegistry = Depends(get_poll_registry)) -> PollStatusResponse:
    """Return the poll snapshot and the status to display for it."""
    snapshot = registry.consume(_require_job_id(job_id))
    if snapshot is None:
        return PollStatusResponse(snapshot=None, display=derive_display_status(None, polling_active=False))
    display = derive_display_status(snapshot.job, polling_active=snapshot.is_active, polling_error=snapshot.error)
    return PollStatusResponse(snapshot=snapshot, display=display, steps=step_list(snapshot.job))


@router.delete("/jobs/{job_id}/poll", summary="Cancel a background poll")
async def cancel_poll(job_id: str, registry: PollRegistry = Depends(get_poll_registry)) -> dict[str, Any]:
    """Abandon the poll for a job, e.g. when the user navigates away."""
    cancelled = await registry.cancel(_require_job_id(job_id))
    return {"job_id": job_id, "cancelled": cancelled}


@router.get("/users/{user_id}/accounts", response_model=list[Account], summary="List a user's accounts")
async def list_accounts(
    user_id: str,
    url: str | None = Query(default=None, description="Accounts link returned by a job step"),
    client: BasiqClient = Depends(get_basiq_client),
) -> list[Account]:
    """List the accounts linked by a user."""
    try:
        return await client.list_accounts(user_id, url=url)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc


@router.get("/users/{user_id}/accounts/{account_id}", response_model=Account, summary="Get one account")
async def get_account(user_id: str, account_id: str, client: BasiqClient = Depends(get_basiq_client)) -> Account:
    """Fetch a single account's details."""
    return await client.get_account(user_id, account_id)


@router.get("/users/{user_id}/transactions", response_model=list[Transaction], summary="List a user's transactions")
async def list_transactions(
    user_id: str,
    limit: int | None = Query(default=None, ge=1, le=500),
    url: str | None = Query(default=None, description="Transactions link returned by a job step"),
    client: BasiqClient = Depends(get_basiq_client),
) -> list[Transaction]:
    """List a user's transactions, most recent first as returned upstream."""
    try:
        return await client.list_transactions(user_id, limit=limit, url=url)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc


@router.get(
    "/users/{user_id}/transactions/{transaction_id}",
    response_model=Transaction,
    summary="Get one transaction",
)
async def get_transaction(
    user_id: str, transaction_id: str, client: BasiqClient = Depends(get_basiq_client)
) -> Transaction:
    """Fetch a single transaction's details."""
    return await client.get_transaction(user_id, transaction_id)


@router.get("/users/{user_id}/insights", summary="Get a user's insights")
async def get_insights(user_id: str, client: BasiqClient = Depends(get_basiq_client)) -> dict[str, Any]:
    """Return the aggregation API's insights for a user, or an empty set when unavailable."""
    return await client.get_insights(user_id)


@router.post(
    "/users/{user_id}/reports",
    summary="Generate a report",
    description=(
        "Create a report job over the last year of the user's data and wait for it to finish. "
        "Returns the job id and the URL the report document can be downloaded from."
    ),
)
async def create_report(
    user_id: str,
    body: ReportRequest,
    client: BasiqClient = Depends(get_basiq_client),
    settings: Settings = Depends(get_app_settings),
) -> dict[str, Any]:
    """Create a report job, wait for it and return the report link."""
    if not body.report_type:
        raise HTTPException(400, "Missing required field: report_type")
    job_id = await client.create_report(user_id, body.report_type, body.title)
    job = await wait_for_job(
        job_id,
        client.get_job,
        interval=settings.report_poll_interval_seconds,
        max_attempts=settings.report_poll_max_attempts,
    )
    report_url = job.links.get("source")
    if not report_url:
        raise UpstreamError(HTTP_502_BAD_GATEWAY, "Report URL missing in job data")
    return {"job_id": job_id, "report_url": report_url}


@router.get(
    "/users/{user_id}/dashboard",
    response_model=DashboardSummary,
    summary="Aggregated dashboard data",
    description=(
        "Fetch the user's accounts and transactions and compute everything the dashboard renders: "
        "net worth, trends, category totals, the monthly spending series, insights, budgets and "
        "an income/expense report.\n\n"
        "Trend changes are `null` (and `estimated` is true) when there is no earlier spending to compare with."
    ),
)
async def dashboard(
    user_id: str,
    months: int = Query(default=aggregations.DEFAULT_MONTHS, ge=1, le=60),
    client: BasiqClient = Depends(get_basiq_client),
) -> DashboardSummary:
    """Compute the dashboard summary for a user."""
    accounts, transactions = await asyncio.gather(
        client.list_accounts(user_id),
        client.list_transactions(user_id),
    )
    logger.info(f"Building dashboard for user {user_id}: {len(accounts)} accounts, {len(transactions)} transactions")
    return DashboardSummary(
        user_id=user_id,
        net_worth=aggregations.net_worth(accounts),
        accounts=accounts,
        trends=aggregations.compute_trends(transactions),
        category_totals=aggregations.category_totals(transactions),
        monthly_series=aggregations.monthly_series(transactions, months=months),
        insights=aggregations.spending_insights(transactions),
        budget=aggregations.budget_overview(transactions),
        report=aggregations.report_summary(transactions, accounts),
    )


@router.get(
    "/health",
    summary="Health check",
    description="Simple health check endpoint. Returns status ok.",
    response_description="Status ok.",
    responses={200: {"description": "API is healthy.", "content": {"application/json": {"example": {"status": "ok"}}}}},
)
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}
