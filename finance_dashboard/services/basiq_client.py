"""HTTP client for the bank data aggregation API.

Wraps the boundary calls the dashboard depends on (users, consent, jobs, accounts,
transactions, insights and reports). Every call carries the fixed API version header
and a bearer service token from the TokenProvider; non-2xx answers become
UpstreamError carrying the upstream detail verbatim.
"""

from datetime import date
from typing import Any
from urllib.parse import quote, urlencode

import httpx

from finance_dashboard.core.errors import UpstreamError
from finance_dashboard.core.models import Account, Job, Transaction
from finance_dashboard.core.settings import Settings
from finance_dashboard.core.utils import get_logger, utcnow
from finance_dashboard.services.token_provider import TokenProvider

logger = get_logger("finance-dashboard.client")

HTTP_401_UNAUTHORIZED = 401
HTTP_502_BAD_GATEWAY = 502
HTTP_404_NOT_FOUND = 404


def error_detail(response: httpx.Response, fallback: str) -> str:
    """Extract the human-readable detail from an aggregation API error body."""
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or fallback
    if isinstance(payload, dict):
        errors = payload.get("data")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict) and errors[0].get("detail"):
            return str(errors[0]["detail"])
        for key in ("message", "error", "detail"):
            if payload.get(key):
                return str(payload[key])
    return fallback


def quote_id(value: str) -> str:
    """Quote an identifier for use as a single path segment."""
    return quote(value, safe="")


class BasiqClient:
    """Client for the aggregation API endpoints used by the dashboard."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient, token_provider: TokenProvider) -> None:
        """Initialize the client with the shared HTTP client and token provider."""
        self.settings = settings
        self.http_client = http_client
        self.token_provider = token_provider
        self.base_url = settings.basiq_base_url.rstrip("/")

    def resolve_url(self, path_or_url: str) -> str:
        """Resolve a path, or a link returned by the API, against the configured base URL."""
        if path_or_url.startswith(("http://", "https://")):
            if not path_or_url.startswith(f"{self.base_url}/"):
                msg = f"Refusing to follow link outside the aggregation API: {path_or_url}"
                raise ValueError(msg)
            return path_or_url
        return f"{self.base_url}/{path_or_url.lstrip('/')}"

    async def request(
        self,
        method: str,
        path_or_url: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        failure_message: str = "Request to the aggregation API failed",
    ) -> Any:
        """Send an authorized request and return the decoded JSON body."""
        url = self.resolve_url(path_or_url)
        credential = await self.token_provider.get_service_token()
        headers = {
            "Authorization": f"Bearer {credential.value}",
            "Accept": "application/json",
            "basiq-version": self.settings.basiq_api_version,
        }
        try:
            response = await self.http_client.request(
                method,
                url,
                json=json,
                params=params,
                headers=headers,
                timeout=self.settings.http_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.exception(f"{method} {url} failed")
            raise UpstreamError(HTTP_502_BAD_GATEWAY, f"{failure_message}: {exc}") from exc

        logger.info(f"{method} {url} -> {response.status_code}")
        if response.status_code == HTTP_401_UNAUTHORIZED:
            self.token_provider.invalidate()
        if response.is_error:
            detail = error_detail(response, failure_message)
            logger.error(f"Aggregation API error on {method} {url}: {detail}")
            raise UpstreamError(response.status_code, detail)
        try:
            return response.json()
        except ValueError as exc:
            logger.exception(f"Invalid JSON from {method} {url}")
            raise UpstreamError(HTTP_502_BAD_GATEWAY, "Invalid JSON from the aggregation API") from exc

    async def create_user(self, email: str) -> dict[str, Any]:
        """Create a user by email and return the created resource."""
        user = await self.request("POST", "/users", json={"email": email}, failure_message="Failed to create user")
        if not isinstance(user, dict) or not user.get("id"):
            raise UpstreamError(HTTP_502_BAD_GATEWAY, "Failed to create user")
        logger.info(f"User created: {user['id']}")
        return user

    async def get_user(self, user_id: str) -> dict[str, Any]:
        """Fetch a user's details."""
        return await self.request("GET", f"/users/{quote_id(user_id)}", failure_message="Failed to fetch user details")

    async def get_job(self, job_id: str) -> Job:
        """Fetch a job resource by id."""
        payload = await self.request("GET", f"/jobs/{quote_id(job_id)}", failure_message="Failed to fetch job details")
        if not isinstance(payload, dict):
            raise UpstreamError(HTTP_502_BAD_GATEWAY, "Unexpected job payload from the aggregation API")
        payload.setdefault("id", job_id)
        job = Job.model_validate(payload)
        logger.info(
            f"Job {job.id}: status={job.overall_status.value} steps={len(job.steps)} "
            f"completed={job.completed_steps}"
        )
        return job

    async def list_accounts(self, user_id: str, url: str | None = None) -> list[Account]:
        """List a user's accounts, optionally from a link returned by a job step."""
        path = url or f"/users/{quote_id(user_id)}/accounts"
        payload = await self.request("GET", path, failure_message="Failed to fetch accounts")
        items = payload.get("data", []) if isinstance(payload, dict) and "data" in payload else [payload]
        accounts = [Account.model_validate(item) for item in items if isinstance(item, dict)]
        logger.info(f"Fetched {len(accounts)} accounts for user {user_id}")
        return accounts

    async def get_account(self, user_id: str, account_id: str) -> Account:
        """Fetch a single account."""
        payload = await self.request(
            "GET",
            f"/users/{quote_id(user_id)}/accounts/{quote_id(account_id)}",
            failure_message="Failed to fetch account details",
        )
        return Account.model_validate(payload)

    async def list_transactions(
        self, user_id: str, limit: int | None = None, url: str | None = None
    ) -> list[Transaction]:
        """List a user's transactions, optionally from a link returned by a job step."""
        if url:
            path, params = url, None
        else:
            path = f"/users/{quote_id(user_id)}/transactions"
            params = {"limit": limit or self.settings.transactions_limit}
        payload = await self.request("GET", path, params=params, failure_message="Failed to fetch transactions")
        items = payload.get("data", []) if isinstance(payload, dict) else []
        transactions = [Transaction.model_validate(item) for item in items if isinstance(item, dict)]
        enriched = bool(transactions) and transactions[0].enrich is not None
        logger.info(f"Fetched {len(transactions)} transactions for user {user_id} (enriched: {enriched})")
        return transactions

    async def get_transaction(self, user_id: str, transaction_id: str) -> Transaction:
        """Fetch a single transaction."""
        payload = await self.request(
            "GET",
            f"/users/{quote_id(user_id)}/transactions/{quote_id(transaction_id)}",
            failure_message="Failed to fetch transaction details",
        )
        return Transaction.model_validate(payload)

    async def get_insights(self, user_id: str) -> dict[str, Any]:
        """Fetch a user's insights; an unavailable insights endpoint yields an empty result."""
        try:
            return await self.request("GET", f"/users/{quote_id(user_id)}/insights")
        except UpstreamError as exc:
            if exc.status_code != HTTP_404_NOT_FOUND:
                raise
            logger.warning(f"Insights unavailable for user {user_id}: {exc.detail}")
            return {"insights": [], "reports": {}}

    async def create_report(
        self, user_id: str, report_type: str, title: str | None = None, today: date | None = None
    ) -> str:
        """Create a report job over the trailing year and return its job id."""
        today = today or utcnow().date()
        try:
            from_date = today.replace(year=today.year - 1)
        except ValueError:
            # 29 February
            from_date = today.replace(year=today.year - 1, day=28)
        body = {
            "reportType": report_type,
            "title": title or "Full Net Worth Report",
            "filters": [
                {"name": "fromDate", "value": from_date.isoformat()},
                {"name": "toDate", "value": today.isoformat()},
                {"name": "users", "value": [user_id]},
                {"name": "accounts", "value": []},
            ],
        }
        payload = await self.request("POST", "/reports", json=body, failure_message="Failed to create report job")
        job_id = payload.get("id") if isinstance(payload, dict) else None
        if not job_id:
            raise UpstreamError(HTTP_502_BAD_GATEWAY, "Report job id missing in response")
        logger.info(f"Report job {job_id} created for user {user_id} ({report_type})")
        return job_id

    def redirect_uri(self) -> str:
        """Where the consent flow sends the browser back to."""
        return f"{self.settings.public_base_url.rstrip('/')}/auth/callback"

    def consent_url(self, user_token: str) -> str:
        """Consent UI URL for linking a first bank account."""
        query = urlencode({"token": user_token, "redirect_uri": self.redirect_uri()})
        return f"{self.settings.basiq_consent_url.rstrip('/')}/home?{query}"

    def connect_more_url(self, user_token: str) -> str:
        """Consent UI URL for linking additional bank accounts."""
        query = urlencode({"token": user_token, "action": "connect"})
        return f"{self.settings.basiq_consent_url.rstrip('/')}/home?{query}"
