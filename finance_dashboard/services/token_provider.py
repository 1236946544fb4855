"""Token provider for the bank data aggregation API.

The service credential is cached process-wide and refreshed once its age reaches the
configured ttl; refreshes are single-flight so concurrent callers share one fetch.
User credentials are short-lived and user-specific, so they are never cached.
"""

import asyncio
import base64
from collections.abc import Callable
from datetime import datetime, timedelta

import httpx

from finance_dashboard.core.errors import CredentialError
from finance_dashboard.core.models import Credential, TokenScope
from finance_dashboard.core.settings import Settings
from finance_dashboard.core.utils import get_logger, preview_secret, utcnow

logger = get_logger("finance-dashboard.token")


def looks_pre_encoded(api_key: str) -> bool:
    """Heuristic: a key with a colon or base64 padding is already a Basic auth value."""
    return ":" in api_key or api_key.endswith("=")


def basic_auth_value(api_key: str) -> str:
    """Build the Basic credential for the token endpoint from the application key."""
    if looks_pre_encoded(api_key):
        logger.warning(
            "BASIQ_API_KEY looks already Base64 encoded or contains a colon; using it verbatim. "
            "It should normally be the raw key from the dashboard."
        )
        return api_key
    return base64.b64encode(f"{api_key}:".encode()).decode()


def token_error_reason(status_code: int, payload: object) -> str:
    """Turn an error body from the token endpoint into a readable reason."""
    if isinstance(payload, dict):
        errors = payload.get("data")
        if isinstance(errors, list) and errors:
            details = ", ".join(
                f"{error.get('title', 'Error')}: {error.get('detail', '')}" for error in errors if isinstance(error, dict)
            )
            if details:
                return f"Aggregation API error: {details}"
        message = payload.get("message") or payload.get("error_description") or payload.get("error")
        if message:
            return f"HTTP {status_code}: {message}"
    return f"HTTP {status_code}: Unknown error from token endpoint"


class TokenProvider:
    """Obtain bearer credentials for the aggregation API."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the provider with an empty service credential cache."""
        self.settings = settings
        self.http_client = http_client
        self._clock = clock
        self._service_credential: Credential | None = None
        self._refresh_lock = asyncio.Lock()

    @property
    def cached_service_credential(self) -> Credential | None:
        """The cached service credential, if one has been fetched."""
        return self._service_credential

    def _fresh_cached(self) -> Credential | None:
        credential = self._service_credential
        if credential is not None and not credential.is_expired(self._clock()):
            return credential
        return None

    async def get_service_token(self) -> Credential:
        """Return the cached service credential, refreshing it when it has expired."""
        credential = self._fresh_cached()
        if credential is not None:
            return credential
        async with self._refresh_lock:
            # Another caller may have refreshed while this one waited for the lock.
            credential = self._fresh_cached()
            if credential is not None:
                return credential
            logger.info("Service token expired or not found. Fetching new service token...")
            credential = await self._request_token(TokenScope.SERVICE)
            self._service_credential = credential
            logger.info(f"Service token updated, valid until {credential.expires_at.isoformat()}")
            return credential

    async def get_user_token(self, user_id: str) -> Credential:
        """Fetch a new user credential. Never cached."""
        logger.info(f"Fetching new user token for user_id={user_id}")
        return await self._request_token(TokenScope.USER, user_id)

    def invalidate(self) -> None:
        """Drop the cached service credential so the next call refreshes it."""
        if self._service_credential is not None:
            logger.info("Invalidating cached service token")
        self._service_credential = None

    async def _request_token(self, scope: TokenScope, user_id: str | None = None) -> Credential:
        api_key = (self.settings.basiq_api_key or "").strip()
        if not api_key:
            logger.error("BASIQ_API_KEY is undefined or empty in environment variables")
            msg = "API key not configured. Please set BASIQ_API_KEY in your environment."
            raise CredentialError(msg)

        form = {"scope": scope.value}
        if scope == TokenScope.USER and user_id:
            form["userId"] = user_id
        headers = {
            "Authorization": f"Basic {basic_auth_value(api_key)}",
            "Accept": "application/json",
            "basiq-version": self.settings.basiq_api_version,
        }
        url = f"{self.settings.basiq_base_url.rstrip('/')}/token"
        try:
            response = await self.http_client.post(
                url, data=form, headers=headers, timeout=self.settings.http_timeout_seconds
            )
        except httpx.HTTPError as exc:
            logger.exception(f"Token request for scope {scope.value} failed")
            msg = f"Token request failed: {exc}"
            raise CredentialError(msg) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error(f"Token endpoint returned non-JSON body (status {response.status_code})")
            if response.is_error:
                msg = f"HTTP {response.status_code}: {response.text}"
            else:
                msg = f"Invalid JSON response from token endpoint: {response.text}"
            raise CredentialError(msg) from exc

        if response.is_error:
            reason = token_error_reason(response.status_code, payload)
            logger.error(f"Token endpoint error for scope {scope.value}: {reason}")
            raise CredentialError(reason)

        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            msg = "Access token not found in token response."
            raise CredentialError(msg)

        ttl = self.settings.service_token_ttl_seconds
        expires_in = payload.get("expires_in")
        if isinstance(expires_in, int | float) and expires_in > 0:
            ttl = min(ttl, float(expires_in))
        logger.info(f"Obtained {scope.name} token {preview_secret(token)} (ttl {ttl:.0f}s)")
        return Credential(value=token, scope=scope, obtained_at=self._clock(), ttl=timedelta(seconds=ttl))
