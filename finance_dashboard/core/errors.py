"""Error taxonomy for the Finance Dashboard API.

Every error the token provider, the aggregation API client and the job poller
raise derives from FinanceDashboardError, so the API layer can translate them
into JSON responses in one place.
"""


class FinanceDashboardError(Exception):
    """Base class for all errors raised by the Finance Dashboard services."""

    status_code = 500

    def __init__(self, message: str) -> None:
        """Store a human-readable message that is safe to show to the user."""
        super().__init__(message)
        self.message = message


class CredentialError(FinanceDashboardError):
    """The application key is missing or the token endpoint could not issue a token."""

    def __init__(self, reason: str) -> None:
        """Initialize with the reason the credential could not be obtained."""
        super().__init__(reason)
        self.reason = reason


class UpstreamError(FinanceDashboardError):
    """The aggregation API answered with a non-2xx status."""

    def __init__(self, status_code: int, detail: str) -> None:
        """Keep the upstream status and its error detail verbatim."""
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


class JobFetchError(FinanceDashboardError):
    """The job resource could not be fetched while polling."""

    status_code = 502


class JobFailedError(FinanceDashboardError):
    """The job, or one of its steps, reported a failure."""

    status_code = 422


class JobTimeoutError(FinanceDashboardError):
    """The poll attempt budget ran out before the job reached a terminal state."""

    status_code = 504
