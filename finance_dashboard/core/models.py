"""Pydantic models for the Finance Dashboard API.

This module defines the models shared across the application: credentials issued by the
aggregation API, the asynchronous bank-data job and its steps, the pass-through account and
transaction entities, the poller and display state, the aggregation view rows, and the request
bodies accepted by the HTTP layer.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from finance_dashboard.core.utils import parse_amount, utcnow


class TokenScope(StrEnum):
    """Credential classes issued by the token endpoint, valued by their wire names."""

    SERVICE = "SERVER_ACCESS"
    USER = "CLIENT_ACCESS"


class Credential(BaseModel):
    """A bearer token together with the moment it was obtained and how long it lives."""

    value: str
    scope: TokenScope
    obtained_at: datetime
    ttl: timedelta

    @property
    def expires_at(self) -> datetime:
        """Moment after which the credential must be refreshed."""
        return self.obtained_at + self.ttl

    def is_expired(self, now: datetime | None = None) -> bool:
        """Return True once the credential's age reaches its ttl."""
        now = now or utcnow()
        return now - self.obtained_at >= self.ttl


class JobState(StrEnum):
    """Overall status of an aggregation job."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class StepStatus(StrEnum):
    """Status of a single job step."""

    PENDING = "pending"
    ACTIVE = "active"
    SUCCESS = "success"
    FAILED = "failed"


# Upstream spellings seen on jobs and steps, mapped onto the enums above.
_JOB_STATE_ALIASES = {
    "in-progress": JobState.IN_PROGRESS,
    "active": JobState.IN_PROGRESS,
    "running": JobState.IN_PROGRESS,
    "completed": JobState.SUCCESS,
    "error": JobState.FAILED,
}
_STEP_STATUS_ALIASES = {
    "in-progress": StepStatus.ACTIVE,
    "in_progress": StepStatus.ACTIVE,
    "completed": StepStatus.SUCCESS,
    "error": StepStatus.FAILED,
}


def _normalise(value: object, aliases: dict[str, StrEnum], enum_cls: type[StrEnum]) -> StrEnum:
    """Map an upstream status string onto enum_cls; unknown values count as pending."""
    lowered = str(value).strip().lower()
    if lowered in aliases:
        return aliases[lowered]
    try:
        return enum_cls(lowered)
    except ValueError:
        return enum_cls("pending")


class JobStep(BaseModel):
    """One stage of a job, e.g. verifying credentials or retrieving transactions."""

    model_config = ConfigDict(extra="allow")

    id: str = ""
    title: str = ""
    status: StepStatus = StepStatus.PENDING
    description: str | None = None
    result: dict[str, Any] | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _normalise_status(cls, value: object) -> object:
        if value is None:
            return StepStatus.PENDING
        return _normalise(value, _STEP_STATUS_ALIASES, StepStatus)

    @field_validator("id", "title", mode="before")
    @classmethod
    def _none_as_empty(cls, value: object) -> object:
        return "" if value is None else value

    @field_validator("result", mode="before")
    @classmethod
    def _result_mapping(cls, value: object) -> object:
        if value is None or isinstance(value, dict):
            return value
        return {"value": value}

    @property
    def is_failed(self) -> bool:
        """True when the step reported failure."""
        return self.status == StepStatus.FAILED

    @property
    def is_complete(self) -> bool:
        """True when the step finished successfully."""
        return self.status == StepStatus.SUCCESS

    @property
    def detail(self) -> str | None:
        """Human-readable failure detail reported in the step result, if any."""
        if self.result:
            detail = self.result.get("detail")
            return str(detail) if detail else None
        return None


class Job(BaseModel):
    """An asynchronous bank-data-sync job tracked by id and composed of ordered steps."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    overall_status: JobState = Field(default=JobState.PENDING, alias="status")
    steps: list[JobStep] = Field(default_factory=list)
    created_at: str | None = Field(default=None, alias="created")
    updated_at: str | None = Field(default=None, alias="updated")
    links: dict[str, Any] = Field(default_factory=dict)
    message: str | None = None
    error: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _derive_status(cls, data: Any) -> Any:
        """Normalise the upstream status, deriving it from the steps when it is absent."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        raw = data.pop("overall_status", None) or data.get("status")
        if isinstance(raw, str) and raw.strip():
            data["status"] = _normalise(raw, _JOB_STATE_ALIASES, JobState)
            return data
        steps = data.get("steps") or []
        statuses = [
            _normalise(step.get("status") or "pending", _STEP_STATUS_ALIASES, StepStatus)
            if isinstance(step, dict)
            else step.status
            for step in steps
        ]
        if statuses and all(s == StepStatus.SUCCESS for s in statuses):
            data["status"] = JobState.SUCCESS
        elif any(s == StepStatus.FAILED for s in statuses):
            data["status"] = JobState.FAILED
        elif any(s in (StepStatus.ACTIVE, StepStatus.SUCCESS) for s in statuses):
            data["status"] = JobState.IN_PROGRESS
        else:
            data["status"] = JobState.PENDING
        return data

    @property
    def first_failed_step(self) -> JobStep | None:
        """The first step that reported failure."""
        return next((step for step in self.steps if step.is_failed), None)

    @property
    def has_failed_step(self) -> bool:
        """True when any step failed."""
        return self.first_failed_step is not None

    @property
    def completed_steps(self) -> int:
        """Number of successfully completed steps."""
        return sum(1 for step in self.steps if step.is_complete)

    def failure_detail(self) -> str | None:
        """Best available explanation of why the job failed."""
        step = self.first_failed_step
        if step and step.detail:
            return step.detail
        if self.message:
            return self.message
        data = getattr(self, "data", None)
        if isinstance(data, list) and data and isinstance(data[0], dict) and data[0].get("detail"):
            return str(data[0]["detail"])
        return None


class AccountClass(BaseModel):
    """Account classification as reported by the aggregation API."""

    model_config = ConfigDict(extra="allow")

    type: str | None = None
    product: str | None = None


class Account(BaseModel):
    """A linked bank account. Pass-through entity; only the balance is interpreted."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = ""
    name: str = ""
    balance: Decimal = Decimal(0)
    available_funds: Decimal | None = Field(default=None, alias="availableFunds")
    currency: str | None = None
    account_class: AccountClass | None = Field(default=None, alias="class")
    status: str | None = None

    @field_validator("balance", mode="before")
    @classmethod
    def _parse_balance(cls, value: object) -> Decimal:
        return parse_amount(value)

    @field_validator("available_funds", mode="before")
    @classmethod
    def _parse_available(cls, value: object) -> Decimal | None:
        return None if value is None else parse_amount(value)


class Transaction(BaseModel):
    """A bank transaction. Pass-through entity; the amount is parsed to a signed Decimal."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = ""
    description: str = ""
    amount: Decimal = Decimal(0)
    post_date: str | None = Field(default=None, alias="postDate")
    transaction_date: str | None = Field(default=None, alias="transactionDate")
    direction: str | None = None
    category: str | None = None
    transaction_class: str | dict[str, Any] | None = Field(default=None, alias="class")
    sub_class: dict[str, Any] | None = Field(default=None, alias="subClass")
    enrich: dict[str, Any] | None = None

    @field_validator("amount", mode="before")
    @classmethod
    def _parse_amount(cls, value: object) -> Decimal:
        return parse_amount(value)

    @property
    def date(self) -> str | None:
        """Posting date, falling back to the transaction date for pending items."""
        return self.post_date or self.transaction_date


class PollState(StrEnum):
    """States of the job poller."""

    STARTING = "STARTING"
    POLLING = "POLLING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


ACTIVE_POLL_STATES = frozenset({PollState.STARTING, PollState.POLLING})


class PollSnapshot(BaseModel):
    """Point-in-time view of one poll loop, emitted to observers on every change."""

    job_id: str
    state: PollState = PollState.STARTING
    attempts: int = 0
    max_attempts: int = 0
    job: Job | None = None
    error: str | None = None
    error_kind: str | None = None

    @property
    def is_active(self) -> bool:
        """True while the loop is still starting or polling."""
        return self.state in ACTIVE_POLL_STATES


class DisplayState(StrEnum):
    """Single human-facing status derived from a job."""

    IDLE = "IDLE"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class DisplayStatus(BaseModel):
    """Status, copy and progress shown while a bank connection is being processed."""

    status: DisplayState
    title: str
    message: str
    progress_percent: float = 0.0


class StepDisplay(BaseModel):
    """One row of the connection progress list."""

    title: str
    state: str


class PollStatusResponse(BaseModel):
    """Response body of the poll status endpoint."""

    snapshot: PollSnapshot | None
    display: DisplayStatus
    steps: list[StepDisplay] = Field(default_factory=list)


class CategoryTotal(BaseModel):
    """Expense total for one resolved category label."""

    name: str
    value: float


class MonthlySpend(BaseModel):
    """Expense total for one calendar month."""

    month: str
    label: str
    spending: float


class Trends(BaseModel):
    """Trend heuristics over the trailing month and week.

    Change percentages are None when the previous window holds no real spending;
    `estimated` is True in that case so the UI can show them as unavailable.
    """

    savings_rate: float = 0.0
    total_spending_month: float = 0.0
    total_income_month: float = 0.0
    total_spending_week: float = 0.0
    monthly_change: float | None = None
    weekly_spending_change: float | None = None
    estimated: bool = False


class Insight(BaseModel):
    """A short observation about recent spending."""

    id: str
    type: str
    title: str
    message: str
    action: str | None = None


class BudgetCategory(BaseModel):
    """Current-month spending against the budget of one category."""

    name: str
    spent: float
    budget: float
    trend: float | None = None
    percent_used: float = 0.0
    over_budget: bool = False
    near_limit: bool = False


class BudgetOverview(BaseModel):
    """Per-category budget rows plus overall totals."""

    categories: list[BudgetCategory] = Field(default_factory=list)
    total_spent: float = 0.0
    total_budget: float = 0.0


class ReportSummary(BaseModel):
    """Income and expense report over every transaction supplied."""

    total_income: float = 0.0
    total_expenses: float = 0.0
    net_flow: float = 0.0
    expense_categories: list[CategoryTotal] = Field(default_factory=list)
    income_categories: list[CategoryTotal] = Field(default_factory=list)
    account_balances: dict[str, float] = Field(default_factory=dict)


class DashboardSummary(BaseModel):
    """Everything the dashboard page renders once the bank data is available."""

    user_id: str
    net_worth: float
    accounts: list[Account]
    trends: Trends
    category_totals: list[CategoryTotal]
    monthly_series: list[MonthlySpend]
    insights: list[Insight]
    budget: BudgetOverview
    report: ReportSummary


class CreateUserRequest(BaseModel):
    """Body of the user creation endpoint."""

    email: str = ""


class TokenRequest(BaseModel):
    """Body of the client token endpoint."""

    scope: str = ""
    user_id: str | None = Field(default=None, alias="userId")

    model_config = ConfigDict(populate_by_name=True)


class ConsentRequest(BaseModel):
    """Body of the consent URL endpoint."""

    user_id: str = Field(default="", alias="userId")
    client_access_token: str = Field(default="", alias="clientAccessToken")

    model_config = ConfigDict(populate_by_name=True)


class ConnectMoreRequest(BaseModel):
    """Body of the connect-more-accounts endpoint."""

    user_id: str = Field(default="", alias="userId")

    model_config = ConfigDict(populate_by_name=True)


class ReportRequest(BaseModel):
    """Body of the report generation endpoint."""

    report_type: str = Field(default="", alias="reportType")
    title: str | None = None

    model_config = ConfigDict(populate_by_name=True)
