"""Aggregation views over transactions and accounts.

These reducers turn raw transaction and account lists into the numbers the dashboard
charts: category totals, a zero-filled monthly series, trend heuristics, spending insights,
budgets and a simple income/expense report. All of them are pure functions of their inputs
and an optional "now", which keeps them deterministic under test.

Trend changes compare against the previous window of real transactions. When that window
holds no spending the change is reported as None and flagged as estimated rather than
invented.
"""

from collections.abc import Iterable, Mapping
from datetime import UTC, date, datetime, time
from typing import Any

import pandas as pd

from finance_dashboard.core.models import (
    Account,
    BudgetCategory,
    BudgetOverview,
    CategoryTotal,
    Insight,
    MonthlySpend,
    ReportSummary,
    Transaction,
    Trends,
)
from finance_dashboard.core.utils import get_logger, parse_timestamp, utcnow

logger = get_logger("finance-dashboard.views")

UNCATEGORIZED = "Uncategorized"
OTHER = "Other"
DEFAULT_CATEGORY_LIMIT = 8
DEFAULT_MONTHS = 12
DEFAULT_WEEKLY_BUDGET = 1000.0
SPENDING_ALERT_RATIO = 1.2
BUDGET_ACHIEVEMENT_RATIO = 0.8
NEAR_LIMIT_PERCENT = 80.0
DEFAULT_BUDGET = 100.0
DEFAULT_BUDGETS = {
    "Groceries": 500.0,
    "Dining": 200.0,
    "Transport": 150.0,
    "Entertainment": 100.0,
    "Utilities": 120.0,
    "Shopping": 300.0,
    UNCATEGORIZED: 50.0,
}

# Most specific enrichment level first.
ANZSIC_LEVELS = ("subclass", "class", "group", "subdivision", "division")
FRAME_COLUMNS = ["date", "amount", "category"]


def _title(node: object) -> str | None:
    if isinstance(node, Mapping):
        title = node.get("title")
        return str(title) if title else None
    if isinstance(node, str) and node:
        return node
    return None


def _dig(node: object, *keys: str) -> object:
    for key in keys:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    return node


def resolve_category(txn: Transaction) -> str:
    """Resolve a display category, from the most specific enrichment field down to the class."""
    anzsic = _dig(txn.enrich, "category", "anzsic") or {}
    for level in ANZSIC_LEVELS:
        title = _title(_dig(anzsic, level))
        if title:
            return title
    if txn.category:
        return txn.category
    return _title(txn.transaction_class) or _title(txn.sub_class) or UNCATEGORIZED


def coerce_transactions(transactions: Iterable[Transaction | Mapping[str, Any]]) -> list[Transaction]:
    """Accept transaction models or raw upstream mappings."""
    return [t if isinstance(t, Transaction) else Transaction.model_validate(dict(t)) for t in transactions]


def coerce_accounts(accounts: Iterable[Account | Mapping[str, Any]]) -> list[Account]:
    """Accept account models or raw upstream mappings."""
    return [a if isinstance(a, Account) else Account.model_validate(dict(a)) for a in accounts]


def transactions_frame(transactions: Iterable[Transaction | Mapping[str, Any]]) -> pd.DataFrame:
    """Build a frame with one row per transaction: UTC date, signed float amount, category."""
    rows = [
        {"date": parse_timestamp(t.date), "amount": float(t.amount), "category": resolve_category(t)}
        for t in coerce_transactions(transactions)
    ]
    frame = pd.DataFrame(rows, columns=FRAME_COLUMNS)
    frame["date"] = pd.to_datetime(frame["date"], utc=True)
    frame["amount"] = frame["amount"].astype(float)
    return frame


def _now(now: datetime | date | None) -> pd.Timestamp:
    if now is None:
        now = utcnow()
    elif not isinstance(now, datetime):
        now = datetime.combine(now, time.max, tzinfo=UTC)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return pd.Timestamp(now).tz_convert("UTC")


def _expense_totals(frame: pd.DataFrame) -> pd.Series:
    """Absolute expense per category, largest first (ties alphabetical)."""
    expenses = frame[frame["amount"] < 0]
    if expenses.empty:
        return pd.Series(dtype=float)
    totals = expenses["amount"].abs().groupby(expenses["category"]).sum()
    return totals.sort_values(ascending=False, kind="stable")


def _window(frame: pd.DataFrame, start: pd.Timestamp, end: pd.Timestamp | None = None) -> pd.DataFrame:
    mask = frame["date"] >= start
    if end is not None:
        mask &= frame["date"] < end
    return frame[mask]


def _horizon(current: pd.Timestamp) -> pd.Timestamp:
    """Exclusive upper bound for windows that end at `current`; later-dated rows are not counted."""
    return current + pd.Timedelta(microseconds=1)


def _spending(frame: pd.DataFrame) -> float:
    return float(frame.loc[frame["amount"] < 0, "amount"].abs().sum())


def _income(frame: pd.DataFrame) -> float:
    return float(frame.loc[frame["amount"] > 0, "amount"].sum())


def _percent_change(current: float, previous: float) -> float | None:
    if previous <= 0:
        return None
    return round((current - previous) / previous * 100, 1)


def category_totals(
    transactions: Iterable[Transaction | Mapping[str, Any]], limit: int = DEFAULT_CATEGORY_LIMIT
) -> list[CategoryTotal]:
    """Expense totals per category, descending, with the tail beyond `limit` folded into Other."""
    totals = _expense_totals(transactions_frame(transactions))
    top = [CategoryTotal(name=str(name), value=round(float(value), 2)) for name, value in totals.iloc[:limit].items()]
    other = float(totals.iloc[limit:].sum())
    if other > 0:
        top.append(CategoryTotal(name=OTHER, value=round(other, 2)))
    return top


def monthly_series(
    transactions: Iterable[Transaction | Mapping[str, Any]],
    months: int = DEFAULT_MONTHS,
    now: datetime | date | None = None,
) -> list[MonthlySpend]:
    """Expense per calendar month over the trailing `months`, oldest first, zero-filled."""
    if months < 1:
        msg = "months must be at least 1"
        raise ValueError(msg)
    current = _now(now)
    periods = pd.period_range(end=current.tz_localize(None).to_period("M"), periods=months, freq="M")
    frame = transactions_frame(transactions)
    expenses = frame[(frame["amount"] < 0) & (frame["date"] < _horizon(current))]
    by_month = expenses["date"].dt.tz_localize(None).dt.to_period("M")
    totals = expenses["amount"].abs().groupby(by_month).sum().reindex(periods, fill_value=0.0)
    return [
        MonthlySpend(month=str(period), label=period.strftime("%b %y"), spending=round(float(value), 2))
        for period, value in totals.items()
    ]


def compute_trends(
    transactions: Iterable[Transaction | Mapping[str, Any]], now: datetime | date | None = None
) -> Trends:
    """Savings rate and spending change over the trailing month and week.

    The month window starts on the same day one month back; the week window seven days back.
    Changes compare each window with the window immediately before it.
    """
    current = _now(now)
    frame = transactions_frame(transactions)
    month_start = current - pd.DateOffset(months=1)
    previous_month_start = current - pd.DateOffset(months=2)
    week_start = current - pd.Timedelta(days=7)
    previous_week_start = current - pd.Timedelta(days=14)

    month = _window(frame, month_start, _horizon(current))
    week = _window(frame, week_start, _horizon(current))
    spending_month = _spending(month)
    income_month = _income(month)
    spending_week = _spending(week)
    monthly_change = _percent_change(spending_month, _spending(_window(frame, previous_month_start, month_start)))
    weekly_change = _percent_change(spending_week, _spending(_window(frame, previous_week_start, week_start)))

    savings_rate = (income_month - spending_month) / income_month * 100 if income_month > 0 else 0.0
    return Trends(
        savings_rate=round(max(0.0, savings_rate), 1),
        total_spending_month=round(spending_month, 2),
        total_income_month=round(income_month, 2),
        total_spending_week=round(spending_week, 2),
        monthly_change=monthly_change,
        weekly_spending_change=weekly_change,
        estimated=monthly_change is None or weekly_change is None,
    )


def spending_insights(
    transactions: Iterable[Transaction | Mapping[str, Any]],
    now: datetime | date | None = None,
    weekly_budget: float = DEFAULT_WEEKLY_BUDGET,
) -> list[Insight]:
    """Week-over-week spending alerts, the average income transaction and a budget note."""
    frame = transactions_frame(transactions)
    if frame.empty:
        return []
    current = _now(now)
    week_start = current - pd.Timedelta(days=7)
    this_week = _expense_totals(_window(frame, week_start, _horizon(current)))
    last_week = _expense_totals(_window(frame, current - pd.Timedelta(days=14), week_start))

    insights: list[Insight] = []
    for category, amount in this_week.items():
        previous = float(last_week.get(category, 0.0))
        if previous > 0 and amount > previous * SPENDING_ALERT_RATIO:
            increase = (amount - previous) / previous * 100
            insights.append(
                Insight(
                    id=f"spending-alert-{category}",
                    type="warning",
                    title="Spending Alert",
                    message=f"{category} expenses up {increase:.0f}% this week compared to last.",
                    action="Review Spending",
                )
            )

    income = frame.loc[frame["amount"] > 0, "amount"]
    if not income.empty:
        insights.append(
            Insight(
                id="income-pattern",
                type="info",
                title="Income Pattern",
                message=f"Average income transaction: ${income.mean():.2f}.",
                action="View Details",
            )
        )

    if float(this_week.sum()) < weekly_budget * BUDGET_ACHIEVEMENT_RATIO:
        insights.append(
            Insight(
                id="budget-achievement",
                type="success",
                title="Budget Achievement",
                message="You're doing great! Your spending is well within your weekly budget.",
                action="View Progress",
            )
        )
    return insights


def budget_overview(
    transactions: Iterable[Transaction | Mapping[str, Any]],
    budgets: Mapping[str, float] | None = None,
    now: datetime | date | None = None,
) -> BudgetOverview:
    """Current calendar month's spending per category against its budget."""
    budgets = DEFAULT_BUDGETS if budgets is None else budgets
    current = _now(now)
    month_start = current.normalize().replace(day=1)
    previous_month_start = month_start - pd.DateOffset(months=1)
    frame = transactions_frame(transactions)
    spent_by_category = _expense_totals(_window(frame, month_start, _horizon(current)))
    previous_by_category = _expense_totals(_window(frame, previous_month_start, month_start))

    categories = []
    for name, total in spent_by_category.items():
        spent = round(float(total), 2)
        budget = float(budgets.get(name, DEFAULT_BUDGET))
        percent = spent / budget * 100 if budget > 0 else 0.0
        categories.append(
            BudgetCategory(
                name=str(name),
                spent=spent,
                budget=round(budget, 2),
                trend=_percent_change(spent, float(previous_by_category.get(name, 0.0))),
                percent_used=round(percent, 1),
                over_budget=percent > 100,
                near_limit=NEAR_LIMIT_PERCENT < percent <= 100,
            )
        )
    return BudgetOverview(
        categories=categories,
        total_spent=round(sum(c.spent for c in categories), 2),
        total_budget=round(sum(c.budget for c in categories), 2),
    )


def net_worth(accounts: Iterable[Account | Mapping[str, Any]]) -> float:
    """Sum of all account balances."""
    return round(float(sum((a.balance for a in coerce_accounts(accounts)), start=0)), 2)


def report_summary(
    transactions: Iterable[Transaction | Mapping[str, Any]],
    accounts: Iterable[Account | Mapping[str, Any]] = (),
) -> ReportSummary:
    """Income, expenses and net flow with per-category breakdowns, plus account balances."""
    frame = transactions_frame(transactions)
    income = frame[frame["amount"] > 0]
    income_totals = income["amount"].groupby(income["category"]).sum().sort_values(ascending=False, kind="stable")
    expense_totals = _expense_totals(frame)
    total_income = float(income["amount"].sum())
    total_expenses = float(expense_totals.sum())
    logger.info(f"Report over {len(frame)} transactions: income={total_income:.2f} expenses={total_expenses:.2f}")
    return ReportSummary(
        total_income=round(total_income, 2),
        total_expenses=round(total_expenses, 2),
        net_flow=round(total_income - total_expenses, 2),
        expense_categories=[CategoryTotal(name=str(k), value=round(float(v), 2)) for k, v in expense_totals.items()],
        income_categories=[CategoryTotal(name=str(k), value=round(float(v), 2)) for k, v in income_totals.items()],
        account_balances={a.name or a.id: round(float(a.balance), 2) for a in coerce_accounts(accounts)},
    )
