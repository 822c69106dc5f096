from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, Mapping, Optional, Sequence

from pocketbook.budget_engine import calculate_budget
from pocketbook.db import BASE_CURRENCY

ZERO = Decimal("0")
HUNDRED = Decimal("100")
UNCATEGORIZED = "Uncategorized"
COMPARISON_MONTHS = 6


@dataclass(frozen=True)
class ExpenseRow:
    amount: Decimal
    amount_in_base: Optional[Decimal]
    currency: Optional[str] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class CategoryTotal:
    name: str
    total: Decimal
    percent: Decimal


@dataclass(frozen=True)
class SpendingProjection:
    days_in_month: int
    days_elapsed: int
    days_remaining: int
    average_daily_spending: Decimal
    projected_total: Decimal
    projected_savings: Decimal
    projected_savings_percent: Optional[Decimal]


@dataclass(frozen=True)
class MonthComparison:
    month: date
    label: str
    expenses: Decimal
    budget: Decimal
    actual_savings: Decimal


@dataclass(frozen=True)
class TrendAnalysis:
    spending_change_percent: Optional[Decimal]
    savings_change: Decimal
    improving: bool


def month_start(value: date) -> date:
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    month_index = (value.year * 12 + value.month - 1) + months
    year = month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def month_end(value: date) -> date:
    next_month = shift_month(month_start(value), 1)
    return next_month - timedelta(days=1)


def parse_month_value(value: str) -> date:
    try:
        return datetime.strptime(value, "%Y-%m").date()
    except ValueError:
        try:
            return month_start(datetime.strptime(value, "%Y-%m-%d").date())
        except ValueError as exc:
            raise ValueError("Invalid month format. Use YYYY-MM.") from exc


def sum_spent(rows: Iterable[ExpenseRow]) -> Decimal:
    """Total spend in the base currency.

    Rows recorded without a base amount only count when they were entered in
    the base currency; anything else cannot be added up reliably.
    """
    total = ZERO
    for row in rows:
        if row.amount_in_base is not None:
            total += _coerce_amount(row.amount_in_base)
        elif (row.currency or BASE_CURRENCY) == BASE_CURRENCY:
            total += _coerce_amount(row.amount)
    return total


def category_breakdown(rows: Iterable[ExpenseRow]) -> list[CategoryTotal]:
    totals: dict[str, Decimal] = {}
    for row in rows:
        if row.amount_in_base is None:
            continue
        name = row.category or UNCATEGORIZED
        totals[name] = totals.get(name, ZERO) + _coerce_amount(row.amount_in_base)

    grand_total = sum(totals.values(), ZERO)
    ordered = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    return [
        CategoryTotal(
            name=name,
            total=total,
            percent=(total / grand_total * HUNDRED) if grand_total > ZERO else ZERO,
        )
        for name, total in ordered
    ]


def top_category(breakdown: Sequence[CategoryTotal]) -> Optional[CategoryTotal]:
    if not breakdown:
        return None
    return max(breakdown, key=lambda entry: entry.total)


def project_spending(
    total_spent,
    budget,
    savings_goal,
    today: date,
) -> SpendingProjection:
    """Extrapolate the month's spending from the average daily pace so far."""
    spent = _coerce_amount(total_spent)
    budget_value = _coerce_amount(budget)
    income = budget_value + _coerce_amount(savings_goal)

    days_in_month = calendar.monthrange(today.year, today.month)[1]
    days_elapsed = today.day
    average_daily = spent / Decimal(days_elapsed)
    projected_total = average_daily * Decimal(days_in_month)
    projected_savings = budget_value - projected_total
    projected_savings_percent = None
    if income != ZERO:
        projected_savings_percent = projected_savings / income * HUNDRED

    return SpendingProjection(
        days_in_month=days_in_month,
        days_elapsed=days_elapsed,
        days_remaining=days_in_month - days_elapsed,
        average_daily_spending=average_daily,
        projected_total=projected_total,
        projected_savings=projected_savings,
        projected_savings_percent=projected_savings_percent,
    )


def comparison_months(today: date, count: int = COMPARISON_MONTHS) -> list[date]:
    current = month_start(today)
    return [shift_month(current, -offset) for offset in range(count - 1, -1, -1)]


def build_monthly_comparison(
    months: Sequence[date],
    configs: Mapping[date, tuple[Decimal, int]],
    expenses: Mapping[date, Decimal],
) -> list[MonthComparison]:
    """One entry per configured month, oldest first.

    ``configs`` maps a first-of-month date to ``(fixed_income, savings_percent)``;
    months without a config are left out.
    """
    comparison: list[MonthComparison] = []
    for month in months:
        config = configs.get(month)
        if config is None:
            continue
        monthly = calculate_budget(*config)
        spent = _coerce_amount(expenses.get(month, ZERO))
        comparison.append(
            MonthComparison(
                month=month,
                label=month.strftime("%b"),
                expenses=spent,
                budget=monthly.budget,
                actual_savings=monthly.budget - spent,
            )
        )
    return comparison


def analyze_trend(comparison: Sequence[MonthComparison]) -> Optional[TrendAnalysis]:
    if len(comparison) < 2:
        return None
    previous, current = comparison[-2], comparison[-1]

    spending_change = None
    if previous.expenses != ZERO:
        spending_change = (current.expenses - previous.expenses) / previous.expenses * HUNDRED
    savings_change = current.actual_savings - previous.actual_savings
    improving = (spending_change is not None and spending_change < ZERO) or savings_change > ZERO

    return TrendAnalysis(
        spending_change_percent=spending_change,
        savings_change=savings_change,
        improving=improving,
    )


def _coerce_amount(amount) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
