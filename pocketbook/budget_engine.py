from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

ZERO = Decimal("0")
HUNDRED = Decimal("100")

LOW_BUDGET_PERCENT = Decimal("90")
CAUTION_PERCENT = Decimal("70")


@dataclass(frozen=True)
class MonthlyBudget:
    fixed_income: Decimal
    savings_percent: int
    savings_goal: Decimal
    budget: Decimal


@dataclass(frozen=True)
class BudgetStatus:
    fixed_income: Decimal
    savings_percent: int
    savings_goal: Decimal
    budget: Decimal
    spent: Decimal
    remaining: Decimal
    percent_used: Decimal
    percent_remaining: Decimal
    status: str
    warning: Optional[str] = None


def calculate_budget(fixed_income, savings_percent: int) -> MonthlyBudget:
    """Split a fixed monthly income into a savings goal and a spendable budget."""
    income = _coerce_amount(fixed_income)
    if income < ZERO:
        raise ValueError("Fixed income cannot be negative.")
    percent = int(savings_percent)
    if percent < 0 or percent > 100:
        raise ValueError("Savings percent must be between 0 and 100.")

    savings_goal = income * Decimal(percent) / HUNDRED
    return MonthlyBudget(
        fixed_income=income,
        savings_percent=percent,
        savings_goal=savings_goal,
        budget=income - savings_goal,
    )


def evaluate_monthly_budget(
    fixed_income,
    savings_percent: int,
    spent_this_month,
) -> BudgetStatus:
    monthly = calculate_budget(fixed_income, savings_percent)
    spent = _coerce_amount(spent_this_month)
    remaining = monthly.budget - spent

    if monthly.budget > ZERO:
        percent_used = spent / monthly.budget * HUNDRED
    else:
        percent_used = HUNDRED if spent > ZERO else ZERO
    percent_remaining = max(ZERO, HUNDRED - percent_used)

    warning = None
    if remaining < ZERO:
        status = "over"
        warning = f"You have exceeded this month's budget by {abs(remaining):.2f}"
    elif percent_used >= LOW_BUDGET_PERCENT:
        status = "low"
        warning = "Your remaining budget is running low. Keep an eye on your spending."
    elif percent_used >= CAUTION_PERCENT:
        status = "caution"
    else:
        status = "ok"

    return BudgetStatus(
        fixed_income=monthly.fixed_income,
        savings_percent=monthly.savings_percent,
        savings_goal=monthly.savings_goal,
        budget=monthly.budget,
        spent=spent,
        remaining=remaining,
        percent_used=percent_used,
        percent_remaining=percent_remaining,
        status=status,
        warning=warning,
    )


def _coerce_amount(amount) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
