import logging
import os
from datetime import date, datetime
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import func, insert, select, update
from sqlalchemy.exc import IntegrityError

from pocketbook.budget_engine import BudgetStatus, calculate_budget, evaluate_monthly_budget
from pocketbook.db import (
    BASE_CURRENCY,
    accounts,
    categories,
    currencies,
    engine,
    ensure_default_categories,
    init_db,
    monthly_config,
    payment_methods,
    transactions,
    users,
)
from pocketbook.exchange_rates import (
    default_rate_provider,
    get_exchange_rate,
    normalize_currency,
    utc_today,
)
from pocketbook.statistics import (
    ExpenseRow,
    analyze_trend,
    build_monthly_comparison,
    category_breakdown,
    comparison_months,
    month_end,
    month_start,
    parse_month_value,
    project_spending,
    sum_spent,
    top_category,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Pocketbook")

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

RATE_PROVIDER = default_rate_provider()

CENT = Decimal("0.01")
MAX_PASSWORD_BYTES = 72
DEFAULT_ICON = "📌"
RECENT_TRANSACTIONS_LIMIT = 10

ICON_SUGGESTIONS = {
    "expense": ["🍔", "🚗", "🏠", "💊", "🎮", "👕", "✈️", "🎬", "📱", "⚡"],
    "income": ["💰", "💵", "🎁", "📈", "💼", "🏆", "⭐", "✨", "🎯", "💎"],
}


@app.on_event("startup")
def startup() -> None:
    init_db(engine)
    logger.info("Database initialised")


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    created_at: datetime | None = None


class CurrencyResponse(BaseModel):
    id: int
    code: str
    symbol: str
    name: str | None = None


class AccountType:
    values = {"cash", "checking", "savings", "credit", "investment"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid account type.")
        return normalized


class EntryType:
    values = {"income", "expense"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Type must be 'income' or 'expense'.")
        return normalized


class AccountPayload(BaseModel):
    name: str
    type: str
    balance: Decimal = Decimal("0")

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.type = AccountType.validate(payload.type)
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Account name required.")
        return payload


class AccountResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    balance: Decimal
    created_at: datetime | None = None


class PaymentMethodPayload(BaseModel):
    name: str

    @classmethod
    def validate_payload(cls, payload: "PaymentMethodPayload") -> "PaymentMethodPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Payment method name required.")
        return payload


class PaymentMethodResponse(BaseModel):
    id: int
    user_id: int
    name: str


class CategoryPayload(BaseModel):
    name: str
    type: str = "expense"
    icon: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.type = EntryType.validate(payload.type)
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        if len(payload.name) > 50:
            raise ValueError("Category name must be at most 50 characters.")
        payload.icon = payload.icon.strip() if payload.icon else ""
        if not payload.icon:
            payload.icon = DEFAULT_ICON
        if len(payload.icon) > 8:
            raise ValueError("Icon must be a single emoji.")
        return payload


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    icon: str
    is_default: bool
    is_active: bool
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    type: str
    amount: Decimal
    currency: str = BASE_CURRENCY
    description: str | None = None
    category_id: int | None = None
    payment_method_id: int | None = None
    account_id: int | None = None
    date: date

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = EntryType.validate(payload.type)
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.currency = normalize_currency(payload.currency)
        payload.description = payload.description.strip() if payload.description else None
        return payload


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    type: str
    amount: Decimal
    currency: str
    currency_symbol: str
    amount_in_base: Decimal | None = None
    exchange_rate_used: Decimal | None = None
    description: str | None = None
    category_id: int | None = None
    category: str | None = None
    payment_method_id: int | None = None
    account_id: int | None = None
    date: date


class ExchangeRateResponse(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal
    date: date
    amount: Decimal | None = None
    converted_amount: Decimal | None = None


class MonthlyConfigPayload(BaseModel):
    fixed_income: Decimal
    savings_percent: int = 30
    currency: str = BASE_CURRENCY

    @classmethod
    def validate_payload(cls, payload: "MonthlyConfigPayload") -> "MonthlyConfigPayload":
        calculate_budget(payload.fixed_income, payload.savings_percent)
        payload.currency = normalize_currency(payload.currency)
        return payload


class MonthlyConfigResponse(BaseModel):
    id: int
    month: date
    fixed_income: Decimal
    savings_percent: int
    currency: str
    savings_goal: Decimal
    budget: Decimal
    updated_at: datetime | None = None


class BudgetSummaryResponse(BaseModel):
    month: date
    currency: str
    fixed_income: Decimal
    savings_percent: int
    savings_goal: Decimal
    budget: Decimal
    spent_this_month: Decimal
    remaining: Decimal
    percent_used: Decimal
    percent_remaining: Decimal
    status: str
    warning: str | None = None


class CategoryTotalResponse(BaseModel):
    name: str
    total: Decimal
    percent: Decimal


class MonthComparisonResponse(BaseModel):
    month: date
    label: str
    expenses: Decimal
    budget: Decimal
    actual_savings: Decimal


class TrendAnalysisResponse(BaseModel):
    spending_change_percent: Decimal | None = None
    savings_change: Decimal
    improving: bool


class StatsResponse(BaseModel):
    month: date
    total_spent: Decimal
    budget: Decimal
    savings_goal: Decimal
    actual_savings: Decimal
    average_daily_spending: Decimal
    days_in_month: int
    days_remaining: int
    projected_total: Decimal
    projected_savings: Decimal
    projected_savings_percent: Decimal | None = None
    top_category: CategoryTotalResponse | None = None
    categories: list[CategoryTotalResponse]
    monthly_comparison: list[MonthComparisonResponse]
    trend: TrendAnalysisResponse | None = None


class DashboardResponse(BaseModel):
    needs_config: bool
    config: MonthlyConfigResponse | None = None
    budget: BudgetSummaryResponse | None = None
    stats: StatsResponse | None = None
    accounts: list[AccountResponse]
    categories: list[CategoryResponse]
    recent_transactions: list[TransactionResponse]


def password_too_long(password: str) -> bool:
    return len(password.encode("utf-8")) > MAX_PASSWORD_BYTES


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def money(value: Decimal) -> Decimal:
    return value.quantize(CENT)


def money_or_none(value: Decimal | None) -> Decimal | None:
    return None if value is None else money(value)


def fetch_currency(conn, code: str):
    return conn.execute(
        select(currencies.c.id, currencies.c.code, currencies.c.symbol).where(
            currencies.c.code == code
        )
    ).mappings().first()


def owned_row_exists(conn, table, row_id: int, user_id: int) -> bool:
    return bool(
        conn.execute(
            select(table.c.id).where(table.c.id == row_id, table.c.user_id == user_id)
        ).first()
    )


def fetch_monthly_config(conn, user_id: int, month: date):
    return conn.execute(
        select(monthly_config, currencies.c.code.label("currency_code"))
        .select_from(
            monthly_config.join(currencies, monthly_config.c.currency_id == currencies.c.id)
        )
        .where(monthly_config.c.user_id == user_id, monthly_config.c.month == month)
    ).mappings().first()


def fetch_expense_rows(conn, user_id: int, start_date: date, end_date: date) -> list[ExpenseRow]:
    stmt = (
        select(
            transactions.c.amount,
            transactions.c.amount_in_base,
            currencies.c.code.label("currency_code"),
            categories.c.name.label("category_name"),
        )
        .select_from(
            transactions.join(currencies, transactions.c.currency_id == currencies.c.id).outerjoin(
                categories, transactions.c.category_id == categories.c.id
            )
        )
        .where(
            transactions.c.user_id == user_id,
            transactions.c.type == "expense",
            transactions.c.date >= start_date,
            transactions.c.date <= end_date,
        )
    )
    rows = conn.execute(stmt).mappings().all()
    return [
        ExpenseRow(
            amount=row["amount"],
            amount_in_base=row["amount_in_base"],
            currency=row["currency_code"],
            category=row["category_name"],
        )
        for row in rows
    ]


def fetch_recent_transactions(conn, user_id: int, limit: int) -> list["TransactionResponse"]:
    stmt = (
        select(
            transactions,
            currencies.c.code.label("currency_code"),
            currencies.c.symbol.label("currency_symbol"),
            categories.c.name.label("category_name"),
        )
        .select_from(
            transactions.join(currencies, transactions.c.currency_id == currencies.c.id).outerjoin(
                categories, transactions.c.category_id == categories.c.id
            )
        )
        .where(transactions.c.user_id == user_id)
        .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        .limit(limit)
    )
    rows = conn.execute(stmt).mappings().all()
    return [build_transaction_response(row) for row in rows]


def build_transaction_response(row) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        amount=row["amount"],
        currency=row["currency_code"],
        currency_symbol=row["currency_symbol"],
        amount_in_base=row["amount_in_base"],
        exchange_rate_used=row["exchange_rate_used"],
        description=row["description"],
        category_id=row["category_id"],
        category=row["category_name"],
        payment_method_id=row["payment_method_id"],
        account_id=row["account_id"],
        date=row["date"],
    )


def build_config_response(row) -> MonthlyConfigResponse:
    monthly = calculate_budget(row["fixed_income"], row["savings_percent"])
    return MonthlyConfigResponse(
        id=row["id"],
        month=row["month"],
        fixed_income=money(monthly.fixed_income),
        savings_percent=monthly.savings_percent,
        currency=row["currency_code"],
        savings_goal=money(monthly.savings_goal),
        budget=money(monthly.budget),
        updated_at=row["updated_at"],
    )


def build_budget_summary(month: date, currency: str, status: BudgetStatus) -> BudgetSummaryResponse:
    return BudgetSummaryResponse(
        month=month,
        currency=currency,
        fixed_income=money(status.fixed_income),
        savings_percent=status.savings_percent,
        savings_goal=money(status.savings_goal),
        budget=money(status.budget),
        spent_this_month=money(status.spent),
        remaining=money(status.remaining),
        percent_used=money(status.percent_used),
        percent_remaining=money(status.percent_remaining),
        status=status.status,
        warning=status.warning,
    )


def compute_budget_summary(conn, user_id: int, today: date, config) -> BudgetSummaryResponse:
    current_month = month_start(today)
    spent = sum_spent(fetch_expense_rows(conn, user_id, current_month, month_end(today)))
    status = evaluate_monthly_budget(config["fixed_income"], config["savings_percent"], spent)
    return build_budget_summary(current_month, config["currency_code"], status)


def compute_stats(conn, user_id: int, today: date, config) -> StatsResponse:
    current_month = month_start(today)
    rows = fetch_expense_rows(conn, user_id, current_month, month_end(today))
    total_spent = sum_spent(rows)
    monthly = calculate_budget(config["fixed_income"], config["savings_percent"])
    projection = project_spending(total_spent, monthly.budget, monthly.savings_goal, today)
    breakdown = category_breakdown(rows)
    top = top_category(breakdown)

    months = comparison_months(today)
    config_rows = conn.execute(
        select(
            monthly_config.c.month,
            monthly_config.c.fixed_income,
            monthly_config.c.savings_percent,
        ).where(
            monthly_config.c.user_id == user_id,
            monthly_config.c.month >= months[0],
            monthly_config.c.month <= current_month,
        )
    ).mappings().all()
    configs = {
        row["month"]: (row["fixed_income"], row["savings_percent"]) for row in config_rows
    }
    expenses = {}
    for month in months:
        if month not in configs:
            continue
        month_rows = fetch_expense_rows(conn, user_id, month, month_end(month))
        expenses[month] = sum(
            (row.amount_in_base for row in month_rows if row.amount_in_base is not None),
            Decimal("0"),
        )
    comparison = build_monthly_comparison(months, configs, expenses)
    trend = analyze_trend(comparison)

    return StatsResponse(
        month=current_month,
        total_spent=money(total_spent),
        budget=money(monthly.budget),
        savings_goal=money(monthly.savings_goal),
        actual_savings=money(monthly.budget - total_spent),
        average_daily_spending=money(projection.average_daily_spending),
        days_in_month=projection.days_in_month,
        days_remaining=projection.days_remaining,
        projected_total=money(projection.projected_total),
        projected_savings=money(projection.projected_savings),
        projected_savings_percent=money_or_none(projection.projected_savings_percent),
        top_category=CategoryTotalResponse(
            name=top.name, total=money(top.total), percent=money(top.percent)
        )
        if top
        else None,
        categories=[
            CategoryTotalResponse(name=entry.name, total=money(entry.total), percent=money(entry.percent))
            for entry in breakdown
        ],
        monthly_comparison=[
            MonthComparisonResponse(
                month=entry.month,
                label=entry.label,
                expenses=money(entry.expenses),
                budget=money(entry.budget),
                actual_savings=money(entry.actual_savings),
            )
            for entry in comparison
        ],
        trend=TrendAnalysisResponse(
            spending_change_percent=money_or_none(trend.spending_change_percent),
            savings_change=money(trend.savings_change),
            improving=trend.improving,
        )
        if trend
        else None,
    )


def list_account_rows(conn, user_id: int) -> list[AccountResponse]:
    rows = conn.execute(
        select(accounts)
        .where(accounts.c.user_id == user_id)
        .order_by(accounts.c.name.asc(), accounts.c.id.asc())
    ).mappings().all()
    return [
        AccountResponse(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            type=row["type"],
            balance=row["balance"],
            created_at=row["created_at"],
        )
        for row in rows
    ]


def list_category_rows(conn, user_id: int, category_type: str | None = None) -> list[CategoryResponse]:
    ensure_default_categories(conn, user_id)
    conditions = [categories.c.user_id == user_id, categories.c.is_active.is_(True)]
    if category_type is not None:
        conditions.append(categories.c.type == category_type)
    rows = conn.execute(
        select(categories)
        .where(*conditions)
        .order_by(categories.c.name.asc(), categories.c.id.asc())
    ).mappings().all()
    return [
        CategoryResponse(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            type=row["type"],
            icon=row["icon"],
            is_default=row["is_default"],
            is_active=row["is_active"],
            created_at=row["created_at"],
        )
        for row in rows
    ]


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    if password_too_long(payload.password):
        raise HTTPException(status_code=400, detail="Password must be at most 72 bytes.")
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(users)
        .values(email=email, hashed_password=hashed_password)
        .returning(users.c.id, users.c.email, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            result = conn.execute(stmt)
            row = result.mappings().first()
            if row:
                ensure_default_categories(conn, row["id"])
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    logger.info("Created user %s", row["id"])
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        result = conn.execute(select(users).where(users.c.email == email))
        row = result.mappings().first()

    if (
        not row
        or password_too_long(payload.password)
        or not verify_password(payload.password, row["hashed_password"])
    ):
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.get("/currencies", response_model=list[CurrencyResponse])
def list_currencies() -> list[CurrencyResponse]:
    with engine.begin() as conn:
        rows = conn.execute(select(currencies).order_by(currencies.c.code.asc())).mappings().all()
    return [
        CurrencyResponse(id=row["id"], code=row["code"], symbol=row["symbol"], name=row["name"])
        for row in rows
    ]


@app.get("/accounts", response_model=list[AccountResponse])
def list_accounts(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[AccountResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        return list_account_rows(conn, user_id)


@app.post("/accounts", response_model=AccountResponse)
def create_account(
    payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(accounts)
        .values(user_id=user_id, name=payload.name, type=payload.type, balance=payload.balance)
        .returning(
            accounts.c.id,
            accounts.c.user_id,
            accounts.c.name,
            accounts.c.type,
            accounts.c.balance,
            accounts.c.created_at,
        )
    )
    with engine.begin() as conn:
        result = conn.execute(stmt)
        row = result.mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create account.")
    return AccountResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        balance=row["balance"],
        created_at=row["created_at"],
    )


@app.get("/payment-methods", response_model=list[PaymentMethodResponse])
def list_payment_methods(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[PaymentMethodResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(payment_methods)
            .where(payment_methods.c.user_id == user_id)
            .order_by(payment_methods.c.name.asc())
        ).mappings().all()
    return [
        PaymentMethodResponse(id=row["id"], user_id=row["user_id"], name=row["name"])
        for row in rows
    ]


@app.post("/payment-methods", response_model=PaymentMethodResponse)
def create_payment_method(
    payload: PaymentMethodPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> PaymentMethodResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = PaymentMethodPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            insert(payment_methods)
            .values(user_id=user_id, name=payload.name)
            .returning(payment_methods.c.id, payment_methods.c.user_id, payment_methods.c.name)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create payment method.")
    return PaymentMethodResponse(id=row["id"], user_id=row["user_id"], name=row["name"])


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    category_type: str | None = Query(None, alias="type"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    if category_type is not None:
        try:
            category_type = EntryType.validate(category_type)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        return list_category_rows(conn, user_id, category_type)


@app.get("/categories/icons")
def category_icons(category_type: str = Query("expense", alias="type")) -> dict:
    try:
        normalized = EntryType.validate(category_type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"type": normalized, "default": DEFAULT_ICON, "icons": ICON_SUGGESTIONS[normalized]}


@app.post("/categories", response_model=CategoryResponse)
def create_category(
    payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(categories)
        .values(
            user_id=user_id,
            name=payload.name,
            type=payload.type,
            icon=payload.icon,
            is_default=False,
            is_active=True,
        )
        .returning(
            categories.c.id,
            categories.c.user_id,
            categories.c.name,
            categories.c.type,
            categories.c.icon,
            categories.c.is_default,
            categories.c.is_active,
            categories.c.created_at,
        )
    )
    try:
        with engine.begin() as conn:
            existing = conn.execute(
                select(categories.c.id).where(
                    categories.c.user_id == user_id,
                    categories.c.name == payload.name,
                    categories.c.type == payload.type,
                )
            ).first()
            if existing:
                raise HTTPException(status_code=409, detail="Category already exists.")
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create category.")
    return CategoryResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        icon=row["icon"],
        is_default=row["is_default"],
        is_active=row["is_active"],
        created_at=row["created_at"],
    )


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    limit: int = Query(RECENT_TRANSACTIONS_LIMIT, ge=1, le=200),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        return fetch_recent_transactions(conn, user_id, limit)


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        currency_row = fetch_currency(conn, payload.currency)
        if not currency_row:
            raise HTTPException(status_code=400, detail="Invalid currency.")
        if payload.account_id is not None and not owned_row_exists(
            conn, accounts, payload.account_id, user_id
        ):
            raise HTTPException(status_code=404, detail="Account not found.")
        if payload.payment_method_id is not None and not owned_row_exists(
            conn, payment_methods, payload.payment_method_id, user_id
        ):
            raise HTTPException(status_code=404, detail="Payment method not found.")
        category_name = None
        if payload.category_id is not None:
            category_row = conn.execute(
                select(categories.c.name, categories.c.type).where(
                    categories.c.id == payload.category_id, categories.c.user_id == user_id
                )
            ).mappings().first()
            if not category_row:
                raise HTTPException(status_code=404, detail="Category not found.")
            if category_row["type"] != payload.type:
                raise HTTPException(
                    status_code=400, detail="Category type does not match transaction type."
                )
            category_name = category_row["name"]

        rate = get_exchange_rate(conn, payload.currency, BASE_CURRENCY, provider=RATE_PROVIDER)
        if rate is None:
            raise HTTPException(
                status_code=503, detail="Could not fetch the exchange rate. Try again."
            )
        amount_in_base = money(payload.amount * rate)

        row = conn.execute(
            insert(transactions)
            .values(
                user_id=user_id,
                type=payload.type,
                amount=payload.amount,
                currency_id=currency_row["id"],
                amount_in_base=amount_in_base,
                exchange_rate_used=rate,
                description=payload.description,
                category_id=payload.category_id,
                payment_method_id=payload.payment_method_id,
                account_id=payload.account_id,
                date=payload.date,
            )
            .returning(*transactions.c)
        ).mappings().first()

        if row and payload.account_id is not None:
            delta = payload.amount if payload.type == "income" else -payload.amount
            conn.execute(
                update(accounts)
                .where(accounts.c.id == payload.account_id, accounts.c.user_id == user_id)
                .values(balance=accounts.c.balance + delta)
            )

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create transaction.")
    return build_transaction_response(
        {
            **row,
            "currency_code": currency_row["code"],
            "currency_symbol": currency_row["symbol"],
            "category_name": category_name,
        }
    )


@app.get("/exchange-rates", response_model=ExchangeRateResponse)
def exchange_rate(
    from_currency: str = Query(..., alias="from"),
    to_currency: str = Query(BASE_CURRENCY, alias="to"),
    amount: Decimal | None = Query(None),
) -> ExchangeRateResponse:
    try:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    today = utc_today()
    with engine.begin() as conn:
        rate = get_exchange_rate(conn, source, target, today=today, provider=RATE_PROVIDER)
    if rate is None:
        raise HTTPException(status_code=503, detail="Exchange rate unavailable.")
    return ExchangeRateResponse(
        from_currency=source,
        to_currency=target,
        rate=rate,
        date=today,
        amount=amount,
        converted_amount=money(amount * rate) if amount is not None else None,
    )


@app.get("/monthly-config", response_model=MonthlyConfigResponse)
def get_monthly_config(
    month: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> MonthlyConfigResponse:
    user_id = get_user_id(x_user_id)
    month_date = month_start(date.today())
    if month:
        try:
            month_date = parse_month_value(month)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        row = fetch_monthly_config(conn, user_id, month_date)
    if not row:
        raise HTTPException(status_code=404, detail="Monthly config not set.")
    return build_config_response(row)


@app.put("/monthly-config", response_model=MonthlyConfigResponse)
def save_monthly_config(
    payload: MonthlyConfigPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> MonthlyConfigResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = MonthlyConfigPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    current_month = month_start(date.today())
    with engine.begin() as conn:
        currency_row = fetch_currency(conn, payload.currency)
        if not currency_row:
            raise HTTPException(status_code=400, detail="Invalid currency.")
        values = {
            "fixed_income": payload.fixed_income,
            "savings_percent": payload.savings_percent,
            "currency_id": currency_row["id"],
        }
        existing = conn.execute(
            select(monthly_config.c.id).where(
                monthly_config.c.user_id == user_id, monthly_config.c.month == current_month
            )
        ).first()
        if existing:
            conn.execute(
                update(monthly_config)
                .where(monthly_config.c.id == existing[0])
                .values(**values, updated_at=func.now())
            )
        else:
            conn.execute(
                insert(monthly_config).values(user_id=user_id, month=current_month, **values)
            )
        row = fetch_monthly_config(conn, user_id, current_month)

    if not row:
        raise HTTPException(status_code=500, detail="Failed to save monthly config.")
    return build_config_response(row)


@app.get("/budget/summary", response_model=BudgetSummaryResponse)
def budget_summary(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> BudgetSummaryResponse:
    user_id = get_user_id(x_user_id)
    today = date.today()
    with engine.begin() as conn:
        config = fetch_monthly_config(conn, user_id, month_start(today))
        if not config:
            raise HTTPException(status_code=404, detail="Monthly config not set.")
        return compute_budget_summary(conn, user_id, today, config)


@app.get("/reports/stats", response_model=StatsResponse)
def dashboard_stats(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> StatsResponse:
    user_id = get_user_id(x_user_id)
    today = date.today()
    with engine.begin() as conn:
        config = fetch_monthly_config(conn, user_id, month_start(today))
        if not config:
            raise HTTPException(status_code=404, detail="Monthly config not set.")
        return compute_stats(conn, user_id, today, config)


@app.get("/dashboard", response_model=DashboardResponse)
def dashboard(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DashboardResponse:
    user_id = get_user_id(x_user_id)
    today = date.today()
    with engine.begin() as conn:
        config = fetch_monthly_config(conn, user_id, month_start(today))
        return DashboardResponse(
            needs_config=config is None,
            config=build_config_response(config) if config else None,
            budget=compute_budget_summary(conn, user_id, today, config) if config else None,
            stats=compute_stats(conn, user_id, today, config) if config else None,
            accounts=list_account_rows(conn, user_id),
            categories=list_category_rows(conn, user_id),
            recent_transactions=fetch_recent_transactions(
                conn, user_id, RECENT_TRANSACTIONS_LIMIT
            ),
        )
