import logging
import os

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
    insert,
    select,
)
from sqlalchemy.engine import Connection, Engine

logger = logging.getLogger(__name__)

BASE_CURRENCY = "USD"

DEFAULT_CURRENCIES = [
    ("USD", "$", "US Dollar"),
    ("PEN", "S/", "Peruvian Sol"),
    ("EUR", "€", "Euro"),
    ("GBP", "£", "British Pound"),
    ("MXN", "$", "Mexican Peso"),
    ("COP", "$", "Colombian Peso"),
    ("ARS", "$", "Argentine Peso"),
    ("CLP", "$", "Chilean Peso"),
    ("BRL", "R$", "Brazilian Real"),
    ("JPY", "¥", "Japanese Yen"),
]

DEFAULT_CATEGORIES = [
    ("Food", "expense", "🍔"),
    ("Transport", "expense", "🚗"),
    ("Housing", "expense", "🏠"),
    ("Health", "expense", "💊"),
    ("Entertainment", "expense", "🎮"),
    ("Salary", "income", "💼"),
    ("Freelance", "income", "💰"),
    ("Gifts", "income", "🎁"),
]

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

currencies = Table(
    "currencies",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(3), unique=True, nullable=False),
    Column("symbol", String(8), nullable=False),
    Column("name", String(100)),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(50), nullable=False),
    Column("balance", Numeric(14, 2), nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

payment_methods = Table(
    "payment_methods",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(50), nullable=False),
    Column("type", String(20), nullable=False),
    Column("icon", String(8), nullable=False, server_default="📌"),
    Column("is_default", Boolean, nullable=False, server_default="0"),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", "type", name="uq_categories_user_name_type"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("currency_id", Integer, ForeignKey("currencies.id"), nullable=False),
    Column("amount_in_base", Numeric(14, 2)),
    Column("exchange_rate_used", Numeric(18, 8)),
    Column("description", String(500)),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("payment_method_id", Integer, ForeignKey("payment_methods.id")),
    Column("account_id", Integer, ForeignKey("accounts.id")),
    Column("date", Date, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

monthly_config = Table(
    "monthly_config",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("month", Date, nullable=False),
    Column("fixed_income", Numeric(14, 2), nullable=False),
    Column("savings_percent", Integer, nullable=False),
    Column("currency_id", Integer, ForeignKey("currencies.id"), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime),
    UniqueConstraint("user_id", "month", name="uq_monthly_config_user_month"),
)

exchange_rates = Table(
    "exchange_rates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("from_currency_id", Integer, ForeignKey("currencies.id"), nullable=False),
    Column("to_currency_id", Integer, ForeignKey("currencies.id"), nullable=False),
    Column("rate", Numeric(18, 8), nullable=False),
    Column("date", Date, nullable=False),
    Column("source", String(20), nullable=False, server_default="api"),
    UniqueConstraint(
        "from_currency_id", "to_currency_id", "date", name="uq_exchange_rates_pair_date"
    ),
)


def make_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args)


engine = make_engine(os.getenv("DATABASE_URL", "sqlite:///./pocketbook.db"))


def seed_currencies(conn: Connection) -> None:
    existing = set(conn.execute(select(currencies.c.code)).scalars().all())
    missing = [
        {"code": code, "symbol": symbol, "name": name}
        for code, symbol, name in DEFAULT_CURRENCIES
        if code not in existing
    ]
    if not missing:
        return
    conn.execute(insert(currencies), missing)
    logger.info("Seeded %d currencies", len(missing))


def ensure_default_categories(conn: Connection, user_id: int) -> None:
    existing = conn.execute(
        select(categories.c.id).where(categories.c.user_id == user_id).limit(1)
    ).first()
    if existing:
        return
    conn.execute(
        insert(categories),
        [
            {
                "user_id": user_id,
                "name": name,
                "type": category_type,
                "icon": icon,
                "is_default": True,
                "is_active": True,
            }
            for name, category_type, icon in DEFAULT_CATEGORIES
        ],
    )


def init_db(target: Engine | None = None) -> None:
    target = target or engine
    metadata.create_all(target)
    with target.begin() as conn:
        seed_currencies(conn)
