from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
import json
import logging
import os
from typing import Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from sqlalchemy import insert, select
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from pocketbook.db import BASE_CURRENCY, currencies, exchange_rates

logger = logging.getLogger(__name__)

EXCHANGE_RATE_API_URL = os.getenv(
    "EXCHANGE_RATE_API_URL", "https://api.exchangerate-api.com/v4/latest/USD"
)

STATIC_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "PEN": Decimal("3.75"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "MXN": Decimal("18.10"),
    "COP": Decimal("4100"),
    "ARS": Decimal("950"),
    "CLP": Decimal("940"),
    "BRL": Decimal("5.40"),
    "JPY": Decimal("147.50"),
}


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


class RateProvider(Protocol):
    def get_rates(self) -> Mapping[str, Decimal]:
        ...


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD.
    """

    rates: Mapping[str, Decimal] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or STATIC_RATES))

    def get_rates(self) -> Mapping[str, Decimal]:
        return self.rates


@dataclass(frozen=True)
class ExchangeRateApiProvider:
    base_currency: str = BASE_CURRENCY
    url: str = EXCHANGE_RATE_API_URL
    timeout: float = 8

    def get_rates(self) -> Mapping[str, Decimal]:
        try:
            with urlopen(self.url, timeout=self.timeout) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Exchange rate API unavailable") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Exchange rate response missing rates")

        try:
            parsed = {
                normalize_currency(code): Decimal(str(value))
                for code, value in rates.items()
            }
        except (ValueError, InvalidOperation) as exc:
            raise RateProviderUnavailable("Exchange rate response is malformed") from exc
        parsed[normalize_currency(self.base_currency)] = Decimal("1")
        return parsed


def default_rate_provider() -> RateProvider:
    if os.getenv("EXCHANGE_RATE_PROVIDER", "api").strip().lower() == "static":
        return StaticRateProvider()
    return ExchangeRateApiProvider()


def derive_rate(
    rates: Mapping[str, Decimal],
    from_code: str,
    to_code: str,
    base_currency: str = BASE_CURRENCY,
) -> Decimal | None:
    """Multiplicative rate from one currency to another given base-quoted rates.

    Conversions between two non-base currencies go through the base currency,
    e.g. EUR -> PEN = (USD -> PEN) / (USD -> EUR).
    """
    if from_code == to_code:
        return Decimal("1")
    if from_code == base_currency:
        return _positive(rates.get(to_code))
    from_rate = _positive(rates.get(from_code))
    if from_rate is None:
        return None
    if to_code == base_currency:
        return Decimal("1") / from_rate
    to_rate = _positive(rates.get(to_code))
    if to_rate is None:
        return None
    return to_rate / from_rate


def get_exchange_rate(
    conn: Connection,
    from_code: str,
    to_code: str,
    *,
    today: date | None = None,
    provider: RateProvider | None = None,
) -> Decimal | None:
    """Rate to multiply a ``from_code`` amount by to get ``to_code``.

    Looks for today's cached rate first and only asks the provider when the
    pair has not been resolved yet today. Returns None when the conversion
    is unavailable for any reason.
    """
    try:
        from_code = normalize_currency(from_code)
        to_code = normalize_currency(to_code)
    except ValueError:
        logger.warning("Invalid currency pair %r -> %r", from_code, to_code)
        return None

    if from_code == to_code:
        return Decimal("1")

    rows = conn.execute(
        select(currencies.c.id, currencies.c.code).where(
            currencies.c.code.in_((from_code, to_code))
        )
    ).mappings().all()
    ids = {row["code"]: row["id"] for row in rows}
    if from_code not in ids or to_code not in ids:
        logger.warning("Currencies not found: %s -> %s", from_code, to_code)
        return None

    rate_date = today or utc_today()
    cached = _cached_rate(conn, ids[from_code], ids[to_code], rate_date)
    if cached is not None:
        logger.info("Cached exchange rate %s -> %s = %s", from_code, to_code, cached)
        return cached

    provider = provider or default_rate_provider()
    try:
        rates = provider.get_rates()
    except RateProviderUnavailable as exc:
        logger.warning("Could not fetch exchange rates: %s", exc)
        return None

    rate = derive_rate(rates, from_code, to_code)
    if rate is None:
        logger.warning("No exchange rate available for %s -> %s", from_code, to_code)
        return None

    try:
        with conn.begin_nested():
            conn.execute(
                insert(exchange_rates).values(
                    from_currency_id=ids[from_code],
                    to_currency_id=ids[to_code],
                    rate=rate,
                    date=rate_date,
                    source="api",
                )
            )
    except IntegrityError:
        # another request cached the pair first
        stored = _cached_rate(conn, ids[from_code], ids[to_code], rate_date)
        logger.info("Exchange rate %s -> %s cached concurrently", from_code, to_code)
        return stored if stored is not None else rate
    logger.info("Fetched exchange rate %s -> %s = %s", from_code, to_code, rate)
    return rate


def convert_currency(
    conn: Connection,
    amount: Decimal | int | float | str,
    from_code: str,
    to_code: str,
    *,
    today: date | None = None,
    provider: RateProvider | None = None,
) -> Decimal | None:
    rate = get_exchange_rate(conn, from_code, to_code, today=today, provider=provider)
    if rate is None:
        return None
    return _coerce_decimal(amount) * rate


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def _cached_rate(conn: Connection, from_id: int, to_id: int, rate_date: date) -> Decimal | None:
    cached = conn.execute(
        select(exchange_rates.c.rate).where(
            exchange_rates.c.from_currency_id == from_id,
            exchange_rates.c.to_currency_id == to_id,
            exchange_rates.c.date == rate_date,
        )
    ).scalar_one_or_none()
    if cached is None:
        return None
    return _coerce_decimal(cached)


def _positive(value: Decimal | None) -> Decimal | None:
    if value is None:
        return None
    value = _coerce_decimal(value)
    if value <= 0:
        return None
    return value


def _coerce_decimal(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
