from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
import json
import time
from typing import Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

import structlog

logger = structlog.get_logger(__name__)

ONE = Decimal("1")

SUPPORTED_CURRENCIES = ("USD", "EUR", "GBP", "HUF")

# Directional multipliers: DEFAULT_RATE_TABLE[source][target] converts one unit
# of source into target.
DEFAULT_RATE_TABLE: dict[str, dict[str, Decimal]] = {
    "USD": {"EUR": Decimal("0.85"), "GBP": Decimal("0.73"), "HUF": Decimal("350.0"), "USD": ONE},
    "EUR": {"USD": Decimal("1.18"), "GBP": Decimal("0.86"), "HUF": Decimal("410.0"), "EUR": ONE},
    "GBP": {"USD": Decimal("1.37"), "EUR": Decimal("1.16"), "HUF": Decimal("475.0"), "GBP": ONE},
    "HUF": {"USD": Decimal("0.0029"), "EUR": Decimal("0.0024"), "GBP": Decimal("0.0021"), "HUF": ONE},
}


class RateProvider(Protocol):
    def get_rate(
        self, source_currency: str, target_currency: str, date: date | str | None = None
    ) -> Decimal | None:
        """Return the multiplier for source -> target, or None when unknown."""


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


@dataclass(frozen=True)
class TableRateProvider:
    """Deterministic, in-memory FX rates keyed by source then target."""

    table: Mapping[str, Mapping[str, Decimal]] = None

    def __post_init__(self) -> None:
        source = self.table or DEFAULT_RATE_TABLE
        object.__setattr__(
            self,
            "table",
            {
                _clean_code(src): {_clean_code(dst): _coerce_amount(rate) for dst, rate in row.items()}
                for src, row in source.items()
            },
        )

    def get_rate(
        self, source_currency: str, target_currency: str, date: date | str | None = None
    ) -> Decimal | None:
        return self.table.get(_clean_code(source_currency), {}).get(_clean_code(target_currency))


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    expires_at: float | None


@dataclass
class FrankfurterRateProvider:
    base_url: str = "https://api.frankfurter.app"
    cache_ttl_seconds: int = 12 * 60 * 60
    _cache: dict[tuple[str, str], CachedRates] = field(default_factory=dict)

    def get_rate(
        self, source_currency: str, target_currency: str, date: date | str | None = None
    ) -> Decimal | None:
        source = _clean_code(source_currency)
        target = _clean_code(target_currency)
        if not _is_currency_code(source) or not _is_currency_code(target):
            return None
        if source == target:
            return ONE

        date_key = _normalize_rate_date(date)
        rates = self._get_rates(source, date_key)
        return rates.get(target)

    def _get_rates(self, base_currency: str, date_key: str | None) -> Mapping[str, Decimal]:
        cache_key = (base_currency, date_key or "latest")
        cached = self._cache.get(cache_key)
        now = time.monotonic()
        if cached and (cached.expires_at is None or cached.expires_at > now):
            return cached.rates

        rates = self._fetch_rates(base_currency, date_key)
        expires_at = None
        if date_key is None:
            expires_at = now + self.cache_ttl_seconds
        self._cache[cache_key] = CachedRates(rates=rates, expires_at=expires_at)
        return rates

    def _fetch_rates(self, base_currency: str, date_key: str | None) -> Mapping[str, Decimal]:
        endpoint = date_key or "latest"
        url = f"{self.base_url}/{endpoint}?from={base_currency}"
        try:
            with urlopen(url, timeout=8) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            logger.warning("rate_provider_unavailable", url=url, error=str(exc))
            raise RateProviderUnavailable("Frankfurter API unavailable") from exc

        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Frankfurter response missing rates")

        parsed = {normalize_currency(code): Decimal(str(value)) for code, value in rates.items()}
        parsed[base_currency] = ONE
        return parsed


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: RateProvider
    fallback: RateProvider

    def get_rate(
        self, source_currency: str, target_currency: str, date: date | str | None = None
    ) -> Decimal | None:
        try:
            rate = self.primary.get_rate(source_currency, target_currency, date=date)
        except RateProviderUnavailable:
            return self.fallback.get_rate(source_currency, target_currency, date=date)
        if rate is None:
            return self.fallback.get_rate(source_currency, target_currency, date=date)
        return rate


def build_rate_provider(name: str | None) -> RateProvider:
    normalized = (name or "table").strip().lower()
    if normalized == "frankfurter":
        return CompositeRateProvider(primary=FrankfurterRateProvider(), fallback=TableRateProvider())
    if normalized != "table":
        logger.warning("unknown_rate_provider", requested=name, using="table")
    return TableRateProvider()


def resolve_rate(
    source_currency: str,
    target_currency: str,
    rate_provider: RateProvider | None = None,
    date: date | str | None = None,
) -> Decimal:
    """Look up the multiplier for source -> target.

    Identical currencies resolve to exactly 1 without consulting the provider.
    A pair the provider does not know also resolves to 1, with a warning, so
    conversion degrades to identity instead of failing.
    """
    source = _clean_code(source_currency)
    target = _clean_code(target_currency)
    if source == target:
        return ONE

    provider = rate_provider or DEFAULT_PROVIDER
    rate = provider.get_rate(source, target, date=date)
    if not rate:
        logger.warning("exchange_rate_missing", source=source, target=target, fallback="1.0")
        return ONE
    return rate


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    snapshot_rate: Decimal | int | float | str | None = None,
    rate_provider: RateProvider | None = None,
    date: date | str | None = None,
) -> Decimal:
    """Convert a monetary amount for display.

    A stored snapshot rate takes precedence over the provider so historical
    amounts do not drift. No rounding is applied.
    """
    coerced_amount = _coerce_amount(amount)
    if _clean_code(source_currency) == _clean_code(target_currency):
        return coerced_amount

    if snapshot_rate is not None:
        rate = _coerce_amount(snapshot_rate)
        if rate:
            return coerced_amount * rate

    return coerced_amount * resolve_rate(
        source_currency, target_currency, rate_provider=rate_provider, date=date
    )


def snapshot_rate_for(
    currency: str,
    default_currency: str,
    rate_provider: RateProvider | None = None,
) -> Decimal:
    """Rate to persist alongside a record written in ``currency``."""
    return resolve_rate(currency, default_currency, rate_provider=rate_provider)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if not _is_currency_code(normalized):
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _clean_code(value: str | None) -> str:
    return (value or "").strip().upper()


def _is_currency_code(value: str) -> bool:
    return len(value) == 3 and value.isalpha()


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def _normalize_rate_date(value: date | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, date):
        return value.isoformat()
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError("Date must be in YYYY-MM-DD format.") from exc
    return parsed.isoformat()


DEFAULT_PROVIDER = TableRateProvider()
