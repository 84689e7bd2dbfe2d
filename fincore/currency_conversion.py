from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

import structlog

from fincore.settings import (
    get_base_currency,
    get_default_currency,
    get_fx_api_url,
    get_fx_max_age_hours,
    normalize_currency,
)
from fincore.storage import KeyValueStore

logger = structlog.get_logger(__name__)

ONE = Decimal("1")
CURRENCY_CONFIG_KEY = "currency_config"

# Units of HUF per 1 unit of each currency.
DEFAULT_RATES: dict[str, Decimal] = {
    "HUF": Decimal("1"),
    "EUR": Decimal("386.7"),
    "USD": Decimal("330.1"),
    "GBP": Decimal("441.3"),
    "CHF": Decimal("368.5"),
    "JPY": Decimal("2.15"),
    "PLN": Decimal("90.2"),
    "CZK": Decimal("15.3"),
    "RON": Decimal("77.7"),
    "TRY": Decimal("9.5"),
    "SEK": Decimal("31.5"),
    "NOK": Decimal("29.8"),
    "DKK": Decimal("51.8"),
    "CAD": Decimal("235.4"),
    "AUD": Decimal("215.2"),
    "CNY": Decimal("45.3"),
    "INR": Decimal("3.9"),
    "RSD": Decimal("3.3"),
    "UAH": Decimal("8.0"),
    "RUB": Decimal("3.3"),
    "BRL": Decimal("55.4"),
    "MXN": Decimal("16.2"),
    "KRW": Decimal("0.23"),
    "THB": Decimal("9.6"),
    "IDR": Decimal("0.02"),
    "AED": Decimal("89.9"),
    "SAR": Decimal("88.0"),
}
DEFAULT_RATES_BASE = "HUF"

LANGUAGE_CURRENCIES = {
    "hu": "HUF",
    "en": "USD",
    "de": "EUR",
    "fr": "EUR",
    "es": "EUR",
    "it": "EUR",
    "pt": "EUR",
    "sk": "EUR",
    "hr": "EUR",
    "ro": "RON",
    "pl": "PLN",
    "cn": "CNY",
    "jp": "JPY",
    "tr": "TRY",
    "ar": "SAR",
    "ru": "RUB",
    "hi": "INR",
    "bn": "INR",
    "ur": "PKR",
    "th": "THB",
    "id": "IDR",
    "ko": "KRW",
}


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate source cannot supply rates."""


class ExchangeRateTable:
    """Rates expressed as units of ``base_currency`` per 1 unit of each currency.

    The base currency is always worth 1 and is never stored with another value.
    """

    def __init__(
        self,
        base_currency: str,
        rates: Mapping[str, Decimal | int | float | str] | None = None,
        last_updated: datetime | None = None,
    ) -> None:
        self.base_currency = normalize_currency(base_currency)
        self._rates: dict[str, Decimal] = self._validated(rates or {})
        self.last_updated = last_updated

    @classmethod
    def with_defaults(cls, base_currency: str | None = None) -> "ExchangeRateTable":
        base = normalize_currency(base_currency or get_base_currency())
        return cls(base, rebase_rates(DEFAULT_RATES, DEFAULT_RATES_BASE, base))

    @property
    def rates(self) -> dict[str, Decimal]:
        return dict(self._rates)

    def get(self, currency: str) -> Decimal | None:
        if currency == self.base_currency:
            return ONE
        return self._rates.get(currency)

    def set(self, currency: str, value: Decimal | int | float | str) -> None:
        normalized = normalize_currency(currency)
        rate = _coerce_rate(value)
        if normalized == self.base_currency and rate != ONE:
            raise ValueError("The base currency rate is fixed at 1.")
        self._rates[normalized] = rate

    def replace(
        self,
        rates: Mapping[str, Decimal | int | float | str],
        updated_at: datetime | None = None,
    ) -> None:
        # Validate everything before swapping so readers never see a partial table.
        validated = self._validated(rates)
        self._rates = validated
        self.last_updated = updated_at or datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        return {
            "baseCurrency": self.base_currency,
            "rates": {code: str(rate) for code, rate in self._rates.items()},
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
        }

    def _validated(self, rates: Mapping[str, Decimal | int | float | str]) -> dict[str, Decimal]:
        validated = {normalize_currency(code): _coerce_rate(value) for code, value in rates.items()}
        validated[self.base_currency] = ONE
        return validated


@dataclass(frozen=True)
class RateRefreshResult:
    success: bool
    message: str
    method: str


class RateSource(Protocol):
    def fetch_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        ...


@dataclass(frozen=True)
class StaticRateSource:
    """Built-in rates, rebased onto whatever base the caller asks for."""

    rates: Mapping[str, Decimal] = None
    rates_base: str = DEFAULT_RATES_BASE

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def fetch_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        return rebase_rates(self.rates, self.rates_base, base_currency)


@dataclass
class FrankfurterRateSource:
    base_url: str = field(default_factory=get_fx_api_url)
    timeout_seconds: float = 8

    def fetch_rates(self, base_currency: str) -> Mapping[str, Decimal]:
        base = normalize_currency(base_currency)
        url = f"{self.base_url}/latest?from={base}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Frankfurter API unavailable") from exc

        quoted = payload.get("rates")
        if not isinstance(quoted, dict) or not quoted:
            raise RateProviderUnavailable("Frankfurter response missing rates")

        # Frankfurter quotes units of each currency per 1 base unit; invert.
        parsed: dict[str, Decimal] = {}
        for code, value in quoted.items():
            try:
                per_base = Decimal(str(value))
            except InvalidOperation as exc:
                raise RateProviderUnavailable(f"Invalid rate for {code}") from exc
            if per_base <= 0:
                raise RateProviderUnavailable(f"Invalid rate for {code}")
            parsed[normalize_currency(code)] = ONE / per_base
        parsed[base] = ONE
        return parsed


class CurrencyConverter:
    """Converts amounts between currencies through an injected rate table."""

    def __init__(
        self,
        table: ExchangeRateTable,
        source: RateSource | None = None,
        max_age: timedelta | None = None,
    ) -> None:
        self.table = table
        self.source = source or FrankfurterRateSource()
        self.max_age = max_age if max_age is not None else timedelta(hours=get_fx_max_age_hours())
        self._unknown: set[str] = set()

    @property
    def base_currency(self) -> str:
        return self.table.base_currency

    @property
    def unknown_currencies(self) -> set[str]:
        """Codes that fell back to rate 1 since this converter was created."""
        return set(self._unknown)

    def get_rate(self, currency: str) -> Decimal:
        code = _clean_code(currency)
        rate = self.table.get(code)
        if rate is not None:
            return rate
        if code not in self._unknown:
            self._unknown.add(code)
            logger.warning(
                "unknown_currency_rate_fallback",
                currency=code,
                base_currency=self.table.base_currency,
                fallback_rate="1",
            )
        return ONE

    def set_rate(self, currency: str, value: Decimal | int | float | str) -> None:
        self.table.set(currency, value)
        self._unknown.discard(_clean_code(currency))
        logger.info("exchange_rate_set", currency=_clean_code(currency), rate=str(value))

    def convert(
        self,
        amount: Decimal | int | float | str,
        source_currency: str,
        target_currency: str,
    ) -> Decimal:
        coerced = _coerce_amount(amount)
        source = _clean_code(source_currency)
        target = _clean_code(target_currency)
        if source == target:
            return coerced
        return self._from_base(self._to_base(coerced, source), target)

    def _to_base(self, amount: Decimal, currency: str) -> Decimal:
        if currency == self.table.base_currency:
            return amount
        return amount * self.get_rate(currency)

    def _from_base(self, amount: Decimal, currency: str) -> Decimal:
        if currency == self.table.base_currency:
            return amount
        return amount / self.get_rate(currency)

    def is_stale(self, now: datetime | None = None) -> bool:
        if self.table.last_updated is None:
            return True
        last_updated = self.table.last_updated
        if last_updated.tzinfo is None:
            last_updated = last_updated.replace(tzinfo=timezone.utc)
        current = now or datetime.now(timezone.utc)
        return current - last_updated >= self.max_age

    async def refresh_rates(
        self,
        source: RateSource | None = None,
        force: bool = False,
    ) -> RateRefreshResult:
        """Replace the rate table from ``source``; never raises for source errors."""
        if not force and not self.is_stale():
            return RateRefreshResult(True, "Exchange rates are up to date.", "cached")

        provider = source or self.source
        base = self.table.base_currency
        try:
            fetched = await asyncio.to_thread(provider.fetch_rates, base)
            self.table.replace(fetched)
        except (RateProviderUnavailable, ValueError) as exc:
            logger.warning("exchange_rate_refresh_failed", base_currency=base, error=str(exc))
            return RateRefreshResult(False, f"Exchange rate refresh failed: {exc}", "api")

        self._unknown.clear()
        logger.info("exchange_rates_refreshed", base_currency=base, currencies=len(fetched))
        return RateRefreshResult(True, f"Exchange rates refreshed ({len(fetched)} currencies).", "api")


def rebase_rates(
    rates: Mapping[str, Decimal],
    rates_base: str,
    new_base: str,
) -> dict[str, Decimal]:
    """Re-express base-relative ``rates`` against ``new_base``."""
    old_base = normalize_currency(rates_base)
    target = normalize_currency(new_base)
    if old_base == target:
        return dict(rates)
    try:
        pivot = rates[target]
    except KeyError as exc:
        raise ValueError(f"Unsupported currency: {target}") from exc
    return {code: rate / pivot for code, rate in rates.items()}


def load_rate_table(store: KeyValueStore, base_currency: str | None = None) -> ExchangeRateTable:
    """Load the persisted table, layering saved rates over the defaults."""
    table = ExchangeRateTable.with_defaults(base_currency)
    saved = store.get(CURRENCY_CONFIG_KEY)
    if not saved:
        return table

    saved_base = saved.get("baseCurrency") or table.base_currency
    try:
        saved_rates = rebase_rates(
            {code: _coerce_rate(value) for code, value in (saved.get("rates") or {}).items()},
            saved_base,
            table.base_currency,
        )
    except ValueError as exc:
        logger.warning("saved_rate_table_ignored", error=str(exc))
        return table

    merged = {**table.rates, **saved_rates}
    last_updated = None
    if saved.get("lastUpdated"):
        try:
            last_updated = datetime.fromisoformat(saved["lastUpdated"])
        except ValueError:
            last_updated = None
    return ExchangeRateTable(table.base_currency, merged, last_updated=last_updated)


def save_rate_table(store: KeyValueStore, table: ExchangeRateTable) -> None:
    store.set(CURRENCY_CONFIG_KEY, table.to_dict())


def default_currency_for_language(language: str) -> str:
    return LANGUAGE_CURRENCIES.get(language.strip().lower()[:2]) or get_default_currency()


def _clean_code(value: str | None) -> str:
    return (value or "").strip().upper()


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def _coerce_rate(value: Decimal | int | float | str) -> Decimal:
    try:
        rate = _coerce_amount(value)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid exchange rate: {value!r}") from exc
    if not rate.is_finite() or rate <= 0:
        raise ValueError("Exchange rates must be positive numbers.")
    return rate
