from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
import json
import logging
from pathlib import Path
import time
from typing import Any, Callable, Mapping
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import urlopen

logger = logging.getLogger(__name__)

CACHE_KEY = "exchange_rates_cache"
CACHE_DURATION_SECONDS = 60 * 60

# Last-resort approximations used only when the live service is down.
FALLBACK_RATES: dict[tuple[str, str], Decimal] = {
    ("USD", "EUR"): Decimal("0.92"),
}


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


class RateUnavailable(RuntimeError):
    """Raised when no rate, live, cached or fallback, exists for a pair."""

    def __init__(self, source: str, target: str, reason: str | None = None) -> None:
        message = f"Exchange rate unavailable for {source} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.source = source
        self.target = target


@dataclass
class FrankfurterRateProvider:
    base_url: str = "https://api.frankfurter.app"
    timeout_seconds: float = 8

    def fetch_rate(self, source: str, target: str) -> Decimal:
        query = urlencode({"from": source, "to": target})
        url = f"{self.base_url}/latest?{query}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Frankfurter API unavailable") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Frankfurter response missing rates")
        value = rates.get(target)
        if not value:
            raise RateProviderUnavailable(f"Rate not found for {source} to {target}")
        return Decimal(str(value))


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    timestamp: float
    base_currency: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "rates": {code: str(rate) for code, rate in self.rates.items()},
            "timestamp": self.timestamp,
            "baseCurrency": self.base_currency,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CachedRates":
        rates = payload["rates"]
        if not isinstance(rates, dict):
            raise ValueError("Cached rates must be a mapping.")
        return cls(
            rates={code: Decimal(str(rate)) for code, rate in rates.items()},
            timestamp=float(payload["timestamp"]),
            base_currency=str(payload["baseCurrency"]),
        )


@dataclass
class RateCacheStore:
    """Key/value storage persisted as a single JSON document.

    Without a path the values only live in memory.
    """

    path: str | Path | None = None
    _memory: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str) -> Any | None:
        return self._read().get(key)

    def set(self, key: str, value: Any) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> None:
        data = self._read()
        if data.pop(key, None) is not None:
            self._write(data)

    def _read(self) -> dict[str, Any]:
        if self.path is None:
            return dict(self._memory)
        try:
            with open(self.path, encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable rate cache at %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict[str, Any]) -> None:
        if self.path is None:
            self._memory = data
            return
        try:
            with open(self.path, "w", encoding="utf-8") as handle:
                json.dump(data, handle)
        except OSError as exc:
            logger.warning("Could not persist rate cache to %s: %s", self.path, exc)


@dataclass(frozen=True)
class RateQuote:
    """A rate plus the error that forced a fallback, if any."""

    rate: Decimal
    error: str | None = None


@dataclass
class ExchangeRateCache:
    """Single-slot, one-hour cache in front of a live rate provider.

    Only one (from, to) pair is remembered at a time; caching a new pair
    replaces the previous entry.
    """

    provider: FrankfurterRateProvider = field(default_factory=FrankfurterRateProvider)
    store: RateCacheStore = field(default_factory=RateCacheStore)
    ttl_seconds: int = CACHE_DURATION_SECONDS
    clock: Callable[[], float] = time.time

    def get_rate(self, source_currency: str, target_currency: str) -> Decimal:
        return self.quote(source_currency, target_currency).rate

    def quote(self, source_currency: str, target_currency: str) -> RateQuote:
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        if source == target:
            return RateQuote(Decimal("1"))

        cached = self._cached_rate(source, target)
        if cached is not None:
            return RateQuote(cached)

        try:
            rate = self.provider.fetch_rate(source, target)
        except RateProviderUnavailable as exc:
            fallback = FALLBACK_RATES.get((source, target))
            if fallback is None:
                logger.error("No exchange rate for %s->%s: %s", source, target, exc)
                raise RateUnavailable(source, target, str(exc)) from exc
            logger.warning(
                "Using fallback rate %s for %s->%s: %s", fallback, source, target, exc
            )
            return RateQuote(fallback, error=str(exc))

        self._cache_rate(source, target, rate)
        return RateQuote(rate)

    def _cached_rate(self, source: str, target: str) -> Decimal | None:
        payload = self.store.get(CACHE_KEY)
        if not payload:
            return None
        try:
            cached = CachedRates.from_dict(payload)
        except (KeyError, TypeError, ValueError, ArithmeticError):
            logger.debug("Discarding malformed rate cache entry")
            return None

        now_ms = self.clock() * 1000
        if now_ms - cached.timestamp > self.ttl_seconds * 1000:
            self.store.remove(CACHE_KEY)
            return None

        if cached.base_currency == source and cached.rates.get(target):
            return cached.rates[target]
        return None

    def _cache_rate(self, source: str, target: str, rate: Decimal) -> None:
        entry = CachedRates(
            rates={target: rate},
            timestamp=self.clock() * 1000,
            base_currency=source,
        )
        self.store.set(CACHE_KEY, entry.to_dict())


def apply_rate(amount: Decimal | int | float | str, rate: Decimal | None) -> Decimal:
    coerced_amount = _coerce_amount(amount)
    if rate is None:
        return coerced_amount
    return coerced_amount * rate


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
