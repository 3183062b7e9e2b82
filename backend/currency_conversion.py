from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
import json
import logging
import threading
import time
from typing import Callable, Mapping
from urllib.error import URLError
from urllib.parse import urlencode
from urllib.request import urlopen

from backend.errors import UpstreamUnavailable, ValidationError

logger = logging.getLogger(__name__)

ONE = Decimal("1")
DEFAULT_CACHE_TTL_SECONDS = 60 * 60

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("147.50"),
    "CAD": Decimal("1.34"),
    "AUD": Decimal("1.52"),
    "HKD": Decimal("7.80"),
    "CHF": Decimal("0.88"),
    "SEK": Decimal("10.45"),
}


class RateProviderUnavailable(UpstreamUnavailable):
    """Raised when a rate provider cannot fetch live rates."""


@dataclass(frozen=True)
class ExchangeRate:
    from_currency: str
    to_currency: str
    rate: Decimal
    as_of: str | None = None


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    ``pair_rates`` maps ``(from, to)`` to the multiplier applied to a
    ``from`` amount. ``usd_rates`` are expressed as currency per 1 USD and are
    used to derive cross rates for pairs not listed explicitly. With neither
    given, ``DEFAULT_RATES`` is used.
    """

    pair_rates: Mapping[tuple[str, str], Decimal] = None
    usd_rates: Mapping[str, Decimal] = None
    as_of: str | None = None

    def __post_init__(self) -> None:
        pairs = {
            (normalize_currency(source), normalize_currency(target)): _coerce_amount(rate)
            for (source, target), rate in dict(self.pair_rates or {}).items()
        }
        usd_rates = self.usd_rates
        if usd_rates is None and not pairs:
            usd_rates = DEFAULT_RATES
        object.__setattr__(self, "pair_rates", pairs)
        object.__setattr__(
            self,
            "usd_rates",
            {normalize_currency(code): _coerce_amount(rate) for code, rate in dict(usd_rates or {}).items()},
        )

    def fetch_rate(self, from_currency: str, to_currency: str) -> ExchangeRate:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        rate = self.pair_rates.get((source, target))
        if rate is None:
            inverse = self.pair_rates.get((target, source))
            if inverse:
                rate = ONE / inverse
        if rate is None and source in self.usd_rates and target in self.usd_rates:
            rate = self.usd_rates[target] / self.usd_rates[source]
        if rate is None:
            raise RateProviderUnavailable(f"No static rate for {source}->{target}")
        return ExchangeRate(
            from_currency=source,
            to_currency=target,
            rate=rate,
            as_of=self.as_of or date.today().isoformat(),
        )


@dataclass(frozen=True)
class FrankfurterRateProvider:
    base_url: str = "https://api.frankfurter.dev/v1"
    timeout_seconds: float = 10

    def fetch_rate(self, from_currency: str, to_currency: str) -> ExchangeRate:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        query = urlencode({"base": source, "symbols": target})
        url = f"{self.base_url.rstrip('/')}/latest?{query}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (URLError, TimeoutError, OSError, ValueError) as exc:
            raise RateProviderUnavailable("Frankfurter API unavailable") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict) or target not in rates:
            raise RateProviderUnavailable(f"Frankfurter response missing rate for {target}")
        try:
            rate = Decimal(str(rates[target]))
        except InvalidOperation as exc:
            raise RateProviderUnavailable(f"Frankfurter returned a malformed rate for {target}") from exc
        if not rate.is_finite() or rate <= 0:
            raise RateProviderUnavailable(f"Frankfurter returned an unusable rate for {target}")
        return ExchangeRate(from_currency=source, to_currency=target, rate=rate, as_of=payload.get("date"))


RateProvider = StaticRateProvider | FrankfurterRateProvider


@dataclass(frozen=True)
class CachedRate:
    rate: Decimal
    as_of: str | None
    fetched_at: float


class RateCache:
    """Process-wide currency-pair rates with lazy time-based staleness.

    Entries are never evicted; freshness is decided on lookup against
    ``ttl_seconds``. The map is guarded by a lock so concurrent inserts and
    reads never observe a half-written entry.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, str], CachedRate] = {}
        self._lock = threading.Lock()

    def get(self, from_currency: str, to_currency: str) -> CachedRate | None:
        with self._lock:
            return self._entries.get((from_currency, to_currency))

    def put(self, from_currency: str, to_currency: str, rate: Decimal, as_of: str | None = None) -> CachedRate:
        entry = CachedRate(rate=rate, as_of=as_of, fetched_at=self._clock())
        with self._lock:
            self._entries[(from_currency, to_currency)] = entry
        return entry

    def is_fresh(self, entry: CachedRate) -> bool:
        return self._clock() < entry.fetched_at + self.ttl_seconds

    def age(self, entry: CachedRate) -> float:
        return self._clock() - entry.fetched_at

    def invalidate(self, from_currency: str, to_currency: str) -> None:
        with self._lock:
            self._entries.pop((from_currency, to_currency), None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CurrencyNormalizer:
    def __init__(self, provider: RateProvider, cache: RateCache) -> None:
        self.provider = provider
        self.cache = cache

    def get_exchange_rate(self, from_currency: str, to_currency: str) -> ExchangeRate:
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        if source == target:
            return ExchangeRate(source, target, ONE, date.today().isoformat())

        cached = self.cache.get(source, target)
        if cached is not None and self.cache.is_fresh(cached):
            return ExchangeRate(source, target, cached.rate, cached.as_of)

        try:
            fetched = self.provider.fetch_rate(source, target)
        except RateProviderUnavailable:
            if cached is None:
                logger.error("No rate available for %s->%s and cache is cold", source, target)
                raise
            logger.warning(
                "Degraded FX: serving stale %s->%s rate %s (fetched %.0fs ago)",
                source,
                target,
                cached.rate,
                self.cache.age(cached),
            )
            return ExchangeRate(source, target, cached.rate, cached.as_of)

        self.cache.put(source, target, fetched.rate, fetched.as_of)
        logger.debug("Fetched %s->%s rate %s as of %s", source, target, fetched.rate, fetched.as_of)
        return ExchangeRate(source, target, fetched.rate, fetched.as_of)

    def normalize(
        self,
        amount: Decimal | int | float | str,
        from_currency: str,
        to_currency: str,
    ) -> tuple[Decimal, Decimal]:
        """Convert ``amount`` and return ``(normalized_amount, rate_used)``."""
        coerced_amount = _coerce_amount(amount)
        if normalize_currency(from_currency) == normalize_currency(to_currency):
            return coerced_amount, ONE
        exchange_rate = self.get_exchange_rate(from_currency, to_currency)
        return coerced_amount * exchange_rate.rate, exchange_rate.rate


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValidationError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
