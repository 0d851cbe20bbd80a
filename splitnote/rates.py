import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_FLOOR, Decimal
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import httpx

from .config import (
    BASE_UNITS_PER_WHOLE,
    CURRENCY_NAMES,
    CURRENCY_SYMBOLS,
    SUPPORTED_CURRENCIES,
    settings,
    utc_now,
)
from .errors import AllRateSourcesUnavailable, UnsupportedCurrency
from .models import ExchangeRate


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Amount = Union[Decimal, int, str]

CONVERSION_URL = "https://api.exchangerate-api.com/v4/latest/USD"

# USD -> X, used when the conversion source is unreachable
FALLBACK_CONVERSION: Dict[str, Decimal] = {
    "USD": Decimal("1.0"),
    "EUR": Decimal("0.85"),
    "AUD": Decimal("1.5"),
    "HKD": Decimal("7.8"),
    "SGD": Decimal("1.35"),
}


@dataclass(frozen=True)
class PriceSource:
    name: str
    url: str
    parse: Callable[[Dict[str, Any]], Decimal]


def _parse_coingecko(data: Dict[str, Any]) -> Decimal:
    return Decimal(str(data["bitcoin"]["usd"]))


def _parse_coindesk(data: Dict[str, Any]) -> Decimal:
    return Decimal(str(data["bpi"]["USD"]["rate"]).replace(",", ""))


DEFAULT_SOURCES: List[PriceSource] = [
    PriceSource(
        name="CoinGecko",
        url="https://api.coingecko.com/api/v3/simple/price?ids=bitcoin&vs_currencies=usd",
        parse=_parse_coingecko,
    ),
    PriceSource(
        name="CoinDesk",
        url="https://api.coindesk.com/v1/bpi/currentprice.json",
        parse=_parse_coindesk,
    ),
]


@dataclass
class _CacheEntry:
    value: Any
    expires_at: datetime


def convert_to_units(amount: Amount, rate: Union[ExchangeRate, int]) -> int:
    units_per_fiat = rate.rate if isinstance(rate, ExchangeRate) else rate
    exact = Decimal(str(amount)) * Decimal(units_per_fiat)
    return int(exact.to_integral_value(rounding=ROUND_FLOOR))


def manual_rate(currency: str, units_per_fiat: int, clock: Clock = utc_now) -> ExchangeRate:
    return ExchangeRate(
        currency=currency.upper(),
        rate=units_per_fiat,
        source="Manual Entry",
        timestamp=clock(),
    )


def currency_symbol(currency: str) -> str:
    return CURRENCY_SYMBOLS.get(currency.upper(), currency.upper())


def currency_name(currency: str) -> str:
    return CURRENCY_NAMES.get(currency.upper(), currency.upper())


class _HttpFetcher:
    def __init__(self, client: Optional[httpx.AsyncClient], timeout: float) -> None:
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def _get_json(self, url: str) -> Dict[str, Any]:
        response = await self._get_client().get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class CurrencyConverter(_HttpFetcher):
    """USD -> fiat multiplier, cached per currency with a static fallback table."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        clock: Clock = utc_now,
        ttl_seconds: int = settings.rate_cache_ttl_seconds,
        url: str = CONVERSION_URL,
        fallback: Optional[Dict[str, Decimal]] = None,
        timeout: float = settings.rate_http_timeout_seconds,
    ) -> None:
        super().__init__(client, timeout)
        self.clock = clock
        self.ttl = timedelta(seconds=ttl_seconds)
        self.url = url
        self.fallback = dict(fallback or FALLBACK_CONVERSION)
        self._cache: Dict[str, _CacheEntry] = {}

    async def multiplier(self, currency: str) -> Decimal:
        code = currency.upper()
        if code == "USD":
            return Decimal("1")
        cached = self._cache.get(code)
        if cached and self.clock() < cached.expires_at:
            return cached.value

        try:
            data = await self._get_json(self.url)
            rates = {key: Decimal(str(value)) for key, value in data["rates"].items()}
        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("Currency conversion source unreachable, using fallback: %s", exc)
            rates = self.fallback

        value = rates.get(code)
        if value is None or value <= 0:
            raise UnsupportedCurrency(f"No conversion rate for {code}")
        self._cache[code] = _CacheEntry(value=value, expires_at=self.clock() + self.ttl)
        return value


class RateProvider(_HttpFetcher):
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        sources: Optional[Sequence[PriceSource]] = None,
        converter: Optional[CurrencyConverter] = None,
        clock: Clock = utc_now,
        ttl_seconds: int = settings.rate_cache_ttl_seconds,
        supported: Sequence[str] = SUPPORTED_CURRENCIES,
        timeout: float = settings.rate_http_timeout_seconds,
    ) -> None:
        super().__init__(client, timeout)
        self.sources = list(sources if sources is not None else DEFAULT_SOURCES)
        self.converter = converter or CurrencyConverter(
            client=client, clock=clock, ttl_seconds=ttl_seconds, timeout=timeout
        )
        self.clock = clock
        self.ttl = timedelta(seconds=ttl_seconds)
        self.supported = tuple(code.upper() for code in supported)
        self._cache: Dict[str, _CacheEntry] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def cached(self, currency: str) -> Optional[ExchangeRate]:
        entry = self._cache.get(currency.upper())
        if entry and self.clock() < entry.expires_at:
            return entry.value
        return None

    def invalidate(self, currency: Optional[str] = None) -> None:
        if currency is None:
            self._cache.clear()
        else:
            self._cache.pop(currency.upper(), None)

    async def get_rate(self, currency: str) -> ExchangeRate:
        code = currency.upper()
        hit = self.cached(code)
        if hit is not None:
            return hit
        if code not in self.supported:
            raise UnsupportedCurrency(
                f"Currency {currency} is not supported. "
                f"Supported currencies: {', '.join(self.supported)}"
            )

        lock = self._locks.setdefault(code, asyncio.Lock())
        async with lock:
            # a concurrent caller may have refreshed while we waited
            hit = self.cached(code)
            if hit is not None:
                return hit
            rate = await self._refresh(code)
            self._cache[code] = _CacheEntry(value=rate, expires_at=self.clock() + self.ttl)
            logger.info("Cached %s rate %s units/unit from %s", code, rate.rate, rate.source)
            return rate

    async def _refresh(self, code: str) -> ExchangeRate:
        results = await asyncio.gather(
            *(self._fetch_price(source) for source in self.sources),
            return_exceptions=True,
        )
        last_error: Optional[BaseException] = None
        for source, result in zip(self.sources, results):
            if isinstance(result, BaseException):
                logger.warning("Rate source %s failed: %s", source.name, result)
                last_error = result
                continue
            price = result
            if code != "USD":
                price = price * await self.converter.multiplier(code)
            if price <= 0:
                last_error = ValueError(f"{source.name} returned non-positive price {price}")
                logger.warning("Rate source %s failed: %s", source.name, last_error)
                continue
            units = int((Decimal(BASE_UNITS_PER_WHOLE) / price).to_integral_value(ROUND_FLOOR))
            return ExchangeRate(
                currency=code, rate=units, source=source.name, timestamp=self.clock()
            )

        raise AllRateSourcesUnavailable(
            f"All rate sources failed. Last error: {last_error}", last_error
        )

    async def _fetch_price(self, source: PriceSource) -> Decimal:
        data = await self._get_json(source.url)
        return source.parse(data)

    async def aclose(self) -> None:
        await self.converter.aclose()
        await super().aclose()
