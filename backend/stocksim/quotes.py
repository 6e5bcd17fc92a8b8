"""Stock quote lookup.

Prices come from a fetch-and-fallback chain: an admin-set artificial price,
a short-lived in-process cache, the Alpha Vantage quote API, and finally a
simulated price drifting from a known reference price.
"""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

import requests
from sqlalchemy import or_, select
from sqlalchemy.orm import Session
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .models import ArtificialStockPrice
from .pricing import CENT, round_cents, simulated_price, to_decimal

logger = logging.getLogger(__name__)

ALPHA_VANTAGE_API_KEY = os.environ.get("ALPHA_VANTAGE_API_KEY", "demo")
ALPHA_VANTAGE_BASE_URL = os.environ.get("ALPHA_VANTAGE_BASE_URL", "https://www.alphavantage.co/query")
QUOTE_CACHE_TTL_SECONDS = max(0, int(os.environ.get("QUOTE_CACHE_TTL_SECONDS", "60")))
QUOTE_REQUEST_TIMEOUT = float(os.environ.get("QUOTE_REQUEST_TIMEOUT", "10"))

VALID_SYMBOL = re.compile(r"^[A-Z0-9.\-]{1,12}$")

SOURCE_ARTIFICIAL = "ARTIFICIAL"
SOURCE_CACHE = "CACHE"
SOURCE_LIVE = "LIVE"
SOURCE_SIMULATED = "SIMULATED"

# Offline universe: search fallback and reference prices for simulated quotes.
REFERENCE_CATALOG: list[dict[str, object]] = [
    {"symbol": "AAPL", "name": "Apple Inc.", "price": "175.00"},
    {"symbol": "MSFT", "name": "Microsoft Corporation", "price": "410.00"},
    {"symbol": "GOOGL", "name": "Alphabet Inc.", "price": "160.00"},
    {"symbol": "AMZN", "name": "Amazon.com Inc.", "price": "180.00"},
    {"symbol": "META", "name": "Meta Platforms Inc.", "price": "480.00"},
    {"symbol": "NVDA", "name": "NVIDIA Corporation", "price": "120.00"},
    {"symbol": "TSLA", "name": "Tesla Inc.", "price": "220.00"},
    {"symbol": "NFLX", "name": "Netflix Inc.", "price": "620.00"},
    {"symbol": "AMD", "name": "Advanced Micro Devices Inc.", "price": "160.00"},
    {"symbol": "INTC", "name": "Intel Corporation", "price": "32.00"},
    {"symbol": "IBM", "name": "International Business Machines Corp.", "price": "185.00"},
    {"symbol": "ORCL", "name": "Oracle Corporation", "price": "125.00"},
    {"symbol": "CRM", "name": "Salesforce Inc.", "price": "270.00"},
    {"symbol": "ADBE", "name": "Adobe Inc.", "price": "510.00"},
    {"symbol": "JPM", "name": "JPMorgan Chase & Co.", "price": "195.00"},
    {"symbol": "BAC", "name": "Bank of America Corp.", "price": "38.00"},
    {"symbol": "V", "name": "Visa Inc.", "price": "275.00"},
    {"symbol": "MA", "name": "Mastercard Inc.", "price": "460.00"},
    {"symbol": "WMT", "name": "Walmart Inc.", "price": "65.00"},
    {"symbol": "KO", "name": "The Coca-Cola Company", "price": "62.00"},
    {"symbol": "PEP", "name": "PepsiCo Inc.", "price": "170.00"},
    {"symbol": "DIS", "name": "The Walt Disney Company", "price": "105.00"},
    {"symbol": "NKE", "name": "Nike Inc.", "price": "95.00"},
    {"symbol": "MCD", "name": "McDonald's Corporation", "price": "270.00"},
    {"symbol": "XOM", "name": "Exxon Mobil Corporation", "price": "115.00"},
    {"symbol": "PFE", "name": "Pfizer Inc.", "price": "28.00"},
    {"symbol": "JNJ", "name": "Johnson & Johnson", "price": "155.00"},
    {"symbol": "BA", "name": "The Boeing Company", "price": "185.00"},
    {"symbol": "UBER", "name": "Uber Technologies Inc.", "price": "70.00"},
    {"symbol": "SPY", "name": "SPDR S&P 500 ETF Trust", "price": "520.00"},
]
CATALOG_BY_SYMBOL = {str(row["symbol"]): row for row in REFERENCE_CATALOG}


class QuoteError(Exception):
    """Base class for quote lookup failures."""

    pass


class QuoteNetworkError(QuoteError):
    """Raised when the quote provider cannot be reached (retryable)."""

    pass


class QuoteServerError(QuoteError):
    """Raised when the quote provider answers with a 5xx status (retryable)."""

    pass


class QuoteRateLimitError(QuoteError):
    """Raised when the quote provider throttles the API key."""

    pass


class QuoteNotFoundError(QuoteError):
    """Raised when the provider has no data for the requested symbol."""

    pass


class QuoteUnavailableError(QuoteError):
    """Raised when no link of the price chain produced a price."""

    pass


@dataclass
class Quote:
    symbol: str
    name: str
    price: Decimal
    change: Decimal
    change_percent: Decimal
    source: str


@dataclass
class SearchMatch:
    symbol: str
    name: str
    type: str | None = None
    region: str | None = None
    currency: str | None = None


def normalize_symbol(raw_symbol: str | None) -> str | None:
    symbol = (raw_symbol or "").strip().upper()
    if not symbol or not VALID_SYMBOL.match(symbol):
        return None
    return symbol


def _parse_decimal(value: Any) -> Decimal | None:
    raw = str(value if value is not None else "").strip().rstrip("%")
    if not raw:
        return None
    try:
        return Decimal(raw)
    except InvalidOperation:
        return None


class AlphaVantageClient:
    """Thin client for the Alpha Vantage query API.

    Transport failures and 5xx responses are retried with exponential backoff.
    Alpha Vantage reports most failures with HTTP 200 and a marker key in the
    body, so payloads are inspected before use.
    """

    def __init__(
        self,
        api_key: str = ALPHA_VANTAGE_API_KEY,
        base_url: str = ALPHA_VANTAGE_BASE_URL,
        timeout: float = QUOTE_REQUEST_TIMEOUT,
        max_attempts: int = 3,
        backoff_multiplier: float = 0.5,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_multiplier = backoff_multiplier
        self.session = requests.Session()

    def search(self, keywords: str) -> list[SearchMatch]:
        payload = self._query({"function": "SYMBOL_SEARCH", "keywords": keywords})
        matches = payload.get("bestMatches") or []
        results: list[SearchMatch] = []
        for match in matches:
            symbol = normalize_symbol(match.get("1. symbol"))
            if not symbol:
                continue
            results.append(
                SearchMatch(
                    symbol=symbol,
                    name=str(match.get("2. name") or symbol),
                    type=match.get("3. type"),
                    region=match.get("4. region"),
                    currency=match.get("8. currency"),
                )
            )
        return results

    def global_quote(self, symbol: str) -> dict[str, Decimal | str]:
        payload = self._query({"function": "GLOBAL_QUOTE", "symbol": symbol})
        global_quote = payload.get("Global Quote")
        if not global_quote:
            raise QuoteNotFoundError(f"No quote data available for {symbol}")

        price = _parse_decimal(global_quote.get("05. price"))
        if price is None or price <= 0:
            raise QuoteNotFoundError(f"No quote data available for {symbol}")

        return {
            "symbol": normalize_symbol(global_quote.get("01. symbol")) or symbol,
            "price": price,
            "change": _parse_decimal(global_quote.get("09. change")) or Decimal("0"),
            "change_percent": _parse_decimal(global_quote.get("10. change percent")) or Decimal("0"),
        }

    def _query(self, params: dict[str, str]) -> dict[str, Any]:
        retrying = Retrying(
            retry=retry_if_exception_type((QuoteNetworkError, QuoteServerError)),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=8),
            reraise=True,
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )
        payload = retrying(self._query_once, params)

        if payload.get("Error Message"):
            raise QuoteNotFoundError(str(payload["Error Message"]))
        if payload.get("Note") or payload.get("Information"):
            raise QuoteRateLimitError(str(payload.get("Note") or payload.get("Information")))
        return payload

    def _query_once(self, params: dict[str, str]) -> dict[str, Any]:
        function = params.get("function", "?")
        try:
            response = self.session.get(
                self.base_url,
                params={**params, "apikey": self.api_key},
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise QuoteNetworkError(f"Quote request {function} timed out after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            raise QuoteNetworkError(f"Quote request {function} failed: {e}") from e

        if response.status_code == 429:
            raise QuoteRateLimitError("Quote provider rate limit reached")
        if response.status_code >= 500:
            raise QuoteServerError(f"Quote provider error {response.status_code} for {function}")
        if response.status_code >= 400:
            raise QuoteNotFoundError(f"Quote provider rejected {function}: {response.status_code}")

        try:
            payload = response.json()
        except ValueError as e:
            raise QuoteServerError(f"Invalid JSON from quote provider for {function}") from e
        if not isinstance(payload, dict):
            raise QuoteServerError(f"Unexpected payload from quote provider for {function}")
        return payload


class QuoteCache:
    """Per-symbol quote cache with a fixed time-to-live."""

    def __init__(self, ttl_seconds: int = QUOTE_CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[str, tuple[float, Quote]] = {}
        self._lock = threading.Lock()

    def get(self, symbol: str) -> Quote | None:
        with self._lock:
            entry = self._entries.get(symbol)
            if entry is None:
                return None
            stored_at, quote = entry
            if self.clock() - stored_at > self.ttl_seconds:
                del self._entries[symbol]
                return None
            return quote

    def put(self, quote: Quote) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[quote.symbol] = (self.clock(), quote)

    def invalidate(self, symbol: str) -> None:
        with self._lock:
            self._entries.pop(symbol, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def get_active_artificial_price(db: Session, symbol: str) -> ArtificialStockPrice | None:
    return db.execute(
        select(ArtificialStockPrice).where(
            ArtificialStockPrice.symbol == symbol,
            ArtificialStockPrice.is_active.is_(True),
        )
    ).scalar_one_or_none()


class PriceService:
    def __init__(
        self,
        client: AlphaVantageClient | None = None,
        cache: QuoteCache | None = None,
        rng: Callable[[], float] | None = None,
    ):
        self.client = client or AlphaVantageClient()
        self.cache = cache or QuoteCache()
        self.rng = rng

    def resolve(
        self,
        db: Session,
        symbol: str,
        reference_price: Decimal | None = None,
        name: str | None = None,
    ) -> Quote:
        """Resolve the current price of `symbol`, walking the fallback chain."""
        artificial = get_active_artificial_price(db, symbol)
        if artificial is not None:
            return Quote(
                symbol=symbol,
                name=str(artificial.name or name or symbol),
                price=round_cents(to_decimal(artificial.artificial_price)),
                change=Decimal("0"),
                change_percent=Decimal("0"),
                source=SOURCE_ARTIFICIAL,
            )

        cached = self.cache.get(symbol)
        if cached is not None:
            return Quote(
                symbol=cached.symbol,
                name=name or cached.name,
                price=cached.price,
                change=cached.change,
                change_percent=cached.change_percent,
                source=SOURCE_CACHE,
            )

        catalog_row = CATALOG_BY_SYMBOL.get(symbol)
        display_name = name or (str(catalog_row["name"]) if catalog_row else symbol)

        try:
            live = self.client.global_quote(symbol)
            live_price = round_cents(Decimal(live["price"]))
            if live_price < CENT:
                raise QuoteNotFoundError(f"Quote for {symbol} is below one cent")
        except QuoteError as e:
            logger.info("Live quote for %s unavailable (%s), trying simulated price", symbol, e)
        else:
            quote = Quote(
                symbol=symbol,
                name=display_name,
                price=live_price,
                change=Decimal(live["change"]),
                change_percent=Decimal(live["change_percent"]),
                source=SOURCE_LIVE,
            )
            self.cache.put(quote)
            return quote

        reference = reference_price
        if reference is None and catalog_row is not None:
            reference = Decimal(str(catalog_row["price"]))
        if reference is None or reference <= 0:
            raise QuoteUnavailableError(f"No price available for {symbol}")

        price = simulated_price(reference, self.rng) if self.rng else simulated_price(reference)
        logger.info("Generated simulated price for %s: %s (reference %s)", symbol, price, reference)
        change = round_cents(price - reference)
        return Quote(
            symbol=symbol,
            name=display_name,
            price=price,
            change=change,
            change_percent=round_cents(change / reference * Decimal(100)),
            source=SOURCE_SIMULATED,
        )

    def search(self, db: Session, query: str, limit: int = 10) -> list[SearchMatch]:
        needle = " ".join(query.strip().split())
        if not needle:
            return []

        like_pattern = f"%{needle}%"
        artificial_rows = db.execute(
            select(ArtificialStockPrice)
            .where(
                ArtificialStockPrice.is_active.is_(True),
                or_(
                    ArtificialStockPrice.symbol.ilike(like_pattern),
                    ArtificialStockPrice.name.ilike(like_pattern),
                ),
            )
            .order_by(ArtificialStockPrice.symbol.asc())
        ).scalars().all()

        results: list[SearchMatch] = [
            SearchMatch(symbol=str(row.symbol), name=str(row.name), type="Equity", region="Simulated", currency="USD")
            for row in artificial_rows
        ]
        seen = {match.symbol for match in results}

        try:
            provider_matches = self.client.search(needle)
        except QuoteRateLimitError:
            catalog_matches = self._catalog_search(needle)
            if not results and not catalog_matches:
                raise
            provider_matches = catalog_matches
        except QuoteError as e:
            logger.warning("Symbol search for %r failed (%s), using reference catalog", needle, e)
            provider_matches = self._catalog_search(needle)

        for match in provider_matches:
            if match.symbol in seen:
                continue
            seen.add(match.symbol)
            results.append(match)
        return results[:limit]

    def _catalog_search(self, needle: str) -> list[SearchMatch]:
        lowered = needle.lower()
        return [
            SearchMatch(
                symbol=str(row["symbol"]),
                name=str(row["name"]),
                type="Equity",
                region="United States",
                currency="USD",
            )
            for row in REFERENCE_CATALOG
            if lowered in str(row["symbol"]).lower() or lowered in str(row["name"]).lower()
        ]


price_service = PriceService()


def get_price_service() -> PriceService:
    return price_service
