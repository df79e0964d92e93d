"""
Price Oracle - Best-Effort Instrument Pricing
PaperTrade Accounting Engine

Resolves a usable price for an instrument by walking a fixed ladder:
1. Live quote book (by token, then symbol hint, then name hint)
2. Exchange snapshot (async fetch, short TTL cache, single-flight per token)
3. Previous close from the instrument master
4. Simulated fallback (paper mode only)

The first tier yielding a positive finite price wins. When every tier is
exhausted get_best_price() raises MARKET_PRICE_UNAVAILABLE.
"""

import asyncio
import time as _time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

from loguru import logger

from papertrade.core.errors import ErrorCode, TradingError
from papertrade.db.models import Instrument
from papertrade.services.market_calendar import Clock, now_ist


class PriceSource(str, Enum):
    LIVE = "LIVE"
    SNAPSHOT = "SNAPSHOT"
    CLOSE = "CLOSE"
    SIMULATED = "SIMULATED"


@dataclass
class MarketQuote:
    """Last known market state for one instrument."""
    price: Decimal
    last_updated: Optional[datetime] = None
    volume: Optional[int] = None
    open_interest: Optional[int] = None
    source: PriceSource = PriceSource.LIVE


def to_price(value: Any) -> Optional[Decimal]:
    """Coerce to a positive finite Decimal, else None."""
    if value is None:
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not price.is_finite() or price <= 0:
        return None
    return price


class LiveQuoteSource(Protocol):
    def get_quote(self, key: str) -> Optional[MarketQuote]:
        ...


SnapshotFetcher = Callable[[str], Awaitable[Optional[MarketQuote]]]


# =============================================================================
# Live quote book
# =============================================================================

class QuoteBook:
    """
    In-memory last-tick cache fed by the market data feed.

    Ticks are keyed by token and, when present, by symbol so that symbol and
    name hints resolve too.
    """

    def __init__(self, clock: Clock = now_ist):
        self._clock = clock
        self._quotes: Dict[str, MarketQuote] = {}

    def on_tick(self, tick_data: Dict[str, Any]) -> None:
        """Handle an incoming tick dict (token, symbol, last_price, volume, oi, timestamp)."""
        price = to_price(tick_data.get("last_price"))
        if price is None:
            return
        quote = MarketQuote(
            price=price,
            last_updated=tick_data.get("timestamp") or self._clock(),
            volume=tick_data.get("volume"),
            open_interest=tick_data.get("oi"),
            source=PriceSource.LIVE,
        )
        for key in (tick_data.get("token"), tick_data.get("symbol")):
            if key:
                self._quotes[key] = quote

    def update(
        self,
        key: str,
        price: Any,
        volume: Optional[int] = None,
        open_interest: Optional[int] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """Manually update the quote for a key."""
        self.on_tick({
            "token": key,
            "last_price": price,
            "volume": volume,
            "oi": open_interest,
            "timestamp": timestamp,
        })

    def get_quote(self, key: str) -> Optional[MarketQuote]:
        return self._quotes.get(key)

    def clear(self) -> None:
        self._quotes.clear()


class SimulatedPriceSource:
    """Deterministic fallback prices for paper trading without a feed."""

    def __init__(self, prices: Optional[Dict[str, Any]] = None, default: Any = None):
        self._prices = {k: to_price(v) for k, v in (prices or {}).items()}
        self._default = to_price(default)

    def set_price(self, key: str, price: Any) -> None:
        self._prices[key] = to_price(price)

    def get_price(self, key: str) -> Optional[Decimal]:
        return self._prices.get(key) or self._default


# =============================================================================
# Oracle
# =============================================================================

class PriceOracle:
    """Walks the price ladder for an instrument token."""

    def __init__(
        self,
        live_source: Optional[LiveQuoteSource] = None,
        snapshot_fetcher: Optional[SnapshotFetcher] = None,
        simulated_source: Optional[SimulatedPriceSource] = None,
        instrument_lookup: Optional[Callable[[str], Optional[Instrument]]] = None,
        snapshot_ttl_seconds: float = 1.5,
    ):
        self.live_source = live_source
        self.snapshot_fetcher = snapshot_fetcher
        self.simulated_source = simulated_source
        self.instrument_lookup = instrument_lookup
        self.snapshot_ttl_seconds = snapshot_ttl_seconds

        self._snapshot_cache: Dict[str, Tuple[float, Optional[MarketQuote]]] = {}
        self._inflight: Dict[str, asyncio.Task] = {}

    # =========================================================================
    # Tiers
    # =========================================================================

    def _live_quote(self, *keys: Optional[str]) -> Optional[MarketQuote]:
        if self.live_source is None:
            return None
        for key in keys:
            if not key:
                continue
            quote = self.live_source.get_quote(key)
            if quote is not None and to_price(quote.price) is not None:
                return quote
        return None

    async def _snapshot_quote(self, token: str) -> Optional[MarketQuote]:
        """Fetch a snapshot, sharing one request per token and caching it briefly."""
        if self.snapshot_fetcher is None:
            return None

        cached = self._snapshot_cache.get(token)
        now = _time.monotonic()
        if cached is not None and cached[0] > now:
            return cached[1]

        task = self._inflight.get(token)
        if task is None:
            task = asyncio.create_task(self.snapshot_fetcher(token))
            self._inflight[token] = task
            task.add_done_callback(lambda _t, key=token: self._inflight.pop(key, None))

        try:
            quote = await task
        except Exception as e:
            logger.warning(f"Snapshot fetch failed for {token}: {e}")
            return None

        self._snapshot_cache[token] = (_time.monotonic() + self.snapshot_ttl_seconds, quote)
        if quote is not None and to_price(quote.price) is None:
            return None
        if quote is not None:
            quote.source = PriceSource.SNAPSHOT
        return quote

    def _close_price(self, token: str) -> Optional[Decimal]:
        if self.instrument_lookup is None:
            return None
        instrument = self.instrument_lookup(token)
        if instrument is None:
            return None
        return to_price(instrument.last_price)

    # =========================================================================
    # Public API
    # =========================================================================

    async def get_quote(
        self,
        token: str,
        symbol_hint: Optional[str] = None,
        name_hint: Optional[str] = None,
    ) -> Optional[MarketQuote]:
        """Market quote from live or snapshot tiers only; None when neither has one."""
        quote = self._live_quote(token, symbol_hint, name_hint)
        if quote is not None:
            return quote
        return await self._snapshot_quote(token)

    async def get_best_price(
        self,
        token: str,
        symbol_hint: Optional[str] = None,
        name_hint: Optional[str] = None,
    ) -> Decimal:
        """
        Best available price for a token.

        Raises:
            TradingError: MARKET_PRICE_UNAVAILABLE when every tier is exhausted
        """
        quote = await self.get_quote(token, symbol_hint, name_hint)
        if quote is not None:
            price = to_price(quote.price)
            if price is not None:
                return price

        close = self._close_price(token)
        if close is not None:
            return close

        if self.simulated_source is not None:
            for key in (token, symbol_hint, name_hint):
                if not key:
                    continue
                simulated = self.simulated_source.get_price(key)
                if simulated is not None:
                    logger.bind(instrument_token=token).warning(
                        f"Using simulated price {simulated} for {token}"
                    )
                    return simulated

        logger.bind(instrument_token=token).error("Price oracle exhausted")
        raise TradingError(
            ErrorCode.MARKET_PRICE_UNAVAILABLE,
            f"No market price available for {symbol_hint or token}",
            {"instrument_token": token},
        )

    async def get_instrument_price(self, instrument: Instrument) -> Decimal:
        # A derivative's name is its underlying, never a valid price key for it
        name_hint = None if instrument.is_derivative else instrument.name
        return await self.get_best_price(
            instrument.instrument_token,
            symbol_hint=instrument.trading_symbol,
            name_hint=name_hint,
        )

    def invalidate(self, token: Optional[str] = None) -> None:
        """Drop cached snapshots for one token or all."""
        if token is None:
            self._snapshot_cache.clear()
        else:
            self._snapshot_cache.pop(token, None)
