"""
Instrument Catalog - In-Memory Instrument Index
PaperTrade Accounting Engine

Loads the instrument master into memory and serves the order path:
- O(1) lookup by token (the only safe identity)
- Lookup by trading symbol (symbols may repeat across expiries/segments)
- Prefix search over a sorted symbol array (binary lower bound, then scan)
- Futures/options grouped by normalized underlying, pre-sorted by
  (expiry, strike, symbol)

Lifecycle:
    catalog = InstrumentCatalog(uow_factory)
    await catalog.initialize()      # boot
    catalog.is_ready()
    await catalog.refresh()         # after an instrument sync
    await catalog.shutdown()

Concurrent cold-start callers share one in-flight load. A failed load is
cached and re-raised by ensure_initialized() until refresh() succeeds.
"""

import asyncio
from bisect import bisect_left
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from loguru import logger

from papertrade.core.errors import ErrorCode, TradingError
from papertrade.db.models import Instrument, InstrumentType
from papertrade.db.unit_of_work import UnitOfWorkFactory
from papertrade.services.market_calendar import Clock, ensure_aware, now_ist, to_utc
from papertrade.services.trading_universe import normalize_underlying


_FAR_FUTURE = datetime.max.replace(tzinfo=None)


def _derivative_sort_key(instrument: Instrument):
    expiry = to_utc(instrument.expiry).replace(tzinfo=None) if instrument.expiry else _FAR_FUTURE
    strike = Decimal(instrument.strike) if instrument.strike is not None else Decimal("0")
    return (expiry, strike, instrument.trading_symbol)


@dataclass
class DerivativeGroup:
    """Futures and options sharing one underlying."""
    futures: List[Instrument] = field(default_factory=list)
    options: List[Instrument] = field(default_factory=list)


@dataclass
class CatalogStats:
    total_instruments: int
    underlying_assets: int
    is_ready: bool
    last_sync: Optional[datetime]


@dataclass
class _CatalogIndex:
    by_token: Dict[str, Instrument] = field(default_factory=dict)
    by_symbol: Dict[str, List[Instrument]] = field(default_factory=dict)
    by_underlying: Dict[str, DerivativeGroup] = field(default_factory=dict)
    spot_by_underlying: Dict[str, Instrument] = field(default_factory=dict)
    search_keys: List[str] = field(default_factory=list)


class InstrumentCatalog:
    """In-memory instrument index with an explicit init/ready/shutdown lifecycle."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        clock: Clock = now_ist,
        expiry_grace: timedelta = timedelta(days=1),
    ):
        self._uow_factory = uow_factory
        self._clock = clock
        self._expiry_grace = expiry_grace

        self._index = _CatalogIndex()
        self._ready = False
        self._init_task: Optional[asyncio.Task] = None
        self._init_error: Optional[BaseException] = None
        self._last_sync: Optional[datetime] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Load the catalog once; concurrent callers await the same load."""
        if self._ready:
            return
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._load())
        task = self._init_task
        try:
            await task
        finally:
            if self._init_task is task and task.done():
                self._init_task = None

    async def ensure_initialized(self) -> None:
        """Idempotent; re-raises a cached load failure instead of retrying."""
        if self._ready:
            return
        if self._init_error is not None:
            raise TradingError(
                ErrorCode.CATALOG_INIT_FAILED,
                f"Instrument catalog failed to initialize: {self._init_error}",
            ) from self._init_error
        await self.initialize()

    async def refresh(self) -> None:
        """Reload from the store. Success clears any cached failure."""
        if self._init_task is not None:
            await asyncio.gather(self._init_task, return_exceptions=True)
        self._ready = False
        self._init_error = None
        await self.initialize()

    def is_ready(self) -> bool:
        return self._ready

    async def shutdown(self) -> None:
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            await asyncio.gather(self._init_task, return_exceptions=True)
        self._init_task = None
        self._index = _CatalogIndex()
        self._ready = False
        logger.info("Instrument catalog shut down")

    async def _load(self) -> None:
        logger.info("Loading instrument catalog...")
        started = asyncio.get_running_loop().time()
        floor = to_utc(self._clock() - self._expiry_grace)
        try:
            async with self._uow_factory() as uow:
                instruments = await uow.instruments.get_loadable(floor)
            index = self._build_index(instruments)
        except Exception as e:
            self._init_error = e
            logger.error(f"Failed to load instrument catalog: {e}")
            raise TradingError(
                ErrorCode.CATALOG_INIT_FAILED,
                f"Instrument catalog failed to initialize: {e}",
            ) from e

        self._index = index
        self._ready = True
        self._init_error = None
        self._last_sync = self._clock()
        elapsed_ms = (asyncio.get_running_loop().time() - started) * 1000
        logger.bind(
            tokens=len(index.by_token),
            groups=len(index.by_underlying),
        ).info(f"Instrument catalog loaded: {len(index.by_token)} instruments in {elapsed_ms:.1f}ms")

    @staticmethod
    def _build_index(instruments: List[Instrument]) -> _CatalogIndex:
        index = _CatalogIndex()
        for inst in instruments:
            index.by_token[inst.instrument_token] = inst
            index.by_symbol.setdefault(inst.trading_symbol.upper(), []).append(inst)

            if inst.instrument_type in (InstrumentType.FUTURE, InstrumentType.OPTION):
                name = normalize_underlying(inst.name)
                group = index.by_underlying.setdefault(name, DerivativeGroup())
                if inst.instrument_type == InstrumentType.FUTURE:
                    group.futures.append(inst)
                else:
                    group.options.append(inst)
            elif inst.instrument_type in (InstrumentType.INDEX, InstrumentType.EQUITY):
                for key in (inst.trading_symbol, inst.name):
                    if key:
                        index.spot_by_underlying.setdefault(normalize_underlying(key), inst)

        for group in index.by_underlying.values():
            group.futures.sort(key=_derivative_sort_key)
            group.options.sort(key=_derivative_sort_key)

        index.search_keys = sorted(index.by_symbol)
        return index

    def _require_ready(self) -> None:
        if not self._ready:
            raise TradingError(ErrorCode.CATALOG_NOT_READY, "Instrument catalog not ready")

    # =========================================================================
    # Lookups
    # =========================================================================

    def get(self, token: str) -> Optional[Instrument]:
        """Exact lookup by instrument token."""
        self._require_ready()
        return self._index.by_token.get(token)

    def get_by_symbol(self, symbol: str) -> Optional[Instrument]:
        """First instrument carrying this symbol. Display use only, never for identity."""
        self._require_ready()
        matches = self._index.by_symbol.get((symbol or "").upper())
        return matches[0] if matches else None

    async def search(self, query: str, limit: int = 20) -> List[Instrument]:
        """
        Symbol search.

        Order: exact symbol match, then symbols sharing the prefix, then
        futures of underlyings whose name equals or starts with the query.
        """
        await self.ensure_initialized()
        if not query:
            return []

        q = query.strip().upper()
        index = self._index
        results: List[Instrument] = []
        seen = set()

        def emit(inst: Instrument) -> bool:
            if inst.instrument_token in seen:
                return True
            if len(results) >= limit:
                return False
            results.append(inst)
            seen.add(inst.instrument_token)
            return True

        for inst in index.by_symbol.get(q, []):
            emit(inst)

        keys = index.search_keys
        pos = bisect_left(keys, q)
        while pos < len(keys) and keys[pos].startswith(q) and len(results) < limit:
            if keys[pos] != q:
                for inst in index.by_symbol[keys[pos]]:
                    if not emit(inst):
                        break
            pos += 1

        def emit_group_futures(group: Optional[DerivativeGroup]) -> None:
            if group is None:
                return
            for fut in group.futures:
                if not emit(fut):
                    return

        normalized = normalize_underlying(q)
        emit_group_futures(index.by_underlying.get(normalized))
        for underlying in sorted(index.by_underlying):
            if underlying != normalized and underlying.startswith(q):
                emit_group_futures(index.by_underlying[underlying])

        return results[:limit]

    # =========================================================================
    # Derivatives
    # =========================================================================

    def get_futures(self, underlying: str) -> List[Instrument]:
        """Futures for an underlying sorted by expiry."""
        self._require_ready()
        group = self._index.by_underlying.get(normalize_underlying(underlying))
        return list(group.futures) if group else []

    def get_options(self, underlying: str, expiry: Optional[datetime] = None) -> List[Instrument]:
        """Options for an underlying, optionally restricted to one expiry instant."""
        self._require_ready()
        group = self._index.by_underlying.get(normalize_underlying(underlying))
        if group is None:
            return []
        if expiry is None:
            return list(group.options)
        target = ensure_aware(expiry)
        return [
            opt for opt in group.options
            if opt.expiry is not None and ensure_aware(opt.expiry) == target
        ]

    def get_expiries(self, underlying: str) -> List[datetime]:
        """Distinct expiries across futures and options, ascending."""
        self._require_ready()
        group = self._index.by_underlying.get(normalize_underlying(underlying))
        if group is None:
            return []
        expiries = {
            ensure_aware(inst.expiry)
            for inst in group.futures + group.options
            if inst.expiry is not None
        }
        return sorted(expiries)

    def get_underlying_instrument(self, underlying: str) -> Optional[Instrument]:
        """Index or equity a derivative settles against."""
        self._require_ready()
        return self._index.spot_by_underlying.get(normalize_underlying(underlying))

    def get_stats(self) -> CatalogStats:
        return CatalogStats(
            total_instruments=len(self._index.by_token),
            underlying_assets=len(self._index.by_underlying),
            is_ready=self._ready,
            last_sync=self._last_sync,
        )
