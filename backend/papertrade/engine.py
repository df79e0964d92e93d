"""
Trading Engine Wiring
PaperTrade Accounting Engine

Builds the accounting services around one DatabaseService and owns their
start/stop lifecycle. Nothing here is a process-wide singleton; callers
construct an engine and pass it where it is needed.

Usage:
    db = DatabaseService()
    engine = create_trading_engine(db, live_source=quote_book)
    await engine.start()
    order = await engine.orders.place_order(user_id, request)
    await engine.executor.execute_open_orders()     # periodic sweep
    await engine.settlement.run_settlement_cycle()  # after the close
    await engine.stop()
"""

from typing import Optional

from loguru import logger

from papertrade.core.config import Settings, TradingSettings, UniverseSettings, get_settings
from papertrade.db.session import DatabaseService
from papertrade.db.unit_of_work import create_uow_factory
from papertrade.services.execution_engine import ExecutionEngine
from papertrade.services.expiry_settlement import ExpirySettlementCoordinator
from papertrade.services.instrument_catalog import InstrumentCatalog
from papertrade.services.margin_calculator import MarginCalculator
from papertrade.services.market_calendar import Clock, MarketCalendar, now_ist
from papertrade.services.order_manager import OrderManager
from papertrade.services.position_accountant import PositionAccountant
from papertrade.services.price_oracle import (
    LiveQuoteSource,
    PriceOracle,
    SimulatedPriceSource,
    SnapshotFetcher,
)
from papertrade.services.trading_safety import TradingSafetyValidator
from papertrade.services.trading_universe import TradingUniverse
from papertrade.services.wallet_ledger import WalletLedger


class TradingEngine:
    """Container for the wired accounting services."""

    def __init__(
        self,
        db: DatabaseService,
        settings: Optional[Settings] = None,
        trading: Optional[TradingSettings] = None,
        universe: Optional[UniverseSettings] = None,
        live_source: Optional[LiveQuoteSource] = None,
        snapshot_fetcher: Optional[SnapshotFetcher] = None,
        simulated_source: Optional[SimulatedPriceSource] = None,
        clock: Clock = now_ist,
    ):
        self.db = db
        self.settings = settings or get_settings()
        trading = trading or self.settings.trading
        self.trading_config = trading
        uow_factory = create_uow_factory(db.session_factory)
        self.uow_factory = uow_factory

        self.calendar = MarketCalendar(trading)
        self.catalog = InstrumentCatalog(uow_factory, clock=clock)
        self.universe = TradingUniverse(universe or self.settings.universe)

        self.price_oracle = PriceOracle(
            live_source=live_source,
            snapshot_fetcher=snapshot_fetcher,
            simulated_source=simulated_source,
            instrument_lookup=self._lookup_instrument,
        )
        self.margin = MarginCalculator(self.price_oracle, trading)
        self.safety = TradingSafetyValidator(self.price_oracle, trading, clock=clock)
        self.wallet = WalletLedger(trading)
        self.positions = PositionAccountant(uow_factory)

        self.executor = ExecutionEngine(
            uow_factory,
            self.catalog,
            self.price_oracle,
            self.margin,
            self.wallet,
            self.positions,
            calendar=self.calendar,
            clock=clock,
        )
        self.orders = OrderManager(
            uow_factory,
            self.catalog,
            self.universe,
            self.safety,
            self.margin,
            self.wallet,
            self.executor,
            calendar=self.calendar,
            config=trading,
            settings=self.settings,
            clock=clock,
        )
        self.positions.order_placer = self.orders.place_order

        self.settlement = ExpirySettlementCoordinator(
            uow_factory,
            self.orders,
            self.price_oracle,
            self.catalog,
            calendar=self.calendar,
            clock=clock,
        )

    def _lookup_instrument(self, token: str):
        if not self.catalog.is_ready():
            return None
        return self.catalog.get(token)

    async def start(self) -> None:
        await self.catalog.initialize()
        logger.info(f"{self.settings.PROJECT_NAME} trading engine started")

    async def stop(self) -> None:
        await self.catalog.shutdown()
        self.price_oracle.invalidate()
        logger.info(f"{self.settings.PROJECT_NAME} trading engine stopped")


def create_trading_engine(
    db: DatabaseService,
    settings: Optional[Settings] = None,
    trading: Optional[TradingSettings] = None,
    universe: Optional[UniverseSettings] = None,
    live_source: Optional[LiveQuoteSource] = None,
    snapshot_fetcher: Optional[SnapshotFetcher] = None,
    simulated_source: Optional[SimulatedPriceSource] = None,
    clock: Clock = now_ist,
) -> TradingEngine:
    """Factory function to build a TradingEngine."""
    return TradingEngine(
        db,
        settings=settings,
        trading=trading,
        universe=universe,
        live_source=live_source,
        snapshot_fetcher=snapshot_fetcher,
        simulated_source=simulated_source,
        clock=clock,
    )
