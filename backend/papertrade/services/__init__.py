"""
Services Layer
PaperTrade Accounting Engine

Business logic for the order-to-ledger path.

Reference Data:
    - InstrumentCatalog: In-memory instrument index
    - TradingUniverse: Allow-list of exchanges, segments and underlyings
    - MarketCalendar: IST session hours and expiry arithmetic
    - PriceOracle: Live quote, snapshot, close and simulated price tiers

Trading Layer:
    - TradingSafetyValidator: Pre-trade guard chain
    - MarginCalculator: Required collateral per instrument type
    - OrderManager: Order placement and state machine
    - ExecutionEngine: Fills and their position/wallet effects
    - PositionAccountant: Weighted-average cost and realized P&L
    - WalletLedger: Append-only ledger with cached balance
    - ExpirySettlementCoordinator: Forced closure of expired derivatives

Flow:
    PlaceOrderRequest -> OrderManager -> TradingSafetyValidator -> MarginCalculator
                      -> Order (OPEN) -> ExecutionEngine -> PositionAccountant
                      -> WalletLedger
"""

from papertrade.services.market_calendar import MarketCalendar, now_ist, IST
from papertrade.services.trading_universe import TradingUniverse, normalize_underlying
from papertrade.services.instrument_catalog import InstrumentCatalog, CatalogStats
from papertrade.services.price_oracle import (
    MarketQuote,
    PriceOracle,
    PriceSource,
    QuoteBook,
    SimulatedPriceSource,
)

# Trading
from papertrade.services.margin_calculator import MarginCalculator, MarginRequest
from papertrade.services.trading_safety import TradingSafetyValidator, SafetyCheckResult
from papertrade.services.wallet_ledger import WalletLedger
from papertrade.services.position_accountant import (
    PositionAccountant,
    PositionChange,
    calculate_new_position,
)
from papertrade.services.execution_engine import ExecutionEngine, SweepResult
from papertrade.services.order_manager import OrderManager
from papertrade.services.expiry_settlement import (
    ExpirySettlementCoordinator,
    SettlementResult,
    SettlementStatus,
)

__all__ = [
    # Reference data
    "MarketCalendar",
    "now_ist",
    "IST",
    "TradingUniverse",
    "normalize_underlying",
    "InstrumentCatalog",
    "CatalogStats",
    "MarketQuote",
    "PriceOracle",
    "PriceSource",
    "QuoteBook",
    "SimulatedPriceSource",
    # Trading
    "MarginCalculator",
    "MarginRequest",
    "TradingSafetyValidator",
    "SafetyCheckResult",
    "WalletLedger",
    "PositionAccountant",
    "PositionChange",
    "calculate_new_position",
    "ExecutionEngine",
    "SweepResult",
    "OrderManager",
    "ExpirySettlementCoordinator",
    "SettlementResult",
    "SettlementStatus",
]
