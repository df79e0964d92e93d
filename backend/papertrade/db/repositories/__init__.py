"""
Repository Layer
PaperTrade Accounting Engine

Provides data access abstractions for all domain models.
"""

from papertrade.db.repositories.instrument import InstrumentRepository

from papertrade.db.repositories.trading import (
    OrderRepository,
    TradeRepository,
    PositionRepository,
)

from papertrade.db.repositories.wallet import (
    WalletRepository,
    LedgerRepository,
)

__all__ = [
    # Instrument
    "InstrumentRepository",
    # Trading
    "OrderRepository",
    "TradeRepository",
    "PositionRepository",
    # Wallet
    "WalletRepository",
    "LedgerRepository",
]
