"""
Database Models Package
PaperTrade Accounting Engine

Exports all SQLAlchemy models and domain enums.
"""

from papertrade.db.base import Base

from papertrade.db.models.enums import (
    InstrumentType,
    OptionType,
    OrderSide,
    OrderType,
    OrderStatus,
    ExitReason,
    TransactionType,
    LedgerReferenceType,
)

from papertrade.db.models.instrument import Instrument

from papertrade.db.models.trading import (
    Order,
    Trade,
    Position,
)

from papertrade.db.models.wallet import (
    Wallet,
    LedgerTransaction,
)


__all__ = [
    # Base
    "Base",

    # Enums
    "InstrumentType",
    "OptionType",
    "OrderSide",
    "OrderType",
    "OrderStatus",
    "ExitReason",
    "TransactionType",
    "LedgerReferenceType",

    # Instrument Models
    "Instrument",

    # Trading Models
    "Order",
    "Trade",
    "Position",

    # Wallet Models
    "Wallet",
    "LedgerTransaction",
]
