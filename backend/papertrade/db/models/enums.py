"""
Domain Enumerations
PaperTrade Accounting Engine

Closed variant sets for instrument, order and ledger fields. Columns store
the ``.value`` string; comparisons work against either form.
"""

from enum import Enum


class InstrumentType(str, Enum):
    EQUITY = "EQUITY"
    FUTURE = "FUTURE"
    OPTION = "OPTION"
    INDEX = "INDEX"


class OptionType(str, Enum):
    CE = "CE"  # Call
    PE = "PE"  # Put


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def sign(self) -> int:
        return 1 if self is OrderSide.BUY else -1

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


class OrderStatus(str, Enum):
    OPEN = "OPEN"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


class ExitReason(str, Enum):
    MANUAL = "MANUAL"
    EXPIRY = "EXPIRY"
    LIQUIDATION = "LIQUIDATION"


class TransactionType(str, Enum):
    CREDIT = "CREDIT"          # balance += amount
    DEBIT = "DEBIT"            # balance -= amount
    BLOCK = "BLOCK"            # blocked += amount
    UNBLOCK = "UNBLOCK"        # blocked -= amount
    SETTLEMENT = "SETTLEMENT"  # balance += signed amount


class LedgerReferenceType(str, Enum):
    SEED = "SEED"
    TRADE = "TRADE"
    EXPIRY = "EXPIRY"
    LIQUIDATION = "LIQUIDATION"
    ADJUSTMENT = "ADJUSTMENT"
