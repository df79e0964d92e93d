"""
Trading Universe
PaperTrade Accounting Engine

Restricts order placement to a configured set of exchanges, segments,
indices and equities. Derivatives are admitted by their underlying.
"""

from dataclasses import dataclass
from typing import FrozenSet, Optional, Tuple

from papertrade.core.config import UniverseSettings, get_settings
from papertrade.db.models import Instrument, InstrumentType


UNDERLYING_ALIAS = {
    "NIFTY50": "NIFTY",
    "NIFTY 50": "NIFTY",
    "NIFTYBANK": "BANKNIFTY",
    "NIFTY BANK": "BANKNIFTY",
    "NIFTYFINSERVICE": "FINNIFTY",
    "NIFTY FIN SERVICE": "FINNIFTY",
    "NIFTY MID SELECT": "MIDCPNIFTY",
    "MIDCAP": "MIDCPNIFTY",
    "MIDCPNIFTY": "MIDCPNIFTY",
}

INDICES = (
    "NIFTY 50",
    "NIFTY BANK",
    "NIFTY FIN SERVICE",
)

EQUITIES = (
    # Banking & Financials
    "HDFCBANK", "ICICIBANK", "SBIN", "AXISBANK", "KOTAKBANK", "INDUSINDBK",
    # IT
    "TCS", "INFY", "WIPRO", "HCLTECH", "TECHM",
    # Energy
    "RELIANCE", "ONGC", "BPCL", "IOC",
    # FMCG
    "HINDUNILVR", "ITC", "NESTLEIND", "BRITANNIA", "DABUR",
    # Metals
    "TATASTEEL", "JSWSTEEL", "HINDALCO", "COALINDIA",
    # Auto
    "TATAMOTORS", "M&M", "MARUTI", "BAJAJ-AUTO", "EICHERMOT",
    # Pharma
    "SUNPHARMA", "DRREDDY", "CIPLA", "DIVISLAB",
    # Infra / Capital Goods
    "LT", "ADANIPORTS", "ULTRACEMCO", "POWERGRID",
)


def normalize_underlying(value: Optional[str]) -> str:
    """Upper-case an underlying name and fold known index aliases."""
    raw = (value or "").strip().upper()
    if not raw:
        return ""
    compact = "".join(raw.split())
    return UNDERLYING_ALIAS.get(raw) or UNDERLYING_ALIAS.get(compact) or raw


@dataclass
class UniverseDecision:
    allowed: bool
    reason: Optional[str] = None


class TradingUniverse:
    """Allow-list check for instruments."""

    def __init__(
        self,
        config: Optional[UniverseSettings] = None,
        indices: Tuple[str, ...] = INDICES,
        equities: Tuple[str, ...] = EQUITIES,
    ):
        self.config = config or get_settings().universe
        self.indices: FrozenSet[str] = frozenset(normalize_underlying(i) for i in indices)
        self.equities: FrozenSet[str] = frozenset(e.upper() for e in equities)

    def _underlying_key(self, instrument: Instrument) -> str:
        if instrument.instrument_type in (InstrumentType.FUTURE, InstrumentType.OPTION):
            return normalize_underlying(instrument.name or instrument.trading_symbol)
        return normalize_underlying(instrument.trading_symbol)

    def is_instrument_allowed(self, instrument: Instrument) -> UniverseDecision:
        if instrument.exchange not in self.config.exchanges:
            return UniverseDecision(False, f"Exchange {instrument.exchange} is not in trading universe")

        if instrument.segment not in self.config.segments:
            return UniverseDecision(False, f"Segment {instrument.segment} is not in trading universe")

        key = self._underlying_key(instrument)
        is_index = key in self.indices
        is_equity = key in self.equities
        if not is_index and not is_equity:
            return UniverseDecision(
                False, f"Instrument {key} is not in the allowed list of indices or equities"
            )

        instrument_type = InstrumentType(instrument.instrument_type)
        is_derivative = instrument_type in (InstrumentType.FUTURE, InstrumentType.OPTION)
        if is_derivative and not self.config.allow_derivatives:
            return UniverseDecision(False, "Derivatives trading is currently disabled")

        if instrument_type == InstrumentType.FUTURE and is_equity and not self.config.allow_stock_futures:
            return UniverseDecision(False, "Stock futures are disabled")

        if instrument_type == InstrumentType.OPTION:
            if is_index and not self.config.allow_index_options:
                return UniverseDecision(False, "Index options are disabled")
            if is_equity and not self.config.allow_stock_options:
                return UniverseDecision(False, "Stock options are disabled")

        return UniverseDecision(True)
