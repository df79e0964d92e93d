"""
Domain Models - Instrument Master
PaperTrade Accounting Engine

Rows are bulk-loaded by the external instrument sync job and read into the
in-memory InstrumentCatalog. The token is the only stable identity; trading
symbols may repeat across expiries and segments.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, Integer, Boolean, DateTime, Numeric, Index
from sqlalchemy.orm import Mapped, mapped_column

from papertrade.db.base import Base, utcnow
from papertrade.db.models.enums import InstrumentType


class Instrument(Base):
    """Master row for every tradable (and index) instrument."""
    __tablename__ = "instrument"

    instrument_token: Mapped[str] = mapped_column(String(64), primary_key=True)
    trading_symbol: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(64))  # Underlying name for derivatives
    exchange: Mapped[str] = mapped_column(String(10), nullable=False, default="NSE")
    segment: Mapped[str] = mapped_column(String(20), nullable=False)  # NSE_EQ, NSE_FO, NSE_INDEX
    instrument_type: Mapped[str] = mapped_column(String(10), nullable=False)  # EQUITY, FUTURE, OPTION, INDEX
    option_type: Mapped[Optional[str]] = mapped_column(String(2))  # CE, PE
    lot_size: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    tick_size: Mapped[Decimal] = mapped_column(Numeric(10, 4), default=Decimal("0.05"))
    strike: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    expiry: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))  # Previous close
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_instrument_symbol', 'trading_symbol'),
        Index('idx_instrument_name_type', 'name', 'instrument_type'),
        Index('idx_instrument_active', 'is_active'),
    )

    @property
    def type(self) -> InstrumentType:
        return InstrumentType(self.instrument_type)

    @property
    def is_derivative(self) -> bool:
        return self.type in (InstrumentType.FUTURE, InstrumentType.OPTION)

    def __repr__(self) -> str:
        return f"<Instrument {self.instrument_token} {self.trading_symbol}:{self.instrument_type}>"
