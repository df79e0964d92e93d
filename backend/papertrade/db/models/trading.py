"""
Domain Models - Orders, Trades & Positions
PaperTrade Accounting Engine

SQLAlchemy models for:
- Orders (OPEN -> FILLED | CANCELLED | REJECTED)
- Trades (immutable fill records)
- Positions (one row per user and instrument token while non-flat)
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    String, Integer, DateTime, Numeric, Uuid, Text,
    ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from papertrade.db.base import Base, utcnow
from papertrade.db.models.enums import OrderStatus


class Order(Base):
    """
    Order placed by a user.

    OPEN is the only non-terminal status. ``average_price`` and
    ``realized_pnl`` are filled in at execution for audit display.
    """
    __tablename__ = "orders"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instrument_token: Mapped[str] = mapped_column(
        String(64), ForeignKey("instrument.instrument_token"), nullable=False
    )
    trading_symbol: Mapped[Optional[str]] = mapped_column(String(64))  # Display only

    side: Mapped[str] = mapped_column(String(4), nullable=False)  # BUY, SELL
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    order_type: Mapped[str] = mapped_column(String(10), nullable=False)  # MARKET, LIMIT
    limit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    leverage: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2))  # Futures margin divisor
    status: Mapped[str] = mapped_column(String(10), nullable=False, default=OrderStatus.OPEN.value)

    idempotency_key: Mapped[Optional[str]] = mapped_column(String(128))
    exit_reason: Mapped[Optional[str]] = mapped_column(String(20))  # MANUAL, EXPIRY, LIQUIDATION
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)

    execution_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    average_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))  # Pre-trade position average
    realized_pnl: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'idempotency_key', name='uq_orders_user_idempotency'),
        Index('idx_orders_user_status', 'user_id', 'status'),
        Index('idx_orders_user_token_created', 'user_id', 'instrument_token', 'created_at'),
    )

    def __repr__(self) -> str:
        return f"<Order {self.id} {self.side} {self.quantity} {self.instrument_token} {self.status}>"


class Trade(Base):
    """Immutable fill record, one row per fill."""
    __tablename__ = "trades"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    order_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("orders.id"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instrument_token: Mapped[str] = mapped_column(String(64), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    average_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2))
    realized_pnl: Mapped[Optional[Decimal]] = mapped_column(Numeric(18, 2))
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index('idx_trades_user_token', 'user_id', 'instrument_token'),
        Index('idx_trades_order', 'order_id'),
    )

    def __repr__(self) -> str:
        return f"<Trade {self.side} {self.quantity}@{self.price} {self.instrument_token}>"


class Position(Base):
    """
    Net position per (user, instrument token).

    Quantity is signed: positive long, negative short. A flat position has
    no row. ``blocked_margin`` is the collateral still held against it.
    """
    __tablename__ = "positions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    instrument_token: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    average_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    realized_pnl: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    blocked_margin: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'instrument_token', name='uq_positions_user_token'),
    )

    def __repr__(self) -> str:
        return f"<Position {self.user_id} {self.instrument_token} {self.quantity}@{self.average_price}>"
