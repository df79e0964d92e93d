"""
Domain Models - Wallet & Ledger
PaperTrade Accounting Engine

The ledger is authoritative and append-only. ``Wallet`` is a cached
projection that can always be rebuilt by replaying ``LedgerTransaction``
rows in sequence order.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger, Integer, String, DateTime, Numeric, Uuid, Index, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from papertrade.db.base import Base, utcnow


class Wallet(Base):
    """One row per user."""
    __tablename__ = "wallets"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    equity: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    blocked_balance: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def available_balance(self) -> Decimal:
        return Decimal(self.balance) - Decimal(self.blocked_balance)

    def __repr__(self) -> str:
        return f"<Wallet {self.user_id} balance={self.balance} blocked={self.blocked_balance}>"


class LedgerTransaction(Base):
    """
    Append-only ledger entry.

    ``id`` is a monotonically increasing sequence; replay order is by id.
    The (user, type, reference_type, reference_id, leg) key makes postings
    idempotent per trade leg.
    """
    __tablename__ = "ledger_transactions"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(12), nullable=False)  # CREDIT, DEBIT, BLOCK, UNBLOCK, SETTLEMENT
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    balance_before: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    blocked_before: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    blocked_after: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    reference_type: Mapped[str] = mapped_column(String(12), nullable=False)  # SEED, TRADE, EXPIRY, ...
    reference_id: Mapped[str] = mapped_column(String(64), nullable=False)
    leg: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    description: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            'user_id', 'type', 'reference_type', 'reference_id', 'leg',
            name='uq_ledger_transactions_reference',
        ),
        Index('idx_ledger_user_created', 'user_id', 'created_at'),
    )

    def __repr__(self) -> str:
        return f"<LedgerTransaction #{self.id} {self.type} {self.amount} {self.reference_type}:{self.reference_id}>"
