"""
Unit of Work
PaperTrade Accounting Engine

One UnitOfWork wraps one AsyncSession and therefore one store transaction.
Services receive a UnitOfWork (or a factory for new ones) instead of raw
sessions, and reach tables only through its typed repositories.

Usage:
    async with uow_factory() as uow:
        order = await uow.orders.get(order_id)
        ...
        await uow.commit()

Leaving the block with an exception rolls back. Leaving it normally without
calling commit() also rolls back, so every write path commits explicitly.
On a normal exit the loaded rows are detached first, so objects returned
from the block keep their attribute values.
"""

from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from papertrade.db.repositories import (
    InstrumentRepository,
    OrderRepository,
    TradeRepository,
    PositionRepository,
    WalletRepository,
    LedgerRepository,
)


class UnitOfWork:
    """Transaction scope with typed repository accessors."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self.session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "UnitOfWork":
        await self.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is None:
                # Rows read here outlive the session; keep them loaded
                self.session.expunge_all()
            await self.rollback()
        finally:
            await self.session.close()
            self.session = None

    async def begin(self) -> None:
        self.session = self._session_factory()
        self.instruments = InstrumentRepository(self.session)
        self.orders = OrderRepository(self.session)
        self.trades = TradeRepository(self.session)
        self.positions = PositionRepository(self.session)
        self.wallets = WalletRepository(self.session)
        self.transactions = LedgerRepository(self.session)

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        """Discard anything not yet committed (no-op after commit)."""
        await self.session.rollback()

    async def flush(self) -> None:
        await self.session.flush()


UnitOfWorkFactory = Callable[[], UnitOfWork]


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]) -> UnitOfWorkFactory:
    """Bind a session factory into a zero-argument UnitOfWork constructor."""
    def factory() -> UnitOfWork:
        return UnitOfWork(session_factory)
    return factory
