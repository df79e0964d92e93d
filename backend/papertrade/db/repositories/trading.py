"""
Trading Repository
PaperTrade Accounting Engine

Data access layer for orders, trades and positions.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from papertrade.db.repository import BaseRepository
from papertrade.db.models.enums import InstrumentType, OrderStatus
from papertrade.db.models.instrument import Instrument
from papertrade.db.models.trading import Order, Trade, Position


class OrderRepository(BaseRepository[Order]):
    """Repository for orders."""

    def __init__(self, session: AsyncSession):
        super().__init__(Order, session)

    async def get_for_user(self, user_id: str, order_id: UUID) -> Optional[Order]:
        result = await self.session.execute(
            select(self.model).where(
                and_(self.model.id == order_id, self.model.user_id == user_id)
            )
        )
        return result.scalar_one_or_none()

    async def get_for_update(self, order_id: UUID) -> Optional[Order]:
        """Load an order with a row lock (no-op on SQLite)."""
        result = await self.session.execute(
            select(self.model).where(self.model.id == order_id).with_for_update()
        )
        return result.scalar_one_or_none()

    async def get_by_idempotency_key(self, user_id: str, key: str) -> Optional[Order]:
        result = await self.session.execute(
            select(self.model).where(
                and_(self.model.user_id == user_id, self.model.idempotency_key == key)
            )
        )
        return result.scalar_one_or_none()

    async def find_recent_duplicate(
        self,
        user_id: str,
        instrument_token: str,
        side: str,
        quantity: int,
        order_type: str,
        since: datetime,
        limit_price: Optional[Decimal] = None,
    ) -> Optional[Order]:
        """Find an order with the same shape placed at or after ``since``."""
        conditions = [
            self.model.user_id == user_id,
            self.model.instrument_token == instrument_token,
            self.model.side == side,
            self.model.quantity == quantity,
            self.model.order_type == order_type,
            self.model.created_at >= since,
        ]
        if limit_price is not None:
            conditions.append(self.model.limit_price == limit_price)

        result = await self.session.execute(
            select(self.model).where(and_(*conditions)).limit(1)
        )
        return result.scalar_one_or_none()

    async def get_open_orders(self) -> List[Order]:
        """All OPEN orders, oldest first."""
        result = await self.session.execute(
            select(self.model)
            .where(self.model.status == OrderStatus.OPEN.value)
            .order_by(self.model.created_at)
        )
        return list(result.scalars().all())

    async def list_for_user(
        self,
        user_id: str,
        status: Optional[str] = None,
        instrument_token: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Order]:
        """Orders for a user, newest first."""
        conditions = [self.model.user_id == user_id]
        if status:
            conditions.append(self.model.status == status)
        if instrument_token:
            conditions.append(self.model.instrument_token == instrument_token)

        result = await self.session.execute(
            select(self.model)
            .where(and_(*conditions))
            .order_by(self.model.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())


class TradeRepository(BaseRepository[Trade]):
    """Repository for trade fills."""

    def __init__(self, session: AsyncSession):
        super().__init__(Trade, session)

    async def get_trades_for_order(self, order_id: UUID) -> List[Trade]:
        result = await self.session.execute(
            select(self.model)
            .where(self.model.order_id == order_id)
            .order_by(self.model.executed_at)
        )
        return list(result.scalars().all())

    async def get_trades_for_instrument(self, user_id: str, instrument_token: str) -> List[Trade]:
        result = await self.session.execute(
            select(self.model)
            .where(
                and_(
                    self.model.user_id == user_id,
                    self.model.instrument_token == instrument_token,
                )
            )
            .order_by(self.model.executed_at)
        )
        return list(result.scalars().all())


class PositionRepository(BaseRepository[Position]):
    """Repository for net positions."""

    def __init__(self, session: AsyncSession):
        super().__init__(Position, session)

    async def get_position(
        self,
        user_id: str,
        instrument_token: str,
        for_update: bool = False,
    ) -> Optional[Position]:
        """Get the position for one (user, token) pair."""
        query = select(self.model).where(
            and_(
                self.model.user_id == user_id,
                self.model.instrument_token == instrument_token,
            )
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_user_positions(self, user_id: str) -> List[Position]:
        result = await self.session.execute(
            select(self.model)
            .where(self.model.user_id == user_id)
            .order_by(self.model.created_at)
        )
        return list(result.scalars().all())

    async def get_open_derivative_positions(self) -> List[Tuple[Position, Instrument]]:
        """Every position on a dated future or option, with its instrument."""
        result = await self.session.execute(
            select(self.model, Instrument)
            .join(Instrument, Instrument.instrument_token == self.model.instrument_token)
            .where(
                and_(
                    self.model.quantity != 0,
                    Instrument.instrument_type.in_(
                        [InstrumentType.FUTURE.value, InstrumentType.OPTION.value]
                    ),
                    Instrument.expiry.is_not(None),
                )
            )
            .order_by(self.model.instrument_token, self.model.user_id)
        )
        return [(position, instrument) for position, instrument in result.all()]
