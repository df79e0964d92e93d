"""
Instrument Repository
PaperTrade Accounting Engine

Data access for the instrument master table.
"""

from datetime import datetime
from typing import List

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from papertrade.db.repository import BaseRepository
from papertrade.db.models.instrument import Instrument


class InstrumentRepository(BaseRepository[Instrument]):
    """Repository for instrument master rows."""

    def __init__(self, session: AsyncSession):
        super().__init__(Instrument, session)

    async def get_loadable(self, expiry_floor: datetime) -> List[Instrument]:
        """
        Instruments that are either undated or not expired before the floor.

        Soft-deactivated rows are included so that orders on them resolve and
        are rejected as inactive rather than unknown.

        Args:
            expiry_floor: Oldest expiry still worth loading

        Returns:
            Instruments ordered by trading symbol
        """
        result = await self.session.execute(
            select(self.model)
            .where(or_(self.model.expiry.is_(None), self.model.expiry >= expiry_floor))
            .order_by(self.model.trading_symbol)
        )
        return list(result.scalars().all())

    async def add_all(self, instruments: List[Instrument]) -> None:
        self.session.add_all(instruments)
        await self.session.flush()
