"""
Wallet Repository
PaperTrade Accounting Engine

Data access for cached wallet balances and the append-only ledger.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from papertrade.db.repository import BaseRepository
from papertrade.db.models.wallet import Wallet, LedgerTransaction


class WalletRepository(BaseRepository[Wallet]):
    """Repository for wallets."""

    def __init__(self, session: AsyncSession):
        super().__init__(Wallet, session)

    async def get_by_user(self, user_id: str, for_update: bool = False) -> Optional[Wallet]:
        query = select(self.model).where(self.model.user_id == user_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        return result.scalar_one_or_none()


class LedgerRepository(BaseRepository[LedgerTransaction]):
    """Repository for ledger entries. Rows are never updated or deleted."""

    def __init__(self, session: AsyncSession):
        super().__init__(LedgerTransaction, session)

    async def get_by_reference(
        self,
        user_id: str,
        type: str,
        reference_type: str,
        reference_id: str,
        leg: str = "",
    ) -> Optional[LedgerTransaction]:
        result = await self.session.execute(
            select(self.model).where(
                and_(
                    self.model.user_id == user_id,
                    self.model.type == type,
                    self.model.reference_type == reference_type,
                    self.model.reference_id == reference_id,
                    self.model.leg == leg,
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_history(self, user_id: str) -> List[LedgerTransaction]:
        """Full ledger for a user in posting order."""
        result = await self.session.execute(
            select(self.model)
            .where(self.model.user_id == user_id)
            .order_by(self.model.id)
        )
        return list(result.scalars().all())

    async def search(
        self,
        user_id: str,
        type: Optional[str] = None,
        reference_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[LedgerTransaction]:
        """Filtered ledger page, newest first."""
        conditions = [self.model.user_id == user_id]
        if type:
            conditions.append(self.model.type == type)
        if reference_type:
            conditions.append(self.model.reference_type == reference_type)
        if start:
            conditions.append(self.model.created_at >= start)
        if end:
            conditions.append(self.model.created_at <= end)

        result = await self.session.execute(
            select(self.model)
            .where(and_(*conditions))
            .order_by(self.model.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())
