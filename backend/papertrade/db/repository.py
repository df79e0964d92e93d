"""
Base Repository Pattern Implementation
PaperTrade Accounting Engine

Generic async repository bound to one AsyncSession. Repositories never
commit; the owning UnitOfWork decides.
"""

from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from papertrade.db.base import Base


ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Generic async repository with basic operations.

    Type Parameters:
        ModelType: SQLAlchemy model class
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        """
        Initialize repository.

        Args:
            model: SQLAlchemy model class
            session: Async database session
        """
        self.model = model
        self.session = session

    # =========================================================================
    # Basic Operations
    # =========================================================================

    async def get(self, id: Any) -> Optional[ModelType]:
        """
        Get a single record by primary key.

        Args:
            id: Primary key value

        Returns:
            Model instance or None
        """
        return await self.session.get(self.model, id)

    async def add(self, instance: ModelType) -> ModelType:
        """Stage a new row and flush so generated keys are populated."""
        self.session.add(instance)
        await self.session.flush()
        return instance

    async def delete(self, instance: ModelType) -> None:
        await self.session.delete(instance)
        await self.session.flush()
