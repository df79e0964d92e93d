"""
Database Package
PaperTrade Accounting Engine
"""

from papertrade.db.base import Base
from papertrade.db.session import DatabaseService
from papertrade.db.unit_of_work import UnitOfWork, UnitOfWorkFactory, create_uow_factory

__all__ = [
    "Base",
    "DatabaseService",
    "UnitOfWork",
    "UnitOfWorkFactory",
    "create_uow_factory",
]
