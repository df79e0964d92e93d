"""
SQLAlchemy Base Model Configuration
PaperTrade Accounting Engine

Models declare their table names explicitly. Constraint names follow the
convention below so the ledger and order uniqueness keys are stable across
PostgreSQL and SQLite.
"""

from datetime import datetime, timezone

from sqlalchemy import MetaData
from sqlalchemy.orm import DeclarativeBase


convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


def utcnow() -> datetime:
    """Timezone-aware UTC timestamp used for column defaults."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for instruments, orders, positions and the wallet ledger."""

    metadata = MetaData(naming_convention=convention)
