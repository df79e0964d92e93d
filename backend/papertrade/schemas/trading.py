"""
Pydantic Schemas - Trading
PaperTrade Accounting Engine

Request and response schemas for:
- Order placement and queries
- Positions
- Wallet and ledger
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict, model_validator

from papertrade.db.models.enums import (
    ExitReason,
    LedgerReferenceType,
    OrderSide,
    OrderStatus,
    OrderType,
    TransactionType,
)


# =============================================================================
# Base Schemas
# =============================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""
    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Order Schemas
# =============================================================================

class PlaceOrderRequest(BaseSchema):
    """
    Order placement payload.

    ``instrument_token`` is optional at the schema level so that a
    symbol-only payload reaches the order manager and is rejected there with
    MISSING_INSTRUMENT_TOKEN.
    """
    instrument_token: Optional[str] = Field(None, max_length=64)
    symbol: Optional[str] = Field(None, max_length=64)  # Display hint only
    side: OrderSide
    quantity: int = Field(..., gt=0)
    order_type: OrderType = OrderType.MARKET
    limit_price: Optional[Decimal] = None
    idempotency_key: Optional[str] = Field(None, max_length=128)
    exit_reason: Optional[ExitReason] = None
    settlement_price: Optional[Decimal] = None  # Fill price for EXPIRY exits
    leverage: Optional[Decimal] = None  # Futures margin divisor

    @model_validator(mode="after")
    def check_limit_price(self) -> "PlaceOrderRequest":
        if self.order_type == OrderType.LIMIT:
            if self.limit_price is None or self.limit_price <= 0:
                raise ValueError("limit_price must be positive for LIMIT orders")
        return self


class OrderQuery(BaseSchema):
    """Order listing filters."""
    status: Optional[OrderStatus] = None
    instrument_token: Optional[str] = None
    limit: int = Field(20, ge=1, le=50)
    page: int = Field(1, ge=1)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class OrderResponse(BaseSchema):
    """Order response."""
    id: UUID
    user_id: str
    instrument_token: str
    trading_symbol: Optional[str] = None
    side: OrderSide
    quantity: int
    order_type: OrderType
    limit_price: Optional[Decimal] = None
    status: OrderStatus
    idempotency_key: Optional[str] = None
    exit_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    execution_price: Optional[Decimal] = None
    executed_at: Optional[datetime] = None
    average_price: Optional[Decimal] = None
    realized_pnl: Optional[Decimal] = None
    created_at: datetime


# =============================================================================
# Position Schemas
# =============================================================================

class PositionResponse(BaseSchema):
    """Net position response."""
    user_id: str
    instrument_token: str
    quantity: int
    average_price: Decimal
    realized_pnl: Decimal
    blocked_margin: Decimal


# =============================================================================
# Wallet Schemas
# =============================================================================

class WalletResponse(BaseSchema):
    """Wallet projection response."""
    user_id: str
    balance: Decimal
    equity: Decimal
    blocked_balance: Decimal
    currency: str = "INR"


class TransactionQuery(BaseSchema):
    """Ledger listing filters."""
    type: Optional[TransactionType] = None
    reference_type: Optional[LedgerReferenceType] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = Field(50, ge=1, le=100)
    page: int = Field(1, ge=1)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class TransactionResponse(BaseSchema):
    """Ledger entry response."""
    id: int
    user_id: str
    type: TransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    blocked_before: Decimal
    blocked_after: Decimal
    reference_type: LedgerReferenceType
    reference_id: str
    description: Optional[str] = None
    created_at: datetime
