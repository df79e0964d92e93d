"""
Pydantic Schemas
PaperTrade Accounting Engine
"""

from papertrade.schemas.trading import (
    BaseSchema,
    PlaceOrderRequest,
    OrderQuery,
    OrderResponse,
    PositionResponse,
    WalletResponse,
    TransactionQuery,
    TransactionResponse,
)

__all__ = [
    "BaseSchema",
    # Orders
    "PlaceOrderRequest",
    "OrderQuery",
    "OrderResponse",
    # Positions
    "PositionResponse",
    # Wallet
    "WalletResponse",
    "TransactionQuery",
    "TransactionResponse",
]
