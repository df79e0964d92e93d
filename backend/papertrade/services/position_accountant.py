"""
Position Accountant
PaperTrade Accounting Engine

Weighted-average cost basis and realized P&L per (user, instrument token).

Position rules for a fill of ``qty`` at ``price`` against a signed position:
- Flat:        open at the fill price
- Increasing:  new_avg = (|q|*avg + qty*price) / (|q| + qty)
- Reducing:    closed = min(|q|, qty)
               long closed by SELL:  pnl = closed * (price - avg)
               short closed by BUY:  pnl = closed * (avg - price)
- Reversing:   the residual opens a fresh position at the fill price
- Flat after:  the row is deleted

Every monetary result is rounded to 2 decimals.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional

from loguru import logger

from papertrade.core.errors import ErrorCode, TradingError
from papertrade.db.models import Order, OrderSide, OrderType, Position, Trade
from papertrade.db.unit_of_work import UnitOfWork, UnitOfWorkFactory
from papertrade.schemas.trading import PlaceOrderRequest
from papertrade.utils.money import ZERO, round_money, to_decimal


OrderPlacer = Callable[[str, PlaceOrderRequest], Awaitable[Order]]


@dataclass
class PositionChange:
    """Result of applying one fill to a signed position."""
    quantity: int
    average_price: Decimal
    realized_pnl: Decimal
    closing_quantity: int
    opening_quantity: int

    @property
    def is_flat(self) -> bool:
        return self.quantity == 0


@dataclass
class PositionUpdate:
    """What update_position did, for the wallet effects that follow."""
    position: Optional[Position]
    previous_quantity: int
    previous_average: Decimal
    previous_blocked_margin: Decimal
    change: PositionChange

    @property
    def deleted(self) -> bool:
        return self.change.is_flat

    @property
    def realized_pnl(self) -> Decimal:
        return self.change.realized_pnl


def _invariant(message: str, **details) -> TradingError:
    return TradingError(ErrorCode.POSITION_INVARIANT_VIOLATION, message, details)


def calculate_new_position(
    current_quantity: int,
    current_average: Decimal,
    side: OrderSide,
    quantity: int,
    price: Decimal,
) -> PositionChange:
    """
    Apply one fill to a signed position.

    Raises:
        TradingError: POSITION_INVARIANT_VIOLATION for a non-positive fill
            quantity, a negative price, or a transition that does not add up
    """
    side = OrderSide(side)
    price = to_decimal(price)
    if quantity <= 0:
        raise _invariant(f"Fill quantity must be positive, got {quantity}", quantity=quantity)
    if not price.is_finite() or price < 0:
        raise _invariant(f"Fill price cannot be negative, got {price}", price=str(price))

    signed = side.sign * quantity
    current_average = round_money(current_average or ZERO)

    if current_quantity == 0:
        change = PositionChange(
            quantity=signed,
            average_price=round_money(price),
            realized_pnl=round_money(ZERO),
            closing_quantity=0,
            opening_quantity=quantity,
        )

    elif (current_quantity > 0 and side == OrderSide.BUY) or (current_quantity < 0 and side == OrderSide.SELL):
        held = abs(current_quantity)
        average = (held * current_average + quantity * price) / (held + quantity)
        change = PositionChange(
            quantity=current_quantity + signed,
            average_price=round_money(average),
            realized_pnl=round_money(ZERO),
            closing_quantity=0,
            opening_quantity=quantity,
        )

    else:
        held = abs(current_quantity)
        closed = min(held, quantity)
        if current_quantity > 0:
            pnl = closed * (price - current_average)
        else:
            pnl = closed * (current_average - price)

        new_quantity = current_quantity + signed
        if new_quantity == 0:
            average = ZERO
        elif (new_quantity > 0) != (current_quantity > 0):
            average = price
        else:
            average = current_average

        change = PositionChange(
            quantity=new_quantity,
            average_price=round_money(average),
            realized_pnl=round_money(pnl),
            closing_quantity=closed,
            opening_quantity=quantity - closed,
        )

    if change.quantity != current_quantity + signed:
        raise _invariant(
            "Signed quantity does not add up",
            current=current_quantity, fill=signed, result=change.quantity,
        )
    if change.opening_quantity and change.quantity * side.sign <= 0:
        raise _invariant(
            "Opened quantity on the wrong side",
            current=current_quantity, fill=signed, result=change.quantity,
        )
    return change


class PositionAccountant:
    """Maintains net positions inside the caller's unit of work."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        order_placer: Optional[OrderPlacer] = None,
    ):
        self._uow_factory = uow_factory
        # Set by the engine wiring; close_position needs the order path
        self.order_placer = order_placer

    async def update_position(
        self,
        uow: UnitOfWork,
        trade: Trade,
        order: Optional[Order] = None,
    ) -> PositionUpdate:
        """
        Apply a fill to the (user, token) position in the trade's transaction.

        The trade (and order, when given) is annotated with the realized P&L
        of this fill and the pre-trade average price.
        """
        position = await uow.positions.get_position(
            trade.user_id, trade.instrument_token, for_update=True
        )
        previous_quantity = position.quantity if position is not None else 0
        previous_average = round_money(position.average_price) if position is not None else ZERO
        previous_blocked = round_money(position.blocked_margin) if position is not None else ZERO

        change = calculate_new_position(
            previous_quantity, previous_average, OrderSide(trade.side), trade.quantity, trade.price
        )

        if position is None:
            position = await uow.positions.add(
                Position(
                    user_id=trade.user_id,
                    instrument_token=trade.instrument_token,
                    quantity=change.quantity,
                    average_price=change.average_price,
                    realized_pnl=ZERO,
                    blocked_margin=ZERO,
                )
            )
        elif change.is_flat:
            await uow.positions.delete(position)
            position = None
        else:
            position.quantity = change.quantity
            position.average_price = change.average_price
            position.realized_pnl = round_money(round_money(position.realized_pnl) + change.realized_pnl)

        for record in (trade, order):
            if record is not None:
                record.realized_pnl = change.realized_pnl
                record.average_price = previous_average if previous_quantity else None

        logger.bind(
            user_id=trade.user_id,
            instrument_token=trade.instrument_token,
        ).debug(
            f"Position {previous_quantity}@{previous_average} -> {change.quantity}@{change.average_price} "
            f"(realized {change.realized_pnl})"
        )

        return PositionUpdate(
            position=position,
            previous_quantity=previous_quantity,
            previous_average=previous_average,
            previous_blocked_margin=previous_blocked,
            change=change,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_positions(self, user_id: str) -> List[Position]:
        async with self._uow_factory() as uow:
            return await uow.positions.get_user_positions(user_id)

    async def get_position(self, user_id: str, instrument_token: str) -> Optional[Position]:
        async with self._uow_factory() as uow:
            return await uow.positions.get_position(user_id, instrument_token)

    # =========================================================================
    # Manual exit
    # =========================================================================

    async def close_position(
        self,
        user_id: str,
        instrument_token: str,
        quantity: Optional[int] = None,
    ) -> Order:
        """
        Exit all or part of a position with an opposite-side MARKET order.

        Raises:
            TradingError: POSITION_NOT_FOUND, INVALID_QUANTITY
        """
        position = await self.get_position(user_id, instrument_token)
        if position is None:
            raise TradingError(
                ErrorCode.POSITION_NOT_FOUND,
                f"No open position for {instrument_token}",
                {"instrument_token": instrument_token},
            )

        held = abs(position.quantity)
        exit_quantity = held if quantity is None else quantity
        if exit_quantity <= 0 or exit_quantity > held:
            raise TradingError(
                ErrorCode.INVALID_QUANTITY,
                f"Exit quantity {exit_quantity} must be between 1 and {held}",
                {"quantity": exit_quantity, "open_quantity": held},
            )

        if self.order_placer is None:
            raise TradingError(
                ErrorCode.ORDER_PLACEMENT_FAILED,
                "No order path is bound for closing positions",
                {"instrument_token": instrument_token},
            )

        side = OrderSide.SELL if position.quantity > 0 else OrderSide.BUY
        request = PlaceOrderRequest(
            instrument_token=instrument_token,
            side=side,
            quantity=exit_quantity,
            order_type=OrderType.MARKET,
        )
        logger.bind(user_id=user_id, instrument_token=instrument_token).info(
            f"Closing {exit_quantity} of {position.quantity} via {side.value}"
        )
        return await self.order_placer(user_id, request)
