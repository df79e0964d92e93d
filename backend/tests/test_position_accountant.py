"""
Tests for weighted-average position accounting.
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from papertrade.core.errors import ErrorCode, TradingError
from papertrade.db.models import OrderSide, OrderStatus, Trade
from papertrade.db.unit_of_work import create_uow_factory
from papertrade.schemas.trading import PlaceOrderRequest
from papertrade.services.position_accountant import PositionAccountant, calculate_new_position

from conftest import RELIANCE, wallet_state


BUY = OrderSide.BUY
SELL = OrderSide.SELL


def make_trade(side, quantity, price, user_id="user-1", token=RELIANCE):
    return Trade(
        order_id=uuid4(), user_id=user_id, instrument_token=token,
        side=side.value, quantity=quantity, price=Decimal(price),
    )


def _request(token, side, quantity):
    return PlaceOrderRequest(instrument_token=token, side=side, quantity=quantity)


class TestCalculateNewPosition:
    """Tests for the pure position transition."""

    def test_open_from_flat(self):
        """Test a flat position opens at the fill price."""
        change = calculate_new_position(0, Decimal("0"), BUY, 10, Decimal("100"))
        assert change.quantity == 10
        assert change.average_price == Decimal("100.00")
        assert change.realized_pnl == Decimal("0.00")
        assert change.opening_quantity == 10

    def test_increase_long_weighted_average(self):
        """Test adding to a long blends the average."""
        change = calculate_new_position(10, Decimal("100"), BUY, 10, Decimal("110"))
        assert change.quantity == 20
        assert change.average_price == Decimal("105.00")

    def test_increase_short(self):
        """Test adding to a short blends the average."""
        change = calculate_new_position(-10, Decimal("100"), SELL, 30, Decimal("120"))
        assert change.quantity == -40
        assert change.average_price == Decimal("115.00")

    def test_partial_close_long(self):
        """Test a partial sell keeps the average."""
        change = calculate_new_position(20, Decimal("105"), SELL, 5, Decimal("120"))
        assert change.quantity == 15
        assert change.average_price == Decimal("105.00")
        assert change.realized_pnl == Decimal("75.00")
        assert change.closing_quantity == 5
        assert change.opening_quantity == 0

    def test_close_short_at_loss(self):
        """Test covering a short above entry loses money."""
        change = calculate_new_position(-10, Decimal("100"), BUY, 10, Decimal("130"))
        assert change.is_flat
        assert change.realized_pnl == Decimal("-300.00")
        assert change.average_price == Decimal("0.00")

    def test_reversal(self):
        """Test the residual opens at the fill price."""
        change = calculate_new_position(10, Decimal("100"), SELL, 15, Decimal("110"))
        assert change.quantity == -5
        assert change.average_price == Decimal("110.00")
        assert change.realized_pnl == Decimal("100.00")
        assert change.closing_quantity == 10
        assert change.opening_quantity == 5

    def test_average_rounded_half_up(self):
        """Test averages round to paise."""
        change = calculate_new_position(1, Decimal("100"), BUY, 2, Decimal("100.01"))
        assert change.average_price == Decimal("100.01")

    def test_zero_price_fill(self):
        """Test worthless settlements are representable."""
        change = calculate_new_position(50, Decimal("80"), SELL, 50, Decimal("0"))
        assert change.is_flat
        assert change.realized_pnl == Decimal("-4000.00")

    def test_rejects_bad_fills(self):
        """Test non-positive quantity and negative price."""
        for quantity, price in ((0, "100"), (-5, "100"), (5, "-1"), (5, "NaN")):
            with pytest.raises(TradingError) as exc:
                calculate_new_position(0, Decimal("0"), BUY, quantity, Decimal(price))
            assert exc.value.code == ErrorCode.POSITION_INVARIANT_VIOLATION


class TestUpdatePosition:
    """Tests for update_position against the store."""

    @pytest.mark.asyncio
    async def test_create_update_delete(self, db):
        """Test the row lifecycle from open to flat."""
        uow_factory = create_uow_factory(db.session_factory)
        accountant = PositionAccountant(uow_factory)

        async with uow_factory() as uow:
            first = make_trade(BUY, 10, "100")
            update = await accountant.update_position(uow, first)
            assert update.previous_quantity == 0
            assert first.average_price is None
            await uow.commit()

        async with uow_factory() as uow:
            second = make_trade(SELL, 4, "110")
            update = await accountant.update_position(uow, second)
            assert update.position.quantity == 6
            assert update.position.realized_pnl == Decimal("40.00")
            assert second.realized_pnl == Decimal("40.00")
            assert second.average_price == Decimal("100.00")
            await uow.commit()

        async with uow_factory() as uow:
            update = await accountant.update_position(uow, make_trade(SELL, 6, "90"))
            assert update.deleted
            assert update.realized_pnl == Decimal("-60.00")
            await uow.commit()

        assert await accountant.get_position("user-1", RELIANCE) is None
        assert await accountant.get_positions("user-1") == []

    @pytest.mark.asyncio
    async def test_positions_are_per_user(self, db):
        """Test users never share a position row."""
        uow_factory = create_uow_factory(db.session_factory)
        accountant = PositionAccountant(uow_factory)
        async with uow_factory() as uow:
            await accountant.update_position(uow, make_trade(BUY, 10, "100", user_id="a"))
            await accountant.update_position(uow, make_trade(SELL, 3, "100", user_id="b"))
            await uow.commit()

        assert (await accountant.get_position("a", RELIANCE)).quantity == 10
        assert (await accountant.get_position("b", RELIANCE)).quantity == -3


class TestClosePosition:
    """Tests for manual exits through the order path."""

    @pytest.mark.asyncio
    async def test_close_full(self, engine):
        """Test closing a long with an opposite MARKET order."""
        await engine.orders.place_order(
            "user-1",
            _request(RELIANCE, BUY, 10),
        )
        order = await engine.positions.close_position("user-1", RELIANCE)

        assert order.side == "SELL"
        assert order.quantity == 10
        assert order.status == OrderStatus.FILLED
        assert await engine.positions.get_position("user-1", RELIANCE) is None
        balance, blocked = await wallet_state(engine, "user-1")
        assert balance == Decimal("1000000.00")
        assert blocked == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_close_partial(self, engine):
        """Test a partial exit."""
        await engine.orders.place_order("user-1", _request(RELIANCE, BUY, 10))
        await engine.positions.close_position("user-1", RELIANCE, quantity=4)
        assert (await engine.positions.get_position("user-1", RELIANCE)).quantity == 6

    @pytest.mark.asyncio
    async def test_close_missing(self, engine):
        """Test closing a flat instrument."""
        with pytest.raises(TradingError) as exc:
            await engine.positions.close_position("user-1", RELIANCE)
        assert exc.value.code == ErrorCode.POSITION_NOT_FOUND

    @pytest.mark.asyncio
    async def test_close_too_much(self, engine):
        """Test exit quantity above the open quantity."""
        await engine.orders.place_order("user-1", _request(RELIANCE, BUY, 10))
        with pytest.raises(TradingError) as exc:
            await engine.positions.close_position("user-1", RELIANCE, quantity=11)
        assert exc.value.code == ErrorCode.INVALID_QUANTITY

    @pytest.mark.asyncio
    async def test_close_without_order_path(self, db):
        """Test an unwired accountant refuses to close with a typed error."""
        uow_factory = create_uow_factory(db.session_factory)
        accountant = PositionAccountant(uow_factory)
        async with uow_factory() as uow:
            await accountant.update_position(uow, make_trade(BUY, 10, "100"))
            await uow.commit()

        with pytest.raises(TradingError) as exc:
            await accountant.close_position("user-1", RELIANCE)
        assert exc.value.code == ErrorCode.ORDER_PLACEMENT_FAILED
        assert (await accountant.get_position("user-1", RELIANCE)).quantity == 10


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
