"""
Tests for the execution engine.

Covers fill pricing, the wallet effects per instrument type and the
background sweep over OPEN orders.
"""

import pytest
from decimal import Decimal
from datetime import datetime
from uuid import uuid4

from papertrade.core.errors import ErrorCode, TradingError
from papertrade.db.models import Order, OrderSide, OrderStatus, OrderType
from papertrade.schemas.trading import OrderQuery, PlaceOrderRequest, TransactionQuery

from conftest import IST, NIFTY_CE, NIFTY_FUT, RELIANCE, open_wallet, wallet_state


BUY = OrderSide.BUY
SELL = OrderSide.SELL


def market_order(token=RELIANCE, side=BUY, quantity=10, **kwargs):
    return PlaceOrderRequest(instrument_token=token, side=side, quantity=quantity, **kwargs)


def limit_order(price, token=RELIANCE, side=BUY, quantity=10):
    return PlaceOrderRequest(
        instrument_token=token, side=side, quantity=quantity,
        order_type=OrderType.LIMIT, limit_price=Decimal(price),
    )


async def position_of(engine, token, user_id="user-1"):
    return await engine.positions.get_position(user_id, token)


class TestFillPrice:
    """Tests for resolve_fill_price."""

    @pytest.mark.asyncio
    async def test_market_fills_at_oracle(self, engine):
        """Test MARKET orders use the best price."""
        order = Order(side="BUY", order_type="MARKET", instrument_token=RELIANCE)
        price = await engine.executor.resolve_fill_price(order, engine.catalog.get(RELIANCE))
        assert price == Decimal("2500.00")

    @pytest.mark.asyncio
    async def test_buy_limit_needs_cross(self, engine, market):
        """Test a buy limit fills at the limit once the market trades at or below it."""
        order = Order(side="BUY", order_type="LIMIT", limit_price=Decimal("2450"), instrument_token=RELIANCE)
        instrument = engine.catalog.get(RELIANCE)
        assert await engine.executor.resolve_fill_price(order, instrument) is None

        market.tick(RELIANCE, "2440")
        assert await engine.executor.resolve_fill_price(order, instrument) == Decimal("2450")

    @pytest.mark.asyncio
    async def test_sell_limit_needs_cross(self, engine, market):
        """Test a sell limit fills once the market trades at or above it."""
        order = Order(side="SELL", order_type="LIMIT", limit_price=Decimal("2550"), instrument_token=RELIANCE)
        instrument = engine.catalog.get(RELIANCE)
        assert await engine.executor.resolve_fill_price(order, instrument) is None

        market.tick(RELIANCE, "2550")
        assert await engine.executor.resolve_fill_price(order, instrument) == Decimal("2550")

    @pytest.mark.asyncio
    async def test_expiry_exit_fills_at_settlement(self, engine):
        """Test EXPIRY exits ignore the market, including a zero price."""
        order = Order(
            side="SELL", order_type="MARKET", exit_reason="EXPIRY",
            limit_price=Decimal("0"), instrument_token=NIFTY_CE,
        )
        assert await engine.executor.resolve_fill_price(order, engine.catalog.get(NIFTY_CE)) == Decimal("0.00")


class TestEquityEffects:
    """Tests for equity cash movements."""

    @pytest.mark.asyncio
    async def test_round_trip(self, engine, market):
        """Test buy debit, sell credit and realized P&L."""
        await engine.orders.place_order("user-1", market_order(quantity=10))
        market.tick(RELIANCE, "2600")
        order = await engine.orders.place_order("user-1", market_order(side=SELL, quantity=10))

        assert order.realized_pnl == Decimal("1000.00")
        assert order.average_price == Decimal("2500.00")
        assert await position_of(engine, RELIANCE) is None
        balance, blocked = await wallet_state(engine, "user-1")
        assert balance == Decimal("1001000.00")
        assert blocked == Decimal("0.00")


class TestFuturesEffects:
    """Tests for futures margin and P&L settlement."""

    @pytest.mark.asyncio
    async def test_open_blocks_margin(self, engine):
        """Test a long future blocks 15% of notional and moves no cash."""
        await engine.orders.place_order("user-1", market_order(NIFTY_FUT, quantity=50))

        balance, blocked = await wallet_state(engine, "user-1")
        assert balance == Decimal("1000000.00")
        assert blocked == Decimal("165000.00")
        assert (await position_of(engine, NIFTY_FUT)).blocked_margin == Decimal("165000.00")

    @pytest.mark.asyncio
    async def test_close_releases_and_settles(self, engine, market):
        """Test closing releases margin and settles the P&L."""
        await engine.orders.place_order("user-1", market_order(NIFTY_FUT, quantity=50))
        market.tick(NIFTY_FUT, "22100")
        order = await engine.orders.place_order("user-1", market_order(NIFTY_FUT, side=SELL, quantity=50))

        assert order.realized_pnl == Decimal("5000.00")
        balance, blocked = await wallet_state(engine, "user-1")
        assert balance == Decimal("1005000.00")
        assert blocked == Decimal("0.00")

        async with engine.uow_factory() as uow:
            entries = await engine.wallet.get_transactions(uow, "user-1", TransactionQuery())
        legs = {(e.type, e.leg) for e in entries if e.reference_id == str(order.id)}
        assert legs == {("UNBLOCK", "MARGIN_RELEASE"), ("SETTLEMENT", "PNL")}

    @pytest.mark.asyncio
    async def test_partial_close_releases_share(self, engine, market):
        """Test a partial close releases the proportional margin."""
        await engine.orders.place_order("user-1", market_order(NIFTY_FUT, quantity=100))
        market.tick(NIFTY_FUT, "21900")
        await engine.orders.place_order("user-1", market_order(NIFTY_FUT, side=SELL, quantity=50))

        balance, blocked = await wallet_state(engine, "user-1")
        assert balance == Decimal("995000.00")
        assert blocked == Decimal("165000.00")
        assert (await position_of(engine, NIFTY_FUT)).blocked_margin == Decimal("165000.00")

    @pytest.mark.asyncio
    async def test_reversal(self, engine, market):
        """Test a reversal releases the old block and blocks the new side."""
        await engine.orders.place_order("user-1", market_order(NIFTY_FUT, quantity=50))
        market.tick(NIFTY_FUT, "22000")
        await engine.orders.place_order("user-1", market_order(NIFTY_FUT, side=SELL, quantity=100))

        position = await position_of(engine, NIFTY_FUT)
        assert position.quantity == -50
        assert position.blocked_margin == Decimal("165000.00")
        _, blocked = await wallet_state(engine, "user-1")
        assert blocked == Decimal("165000.00")

    @pytest.mark.asyncio
    async def test_loss_booked_past_available(self, engine, market):
        """Test a closing loss is booked even when it exceeds free cash."""
        await open_wallet(engine, "user-1", "250000")
        await engine.orders.place_order("user-1", market_order(NIFTY_FUT, quantity=50))

        market.tick(NIFTY_FUT, "16000")
        order = await engine.orders.place_order("user-1", market_order(NIFTY_FUT, side=SELL, quantity=50))

        assert order.status == OrderStatus.FILLED
        balance, blocked = await wallet_state(engine, "user-1")
        assert balance == Decimal("-50000.00")
        assert blocked == Decimal("0.00")


class TestOptionEffects:
    """Tests for option premium and short margin."""

    @pytest.mark.asyncio
    async def test_long_option(self, engine, market):
        """Test buying pays premium and selling receives it."""
        await engine.orders.place_order("user-1", market_order(NIFTY_CE, quantity=50))
        balance, blocked = await wallet_state(engine, "user-1")
        assert balance == Decimal("995000.00")
        assert blocked == Decimal("0.00")

        market.tick(NIFTY_CE, "130")
        await engine.orders.place_order("user-1", market_order(NIFTY_CE, side=SELL, quantity=50))
        balance, _ = await wallet_state(engine, "user-1")
        assert balance == Decimal("1001500.00")

    @pytest.mark.asyncio
    async def test_short_option(self, engine, market):
        """Test writing credits premium, blocks margin, and covering releases it."""
        await engine.orders.place_order("user-1", market_order(NIFTY_CE, side=SELL, quantity=50))
        balance, blocked = await wallet_state(engine, "user-1")
        assert balance == Decimal("1005000.00")
        assert blocked == Decimal("6000.00")
        assert (await position_of(engine, NIFTY_CE)).blocked_margin == Decimal("6000.00")

        market.tick(NIFTY_CE, "90")
        order = await engine.orders.place_order("user-1", market_order(NIFTY_CE, side=BUY, quantity=50))
        assert order.realized_pnl == Decimal("500.00")
        balance, blocked = await wallet_state(engine, "user-1")
        assert balance == Decimal("1000500.00")
        assert blocked == Decimal("0.00")


class TestApplyTrade:
    """Tests for apply_trade preconditions and atomicity."""

    @pytest.mark.asyncio
    async def test_only_open_orders(self, engine):
        """Test filled orders cannot be filled again."""
        order = await engine.orders.place_order("user-1", market_order())
        async with engine.uow_factory() as uow:
            stored = await uow.orders.get(order.id)
            with pytest.raises(TradingError) as exc:
                await engine.executor.apply_trade(uow, stored, engine.catalog.get(RELIANCE), Decimal("2500"))
        assert exc.value.code == ErrorCode.INVALID_STATE_TRANSITION

    @pytest.mark.asyncio
    async def test_retry_of_filled_order_is_noop(self, engine):
        """Test a second execution attempt reports no fill."""
        order = await engine.orders.place_order("user-1", market_order())
        assert await engine.executor.try_execute_order(order.id) is False

    @pytest.mark.asyncio
    async def test_unknown_order(self, engine):
        """Test executing a missing order id."""
        with pytest.raises(TradingError) as exc:
            await engine.executor.try_execute_order(uuid4())
        assert exc.value.code == ErrorCode.NOT_FOUND


class TestSweep:
    """Tests for execute_open_orders."""

    @pytest.mark.asyncio
    async def test_limit_fills_when_crossed(self, engine, market):
        """Test the sweep fills a marketable limit at its limit price."""
        order = await engine.orders.place_order("user-1", limit_order("2450"))

        result = await engine.executor.execute_open_orders()
        assert result.scanned == 1
        assert result.pending == 1

        market.tick(RELIANCE, "2440")
        result = await engine.executor.execute_open_orders()
        assert result.filled == 1

        filled = await engine.orders.get_order("user-1", order.id)
        assert filled.status == OrderStatus.FILLED
        assert filled.execution_price == Decimal("2450.00")
        balance, _ = await wallet_state(engine, "user-1")
        assert balance == Decimal("975500.00")

    @pytest.mark.asyncio
    async def test_insufficient_funds_rejects(self, engine, market):
        """Test the second of two competing limits is rejected at fill time."""
        await open_wallet(engine, "user-1", "30000")
        first = await engine.orders.place_order("user-1", limit_order("2500"))
        second = await engine.orders.place_order("user-1", limit_order("2490"))

        market.tick(RELIANCE, "2400")
        result = await engine.executor.execute_open_orders()
        assert result.filled == 1
        assert result.rejected == 1

        statuses = {
            (await engine.orders.get_order("user-1", first.id)).status,
            (await engine.orders.get_order("user-1", second.id)).status,
        }
        assert statuses == {OrderStatus.FILLED.value, OrderStatus.REJECTED.value}

        rejected = await engine.orders.get_orders("user-1", OrderQuery(status=OrderStatus.REJECTED))
        assert rejected[0].rejection_reason.startswith("Insufficient balance")

    @pytest.mark.asyncio
    async def test_sweep_skips_closed_session(self, engine, clock, market):
        """Test OPEN orders wait while the market is closed."""
        await engine.orders.place_order("user-1", limit_order("2450"))
        clock.set(datetime(2025, 1, 15, 16, 0, tzinfo=IST))
        market.tick(RELIANCE, "2400")

        result = await engine.executor.execute_open_orders()
        assert result.filled == 0
        assert result.pending == 1

    @pytest.mark.asyncio
    async def test_sweep_continues_after_failure(self, engine, market, quote_book):
        """Test one unpriceable order does not stop the sweep."""
        await engine.orders.place_order("user-1", limit_order("2450"))
        await engine.orders.place_order("user-1", limit_order("100", token=NIFTY_CE, quantity=50))

        quote_book.clear()
        market.tick(NIFTY_CE, "95")
        engine.catalog.get(RELIANCE).last_price = None

        result = await engine.executor.execute_open_orders()
        assert result.failed == 1
        assert result.filled == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
