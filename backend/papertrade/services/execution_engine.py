"""
Execution Engine
PaperTrade Accounting Engine

Fills OPEN orders. One fill is one transactional apply_trade():
1. Insert the Trade
2. Update the Position (annotating order and trade with realized P&L)
3. Post wallet effects for the instrument type
4. Mark the Order FILLED

Wallet effects, keyed to the position's blocked margin:
- EQUITY   BUY debits price x qty, SELL credits proceeds
- OPTION   BUY debits premium and releases the covered share of a short's
           margin; SELL credits premium and blocks margin on the opened
           (short) quantity
- FUTURE   blocks margin on opened quantity, releases the closed share,
           posts realized P&L as a signed settlement, releases all when flat

MARKET orders are attempted inline right after placement; anything left OPEN
(failed inline attempt, staged after-hours order, unmarketable LIMIT) is
retried by the execute_open_orders() sweep.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import UUID

from loguru import logger

from papertrade.core.errors import ErrorCode, TradingError
from papertrade.db.models import (
    ExitReason,
    Instrument,
    InstrumentType,
    LedgerReferenceType,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
    Trade,
)
from papertrade.db.unit_of_work import UnitOfWork, UnitOfWorkFactory
from papertrade.services.instrument_catalog import InstrumentCatalog
from papertrade.services.margin_calculator import MarginCalculator
from papertrade.services.market_calendar import Clock, MarketCalendar, now_ist, to_utc
from papertrade.services.position_accountant import PositionAccountant, PositionUpdate
from papertrade.services.price_oracle import PriceOracle, to_price
from papertrade.services.wallet_ledger import WalletLedger
from papertrade.utils.money import ZERO, round_money


@dataclass
class SweepResult:
    """Counts from one pass over OPEN orders."""
    scanned: int = 0
    filled: int = 0
    rejected: int = 0
    pending: int = 0
    failed: int = 0


def _reference_type(order: Order) -> LedgerReferenceType:
    if order.exit_reason == ExitReason.EXPIRY:
        return LedgerReferenceType.EXPIRY
    if order.exit_reason == ExitReason.LIQUIDATION:
        return LedgerReferenceType.LIQUIDATION
    return LedgerReferenceType.TRADE


class ExecutionEngine:
    """Fills orders and applies their position and wallet effects atomically."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        catalog: InstrumentCatalog,
        price_oracle: PriceOracle,
        margin_calculator: MarginCalculator,
        wallet_ledger: WalletLedger,
        position_accountant: PositionAccountant,
        calendar: Optional[MarketCalendar] = None,
        clock: Clock = now_ist,
    ):
        self._uow_factory = uow_factory
        self.catalog = catalog
        self.price_oracle = price_oracle
        self.margin_calculator = margin_calculator
        self.wallet_ledger = wallet_ledger
        self.position_accountant = position_accountant
        self.calendar = calendar or MarketCalendar()
        self._clock = clock

    # =========================================================================
    # Apply trade
    # =========================================================================

    async def apply_trade(
        self,
        uow: UnitOfWork,
        order: Order,
        instrument: Instrument,
        price: Decimal,
    ) -> Trade:
        """
        Fill ``order`` at ``price`` inside the caller's unit of work.

        The caller commits. Any exception leaves nothing applied once the
        unit of work rolls back.

        Raises:
            TradingError: INVALID_STATE_TRANSITION if the order is not OPEN,
                INSUFFICIENT_FUNDS from the wallet postings,
                POSITION_INVARIANT_VIOLATION from the position update
        """
        if order.status != OrderStatus.OPEN:
            raise TradingError(
                ErrorCode.INVALID_STATE_TRANSITION,
                f"Cannot fill order in status {order.status}",
                {"order_id": str(order.id)},
            )

        price = round_money(price)
        executed_at = to_utc(self._clock())

        trade = await uow.trades.add(
            Trade(
                order_id=order.id,
                user_id=order.user_id,
                instrument_token=order.instrument_token,
                side=order.side,
                quantity=order.quantity,
                price=price,
                executed_at=executed_at,
            )
        )

        update = await self.position_accountant.update_position(uow, trade, order)
        await self._apply_wallet_effects(uow, order, instrument, price, update)

        order.status = OrderStatus.FILLED.value
        order.execution_price = price
        order.executed_at = executed_at
        await uow.flush()

        logger.bind(
            order_id=str(order.id),
            user_id=order.user_id,
            instrument_token=order.instrument_token,
        ).info(
            f"Order executed: {order.side} {order.quantity} {order.trading_symbol or order.instrument_token} "
            f"@ {price} (realized {update.realized_pnl})"
        )
        return trade

    async def _apply_wallet_effects(
        self,
        uow: UnitOfWork,
        order: Order,
        instrument: Instrument,
        price: Decimal,
        update: PositionUpdate,
    ) -> None:
        instrument_type = InstrumentType(instrument.instrument_type)
        side = OrderSide(order.side)
        reference_type = _reference_type(order)
        reference_id = str(order.id)
        user_id = order.user_id
        ledger = self.wallet_ledger
        change = update.change
        notional = round_money(price * order.quantity)
        symbol = instrument.trading_symbol

        if instrument_type == InstrumentType.EQUITY:
            if notional == 0:
                return
            if side == OrderSide.BUY:
                await ledger.debit_balance(
                    uow, user_id, notional, reference_type, reference_id,
                    f"Buy {order.quantity} {symbol} @ {price}",
                )
            else:
                await ledger.credit_proceeds(
                    uow, user_id, notional, reference_type, reference_id,
                    f"Sell {order.quantity} {symbol} @ {price}",
                )
            return

        if instrument_type == InstrumentType.INDEX:
            raise TradingError(ErrorCode.INVALID_INSTRUMENT_TYPE, "Indices cannot be traded directly")

        released = await self._release_closed_margin(uow, order, update, reference_type)
        blocked = ZERO

        if instrument_type == InstrumentType.OPTION and notional > 0:
            if side == OrderSide.BUY:
                await ledger.debit_balance(
                    uow, user_id, notional, reference_type, reference_id,
                    f"Option premium paid {order.quantity} {symbol} @ {price}",
                    leg="PREMIUM",
                )
            else:
                await ledger.credit_proceeds(
                    uow, user_id, notional, reference_type, reference_id,
                    f"Option premium received {order.quantity} {symbol} @ {price}",
                    leg="PREMIUM",
                )
                if change.opening_quantity:
                    blocked = self.margin_calculator.margin_at_price(
                        instrument, side, change.opening_quantity, price
                    )

        elif instrument_type == InstrumentType.FUTURE:
            if change.realized_pnl != 0:
                # Realized losses on a close are booked even past available balance
                await ledger.settle(
                    uow, user_id, change.realized_pnl, reference_type, reference_id,
                    f"Futures P&L {symbol}", leg="PNL", enforce_funds=False,
                )
            if change.opening_quantity:
                blocked = self.margin_calculator.margin_at_price(
                    instrument, side, change.opening_quantity, price, order.leverage
                )

        if blocked > 0:
            await ledger.block_margin(
                uow, user_id, blocked, reference_type, reference_id,
                f"Margin blocked {change.opening_quantity} {symbol}",
            )

        if update.position is not None:
            remaining = update.previous_blocked_margin - released
            if update.previous_quantity * change.quantity <= 0:
                remaining = ZERO  # Fresh or reversed position carries only the new block
            update.position.blocked_margin = round_money(max(ZERO, remaining) + blocked)

    async def _release_closed_margin(
        self,
        uow: UnitOfWork,
        order: Order,
        update: PositionUpdate,
        reference_type: LedgerReferenceType,
    ) -> Decimal:
        """Release the closed share of the position's margin; everything when flat or reversed."""
        held = update.previous_blocked_margin
        closed = update.change.closing_quantity
        if not closed or held <= 0:
            return ZERO

        if closed >= abs(update.previous_quantity):
            release = held
        else:
            release = round_money(held * closed / abs(update.previous_quantity))
        if release <= 0:
            return ZERO

        wallet = await self.wallet_ledger.get_wallet(uow, order.user_id)
        if round_money(wallet.blocked_balance) <= 0:
            logger.bind(user_id=order.user_id, order_id=str(order.id)).warning(
                f"Position holds {held} margin but wallet has nothing blocked"
            )
            return release

        await self.wallet_ledger.release_margin_block(
            uow, order.user_id, release, reference_type, str(order.id),
            f"Margin released {closed} {order.trading_symbol or order.instrument_token}",
        )
        return release

    # =========================================================================
    # Fill attempts
    # =========================================================================

    async def _resolve_instrument(self, uow: UnitOfWork, token: str) -> Instrument:
        instrument = self.catalog.get(token)
        if instrument is None:
            # Contracts past the catalog's load window still settle
            instrument = await uow.instruments.get(token)
        if instrument is None:
            raise TradingError(
                ErrorCode.INSTRUMENT_NOT_FOUND,
                f"Instrument {token} not found",
                {"instrument_token": token},
            )
        return instrument

    async def resolve_fill_price(self, order: Order, instrument: Instrument) -> Optional[Decimal]:
        """
        Price to fill at, or None when the order cannot fill yet.

        EXPIRY exits fill at their settlement price. LIMIT orders fill at the
        limit once the market has crossed it.
        """
        if order.exit_reason == ExitReason.EXPIRY and order.limit_price is not None:
            # Worthless options settle at zero
            settlement = round_money(order.limit_price)
            return settlement if settlement >= 0 else None

        market = await self.price_oracle.get_instrument_price(instrument)
        if order.order_type == OrderType.MARKET:
            return market

        limit_price = to_price(order.limit_price)
        if limit_price is None:
            return None
        if order.side == OrderSide.BUY and market <= limit_price:
            return limit_price
        if order.side == OrderSide.SELL and market >= limit_price:
            return limit_price
        return None

    async def try_execute_order(self, order_id: UUID, force: bool = False) -> bool:
        """
        Attempt to fill one OPEN order.

        Returns True when the order was filled. INSUFFICIENT_FUNDS at fill
        time marks the order REJECTED and returns False. Orders that cannot
        fill yet (closed session, no price, unmarketable limit) stay OPEN.

        Raises:
            TradingError: NOT_FOUND, or anything other than insufficient funds
        """
        await self.catalog.ensure_initialized()
        async with self._uow_factory() as uow:
            order = await uow.orders.get_for_update(order_id)
            if order is None:
                raise TradingError(ErrorCode.NOT_FOUND, f"Order {order_id} not found")
            if order.status != OrderStatus.OPEN:
                logger.bind(order_id=str(order_id)).debug(f"Order already {order.status}")
                return False

            forced = force or order.exit_reason == ExitReason.EXPIRY
            if not forced and self.calendar.is_session_closed(self._clock()):
                logger.bind(order_id=str(order_id)).debug("Session closed, order stays staged")
                return False

            instrument = await self._resolve_instrument(uow, order.instrument_token)
            price = await self.resolve_fill_price(order, instrument)
            if price is None:
                return False

            try:
                await self.apply_trade(uow, order, instrument, price)
                await uow.commit()
                return True
            except TradingError as e:
                if e.code != ErrorCode.INSUFFICIENT_FUNDS:
                    raise
                reason = e.message

        await self._reject(order_id, reason)
        return False

    async def _reject(self, order_id: UUID, reason: str) -> None:
        async with self._uow_factory() as uow:
            order = await uow.orders.get_for_update(order_id)
            if order is None or order.status != OrderStatus.OPEN:
                return
            order.status = OrderStatus.REJECTED.value
            order.rejection_reason = reason
            await uow.commit()
        logger.bind(order_id=str(order_id)).warning(f"Order rejected at execution: {reason}")

    async def execute_open_orders(self) -> SweepResult:
        """
        Background sweep over every OPEN order, oldest first.

        A failure on one order is logged and the sweep moves on.
        """
        async with self._uow_factory() as uow:
            order_ids = [order.id for order in await uow.orders.get_open_orders()]

        result = SweepResult(scanned=len(order_ids))
        for order_id in order_ids:
            try:
                filled = await self.try_execute_order(order_id)
            except TradingError as e:
                result.failed += 1
                logger.bind(order_id=str(order_id), code=e.code.value).warning(
                    f"Sweep could not execute order: {e.message}"
                )
                continue
            except Exception as e:
                result.failed += 1
                logger.bind(order_id=str(order_id)).exception(f"Sweep execution failed: {e}")
                continue

            if filled:
                result.filled += 1
                continue

            async with self._uow_factory() as uow:
                order = await uow.orders.get(order_id)
                if order is not None and order.status == OrderStatus.REJECTED:
                    result.rejected += 1
                else:
                    result.pending += 1

        if result.scanned:
            logger.info(
                f"Execution sweep: scanned={result.scanned} filled={result.filled} "
                f"rejected={result.rejected} pending={result.pending} failed={result.failed}"
            )
        return result
