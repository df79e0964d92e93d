"""
Expiry Settlement Coordinator
PaperTrade Accounting Engine

Closes derivative positions whose contract expires today (IST) or earlier.

- Runs only in the settlement window (at or after 15:30 IST) unless forced
- FUTURE positions settle at the oracle price of the contract
- OPTION positions settle at intrinsic value from the underlying price:
  CE max(U - K, 0), PE max(K - U, 0); out-of-the-money options settle at zero
- Each close is a forced MARKET order with exit_reason=EXPIRY and the
  idempotency key SETTLEMENT-{token}-{YYYYMMDD}-{user}, so a repeated cycle
  skips positions it already settled
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Tuple

from loguru import logger

from papertrade.core.errors import ErrorCode, TradingError
from papertrade.db.models import (
    ExitReason,
    Instrument,
    InstrumentType,
    OptionType,
    OrderSide,
    OrderStatus,
    OrderType,
    Position,
)
from papertrade.db.unit_of_work import UnitOfWorkFactory
from papertrade.schemas.trading import PlaceOrderRequest
from papertrade.services.instrument_catalog import InstrumentCatalog
from papertrade.services.market_calendar import Clock, MarketCalendar, now_ist
from papertrade.services.order_manager import OrderManager
from papertrade.services.price_oracle import PriceOracle
from papertrade.services.trading_universe import normalize_underlying
from papertrade.utils.money import ZERO, round_money, to_decimal


class SettlementStatus(str, Enum):
    SKIPPED_WINDOW = "SKIPPED_WINDOW"
    NO_EXPIRIES = "NO_EXPIRIES"
    SETTLED = "SETTLED"


@dataclass
class SettlementResult:
    status: SettlementStatus
    instruments: int = 0
    settled: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


def intrinsic_value(option_type: OptionType, underlying_price: Decimal, strike: Decimal) -> Decimal:
    underlying_price = to_decimal(underlying_price)
    strike = to_decimal(strike)
    if OptionType(option_type) == OptionType.CE:
        value = underlying_price - strike
    else:
        value = strike - underlying_price
    return round_money(max(ZERO, value))


def settlement_key(instrument_token: str, date_key: str, user_id: str) -> str:
    return f"SETTLEMENT-{instrument_token}-{date_key}-{user_id}"


class ExpirySettlementCoordinator:
    """Forces closure of expired futures and options."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        order_manager: OrderManager,
        price_oracle: PriceOracle,
        catalog: InstrumentCatalog,
        calendar: Optional[MarketCalendar] = None,
        clock: Clock = now_ist,
    ):
        self._uow_factory = uow_factory
        self.order_manager = order_manager
        self.price_oracle = price_oracle
        self.catalog = catalog
        self.calendar = calendar or MarketCalendar()
        self._clock = clock

    async def run_settlement_cycle(
        self,
        now: Optional[datetime] = None,
        force: bool = False,
    ) -> SettlementResult:
        """
        Settle every due derivative position once.

        Args:
            now: Evaluation time (defaults to the clock)
            force: Run outside the settlement window

        Returns:
            SettlementResult with per-position counts
        """
        now = now or self._clock()
        if not force and not self.calendar.is_settlement_window(now):
            return SettlementResult(status=SettlementStatus.SKIPPED_WINDOW)

        await self.catalog.ensure_initialized()

        today = self.calendar.local_date(now)
        async with self._uow_factory() as uow:
            rows = await uow.positions.get_open_derivative_positions()

        due: Dict[str, Tuple[Instrument, List[Position]]] = {}
        for position, instrument in rows:
            if self.calendar.local_date(instrument.expiry) > today:
                continue
            due.setdefault(instrument.instrument_token, (instrument, []))[1].append(position)

        if not due:
            return SettlementResult(status=SettlementStatus.NO_EXPIRIES)

        date_key = self.calendar.date_key(now)
        result = SettlementResult(status=SettlementStatus.SETTLED, instruments=len(due))
        logger.bind(event="EXPIRY_SETTLEMENT_STARTED", settlement_date=date_key).warning(
            f"Expiry settlement started for {len(due)} instruments"
        )

        for token, (instrument, positions) in due.items():
            try:
                price, intrinsic = await self._settlement_price(instrument)
            except TradingError as e:
                result.failed += len(positions)
                result.errors.append(f"{token}: {e.message}")
                logger.bind(instrument_token=token, code=e.code.value).error(
                    f"Cannot price {instrument.trading_symbol} for settlement: {e.message}"
                )
                continue

            for position in positions:
                await self._settle_position(position, instrument, price, intrinsic, date_key, force, result)

        logger.bind(event="EXPIRY_SETTLEMENT_FINISHED", settlement_date=date_key).warning(
            f"Expiry settlement: settled={result.settled} skipped={result.skipped} failed={result.failed}"
        )
        return result

    async def _settlement_price(self, instrument: Instrument) -> Tuple[Decimal, Optional[Decimal]]:
        """(settlement price, intrinsic value or None for futures)."""
        if instrument.instrument_type == InstrumentType.FUTURE:
            price = await self.price_oracle.get_instrument_price(instrument)
            return round_money(price), None

        if instrument.option_type is None or instrument.strike is None:
            raise TradingError(
                ErrorCode.INSTRUMENT_NOT_FOUND,
                f"Option {instrument.trading_symbol} lacks strike or option type",
                {"instrument_token": instrument.instrument_token},
            )
        underlying_price = await self._underlying_price(instrument)
        intrinsic = intrinsic_value(OptionType(instrument.option_type), underlying_price, instrument.strike)
        return intrinsic, intrinsic

    async def _underlying_price(self, instrument: Instrument) -> Decimal:
        underlying = self.catalog.get_underlying_instrument(instrument.name)
        if underlying is not None:
            return await self.price_oracle.get_instrument_price(underlying)
        name = normalize_underlying(instrument.name)
        return await self.price_oracle.get_best_price(name, symbol_hint=instrument.name)

    async def _settle_position(
        self,
        position: Position,
        instrument: Instrument,
        price: Decimal,
        intrinsic: Optional[Decimal],
        date_key: str,
        force: bool,
        result: SettlementResult,
    ) -> None:
        key = settlement_key(instrument.instrument_token, date_key, position.user_id)
        log = logger.bind(user_id=position.user_id, instrument_token=instrument.instrument_token)

        async with self._uow_factory() as uow:
            existing = await uow.orders.get_by_idempotency_key(position.user_id, key)
        if existing is not None:
            result.skipped += 1
            log.debug(f"Already settled under {key}")
            return

        side = OrderSide.SELL if position.quantity > 0 else OrderSide.BUY
        request = PlaceOrderRequest(
            instrument_token=instrument.instrument_token,
            side=side,
            quantity=abs(position.quantity),
            order_type=OrderType.MARKET,
            idempotency_key=key,
            exit_reason=ExitReason.EXPIRY,
            settlement_price=price,
        )

        try:
            order = await self.order_manager.place_order(position.user_id, request, force=force)
        except TradingError as e:
            result.failed += 1
            result.errors.append(f"{instrument.instrument_token}/{position.user_id}: {e.message}")
            log.error(f"Settlement order failed: {e.message}")
            return

        if order.status != OrderStatus.FILLED:
            result.failed += 1
            result.errors.append(f"{instrument.instrument_token}/{position.user_id}: order {order.status}")
            log.warning(f"Settlement order {order.id} left {order.status}")
            return

        result.settled += 1
        log.bind(event="POSITION_SETTLED").warning(
            f"Position settled: {side.value} {abs(position.quantity)} {instrument.trading_symbol} @ {price}"
        )

        if instrument.instrument_type == InstrumentType.OPTION:
            if intrinsic is not None and intrinsic > 0:
                log.bind(event="OPTION_EXERCISED", intrinsic_value=str(intrinsic)).warning(
                    f"OPTION_EXERCISED {instrument.trading_symbol} intrinsic {intrinsic}"
                )
            else:
                log.bind(event="OPTION_EXPIRED").warning(
                    f"OPTION_EXPIRED {instrument.trading_symbol} worthless"
                )
