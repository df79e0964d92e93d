"""
Order Manager
PaperTrade Accounting Engine

Owns order placement and the order state machine:

    OPEN -> FILLED | CANCELLED | REJECTED

Placement pipeline:
1. Idempotency key lookup (a repeat returns the original order)
2. Resolve the instrument strictly by token
3. Inactive / universe checks
4. Expiry-day guard (only reducing orders on the last day)
5. Market session (forced exits bypass, staging when enabled)
6. Safety guard chain
7. Margin and available-balance check
8. Persist the OPEN order
9. MARKET orders execute inline; a failed attempt leaves the order OPEN
   for the execution sweep
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy.exc import IntegrityError

from papertrade.core.config import Settings, TradingSettings, get_settings
from papertrade.core.errors import (
    DuplicateOrderError,
    ErrorCode,
    InsufficientFundsError,
    TradingError,
)
from papertrade.db.models import (
    ExitReason,
    Instrument,
    Order,
    OrderSide,
    OrderStatus,
    OrderType,
)
from papertrade.db.unit_of_work import UnitOfWorkFactory
from papertrade.schemas.trading import OrderQuery, PlaceOrderRequest
from papertrade.services.execution_engine import ExecutionEngine
from papertrade.services.instrument_catalog import InstrumentCatalog
from papertrade.services.margin_calculator import MarginCalculator, MarginRequest
from papertrade.services.market_calendar import Clock, MarketCalendar, now_ist, to_utc
from papertrade.services.trading_safety import TradingSafetyValidator
from papertrade.services.trading_universe import TradingUniverse
from papertrade.services.wallet_ledger import WalletLedger


def is_reducing(current_quantity: int, side: OrderSide, quantity: int) -> bool:
    """True when the order only shrinks an existing position."""
    if current_quantity == 0:
        return False
    opposes = (current_quantity > 0 and side == OrderSide.SELL) or (
        current_quantity < 0 and side == OrderSide.BUY
    )
    return opposes and quantity <= abs(current_quantity)


class OrderManager:
    """Validates, persists and triggers execution of orders."""

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        catalog: InstrumentCatalog,
        universe: TradingUniverse,
        safety_validator: TradingSafetyValidator,
        margin_calculator: MarginCalculator,
        wallet_ledger: WalletLedger,
        execution_engine: ExecutionEngine,
        calendar: Optional[MarketCalendar] = None,
        config: Optional[TradingSettings] = None,
        settings: Optional[Settings] = None,
        clock: Clock = now_ist,
    ):
        self._uow_factory = uow_factory
        self.catalog = catalog
        self.universe = universe
        self.safety_validator = safety_validator
        self.margin_calculator = margin_calculator
        self.wallet_ledger = wallet_ledger
        self.execution_engine = execution_engine
        self.calendar = calendar or MarketCalendar()
        self.settings = settings or get_settings()
        self.config = config or self.settings.trading
        self._clock = clock

    @property
    def after_hours_staging_enabled(self) -> bool:
        """Staging is a non-production convenience only."""
        return not self.settings.is_production and self.config.allow_after_hours_staging

    # =========================================================================
    # Placement
    # =========================================================================

    async def place_order(
        self,
        user_id: str,
        payload: PlaceOrderRequest,
        force: bool = False,
    ) -> Order:
        """
        Place an order.

        Args:
            user_id: Order owner
            payload: Validated order request
            force: Admin/settlement override of the session and guard chain

        Returns:
            The persisted order (the original one for a repeated idempotency key)

        Raises:
            TradingError: Any guard failure, or ORDER_PLACEMENT_FAILED for
                unexpected errors
        """
        try:
            return await self._place_order(user_id, payload, force)
        except DuplicateOrderError as e:
            if e.original is None:
                raise
            logger.bind(
                user_id=user_id,
                order_id=str(e.original.id),
                idempotency_key=payload.idempotency_key,
            ).info("Duplicate submission resolved to original order")
            return e.original
        except TradingError as e:
            logger.bind(user_id=user_id, code=e.code.value).warning(f"Order rejected: {e.message}")
            raise
        except Exception as e:
            logger.bind(user_id=user_id).exception(f"Order placement failed: {e}")
            raise TradingError(
                ErrorCode.ORDER_PLACEMENT_FAILED,
                "Order placement failed",
                {"reason": str(e)},
            ) from e

    async def _place_order(self, user_id: str, payload: PlaceOrderRequest, force: bool) -> Order:
        if payload.idempotency_key:
            await self._raise_if_duplicate(user_id, payload.idempotency_key)

        is_expiry_exit = payload.exit_reason == ExitReason.EXPIRY
        instrument = await self._resolve_instrument(payload, is_expiry_exit)

        if not instrument.is_active and not is_expiry_exit:
            raise TradingError(
                ErrorCode.INSTRUMENT_INACTIVE,
                f"{instrument.trading_symbol} is not active",
                {"instrument_token": instrument.instrument_token},
            )

        if not is_expiry_exit:
            decision = self.universe.is_instrument_allowed(instrument)
            if not decision.allowed:
                raise TradingError(
                    ErrorCode.INSTRUMENT_NOT_ALLOWED,
                    decision.reason or f"{instrument.trading_symbol} is outside the trading universe",
                    {"instrument_token": instrument.instrument_token},
                )

        now = self._clock()
        forced = force or is_expiry_exit

        async with self._uow_factory() as uow:
            position = await uow.positions.get_position(user_id, instrument.instrument_token)
            current_quantity = position.quantity if position is not None else 0
            reducing = is_reducing(current_quantity, payload.side, payload.quantity)

            self._check_expiry_day(instrument, now, current_quantity, reducing)

            closed = self.calendar.is_session_closed(now)
            staged = closed and not forced and self.after_hours_staging_enabled
            if closed and not forced and not staged:
                raise TradingError(
                    ErrorCode.MARKET_CLOSED,
                    "Market is closed",
                    {"instrument_token": instrument.instrument_token},
                )

            available = await self.wallet_ledger.get_available_balance(uow, user_id)

            if not staged and not forced:
                await self.safety_validator.validate(
                    uow, user_id, payload, instrument, available, reducing=reducing,
                )

            margin = await self._required_margin(payload, instrument, is_expiry_exit)
            self.margin_calculator.validate_margin_requirement(margin)
            if not reducing and margin > available:
                raise InsufficientFundsError(available, margin)

            order = Order(
                user_id=user_id,
                instrument_token=instrument.instrument_token,
                trading_symbol=instrument.trading_symbol,
                side=payload.side.value,
                quantity=payload.quantity,
                order_type=payload.order_type.value,
                limit_price=self._order_price(payload, is_expiry_exit),
                leverage=payload.leverage,
                status=OrderStatus.OPEN.value,
                idempotency_key=payload.idempotency_key,
                exit_reason=payload.exit_reason.value if payload.exit_reason else None,
                created_at=to_utc(now),
            )
            try:
                await uow.orders.add(order)
                await uow.commit()
            except IntegrityError:
                # Concurrent submission with the same idempotency key won the insert
                await uow.rollback()
                if payload.idempotency_key:
                    await self._raise_if_duplicate(user_id, payload.idempotency_key)
                raise

        log = logger.bind(
            order_id=str(order.id),
            user_id=user_id,
            instrument_token=order.instrument_token,
        )
        if staged:
            log.info(f"Order staged after hours: {order.side} {order.quantity} {order.trading_symbol}")
            return order
        log.info(
            f"Order placed: {order.side} {order.quantity} {order.trading_symbol} "
            f"{order.order_type} margin={margin}"
        )

        if payload.order_type == OrderType.MARKET:
            try:
                await self.execution_engine.try_execute_order(order.id, force=forced)
            except Exception as e:
                log.error(f"Inline execution failed, order stays OPEN for the sweep: {e}")
            return await self.get_order(user_id, order.id)

        return order

    async def _raise_if_duplicate(self, user_id: str, key: str) -> None:
        async with self._uow_factory() as uow:
            existing = await uow.orders.get_by_idempotency_key(user_id, key)
        if existing is not None:
            raise DuplicateOrderError(f"Order with idempotency key {key} already exists", original=existing)

    async def _resolve_instrument(self, payload: PlaceOrderRequest, is_expiry_exit: bool) -> Instrument:
        token = (payload.instrument_token or "").strip()
        if not token:
            raise TradingError(
                ErrorCode.MISSING_INSTRUMENT_TOKEN,
                "instrument_token is required; symbol-only orders are not accepted",
                {"symbol": payload.symbol},
            )

        await self.catalog.ensure_initialized()
        instrument = self.catalog.get(token)
        if instrument is None and is_expiry_exit:
            # Expired contracts drop out of the catalog but still settle
            async with self._uow_factory() as uow:
                instrument = await uow.instruments.get(token)
        if instrument is None:
            raise TradingError(
                ErrorCode.INVALID_INSTRUMENT_TOKEN,
                f"Unknown instrument token {token}",
                {"instrument_token": token},
            )
        return instrument

    def _check_expiry_day(
        self,
        instrument: Instrument,
        now: datetime,
        current_quantity: int,
        reducing: bool,
    ) -> None:
        """On (or past) the expiry day only orders that shrink an open position pass."""
        if instrument.expiry is None or not instrument.is_derivative:
            return
        if self.calendar.days_to_expiry(instrument.expiry, now) > 0:
            return
        if reducing:
            return
        raise TradingError(
            ErrorCode.EXPIRY_POSITION_BLOCKED,
            "New exposure is blocked on expiry day; only reducing orders are allowed",
            {
                "instrument_token": instrument.instrument_token,
                "position_quantity": current_quantity,
            },
        )

    async def _required_margin(
        self,
        payload: PlaceOrderRequest,
        instrument: Instrument,
        is_expiry_exit: bool,
    ) -> Decimal:
        if is_expiry_exit and payload.settlement_price is not None:
            return self.margin_calculator.margin_at_price(
                instrument, payload.side, payload.quantity, payload.settlement_price, payload.leverage
            )
        return await self.margin_calculator.calculate_required_margin(
            MarginRequest.from_order(payload), instrument
        )

    @staticmethod
    def _order_price(payload: PlaceOrderRequest, is_expiry_exit: bool) -> Optional[Decimal]:
        if payload.order_type == OrderType.LIMIT:
            return payload.limit_price
        if is_expiry_exit:
            return payload.settlement_price
        return None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def cancel_order(self, user_id: str, order_id: UUID) -> Order:
        """
        Cancel an OPEN order.

        Raises:
            TradingError: NOT_FOUND, INVALID_STATE_TRANSITION
        """
        async with self._uow_factory() as uow:
            order = await uow.orders.get_for_user(user_id, order_id)
            if order is None:
                raise TradingError(ErrorCode.NOT_FOUND, f"Order {order_id} not found")
            if order.status != OrderStatus.OPEN:
                raise TradingError(
                    ErrorCode.INVALID_STATE_TRANSITION,
                    f"Cannot cancel order in status {order.status}",
                    {"order_id": str(order_id), "status": order.status},
                )
            order.status = OrderStatus.CANCELLED.value
            await uow.commit()

        logger.bind(order_id=str(order_id), user_id=user_id).info("Order cancelled")
        return order

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_order(self, user_id: str, order_id: UUID) -> Order:
        async with self._uow_factory() as uow:
            order = await uow.orders.get_for_user(user_id, order_id)
        if order is None:
            raise TradingError(ErrorCode.NOT_FOUND, f"Order {order_id} not found")
        return order

    async def get_orders(self, user_id: str, query: Optional[OrderQuery] = None) -> List[Order]:
        """Orders for a user, newest first."""
        query = query or OrderQuery(limit=self.config.order_page_size)
        async with self._uow_factory() as uow:
            return await uow.orders.list_for_user(
                user_id,
                status=query.status.value if query.status else None,
                instrument_token=query.instrument_token,
                limit=query.limit,
                offset=query.offset,
            )
