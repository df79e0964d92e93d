"""
Trading Safety Validator
PaperTrade Accounting Engine

Pre-trade guard chain. Guards run in order and the first failure
short-circuits:
1. Expiry     - contract already expired        -> EXPIRED_INSTRUMENT
2. Staleness  - MARKET order on an old/no tick  -> STALE_PRICE
3. Liquidity  - option without OI/volume        -> ILLIQUID_CONTRACT
4. Lot size   - quantity not a lot multiple     -> INVALID_LOT_SIZE
5. Leverage   - notional over balance ceiling   -> LEVERAGE_EXCEEDED

A rapid-duplicate guard follows the chain. With ``soft_guards`` enabled
(simulation mode) staleness, liquidity, lot-size and rapid-duplicate
failures are logged as HIGH_RISK_SIMULATION_TRADE instead of raised.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from loguru import logger

from papertrade.core.config import TradingSettings, get_settings
from papertrade.core.errors import DuplicateOrderError, ErrorCode, TradingError
from papertrade.db.models import Instrument, InstrumentType, OrderType
from papertrade.db.unit_of_work import UnitOfWork
from papertrade.schemas.trading import PlaceOrderRequest
from papertrade.services.market_calendar import Clock, ensure_aware, now_ist, to_utc
from papertrade.services.price_oracle import MarketQuote, PriceOracle, to_price


@dataclass
class SafetyCheckResult:
    """Outcome of a passed guard chain."""
    validated_at: datetime
    reference_price: Decimal
    estimated_notional: Decimal
    quote: Optional[MarketQuote] = None


class TradingSafetyValidator:
    """Sequential pre-trade guards."""

    def __init__(
        self,
        price_oracle: PriceOracle,
        config: Optional[TradingSettings] = None,
        clock: Clock = now_ist,
    ):
        self.price_oracle = price_oracle
        self.config = config or get_settings().trading
        self._clock = clock

    def _soft_fail(self, code: ErrorCode, message: str, **context) -> None:
        if self.config.soft_guards:
            logger.bind(event="HIGH_RISK_SIMULATION_TRADE", code=f"{code.value}_SOFT", **context).warning(
                f"{message} (allowed in simulation mode)"
            )
            return
        raise TradingError(code, message, context)

    # =========================================================================
    # Chain
    # =========================================================================

    async def validate(
        self,
        uow: UnitOfWork,
        user_id: str,
        request: PlaceOrderRequest,
        instrument: Instrument,
        available_balance: Decimal,
        skip_expiry_check: bool = False,
        reducing: bool = False,
    ) -> SafetyCheckResult:
        """
        Run every guard against one order.

        Args:
            uow: Unit of work for the duplicate lookup
            user_id: Order owner
            request: Order payload
            instrument: Resolved instrument
            available_balance: Wallet balance minus blocked margin
            skip_expiry_check: Expiry exits trade an already-expired contract
            reducing: Order only reduces an existing position (no leverage test)

        Returns:
            SafetyCheckResult with the reference price and notional

        Raises:
            TradingError: First failing guard
        """
        now = self._clock()

        if not skip_expiry_check:
            self.validate_expiry(instrument, now)

        quote = await self.price_oracle.get_quote(
            instrument.instrument_token, symbol_hint=instrument.trading_symbol
        )
        self.validate_staleness(request, instrument, quote, now)
        self.validate_liquidity(instrument, quote)
        self.validate_lot_size(request.quantity, instrument.lot_size)

        reference_price = self.resolve_reference_price(request, quote)
        notional = reference_price * request.quantity
        if not reducing:
            self.validate_leverage(notional, available_balance)

        await self.validate_rapid_duplicate(uow, user_id, request, instrument, now)

        return SafetyCheckResult(
            validated_at=now,
            reference_price=reference_price,
            estimated_notional=notional,
            quote=quote,
        )

    # =========================================================================
    # Guards
    # =========================================================================

    def validate_expiry(self, instrument: Instrument, now: datetime) -> None:
        if instrument.expiry is None:
            return
        expiry = ensure_aware(instrument.expiry)
        if expiry < ensure_aware(now):
            raise TradingError(
                ErrorCode.EXPIRED_INSTRUMENT,
                f"Instrument expired on {expiry.isoformat()}",
                {"instrument_token": instrument.instrument_token},
            )

    def validate_staleness(
        self,
        request: PlaceOrderRequest,
        instrument: Instrument,
        quote: Optional[MarketQuote],
        now: datetime,
    ) -> None:
        """MARKET orders need a fresh tick; LIMIT orders carry their own price."""
        if request.order_type != OrderType.MARKET:
            return

        token = instrument.instrument_token
        if quote is None or to_price(quote.price) is None:
            self._soft_fail(
                ErrorCode.STALE_PRICE, f"No usable tick for {instrument.trading_symbol}",
                instrument_token=token,
            )
            return

        if quote.last_updated is None:
            self._soft_fail(
                ErrorCode.STALE_PRICE, f"No tick timestamp for {instrument.trading_symbol}",
                instrument_token=token,
            )
            return

        age = (ensure_aware(now) - ensure_aware(quote.last_updated)).total_seconds()
        if age > self.config.stale_tick_max_age_seconds:
            self._soft_fail(
                ErrorCode.STALE_PRICE, f"Tick is stale ({round(age)}s old)",
                instrument_token=token, age_seconds=round(age, 2),
            )

    def validate_liquidity(self, instrument: Instrument, quote: Optional[MarketQuote]) -> None:
        """Options need open interest and non-zero traded volume."""
        if instrument.instrument_type != InstrumentType.OPTION:
            return

        volume = quote.volume if quote is not None and quote.volume is not None else 0
        oi = quote.open_interest if quote is not None and quote.open_interest is not None else 0

        if oi < self.config.option_min_open_interest or volume == 0:
            self._soft_fail(
                ErrorCode.ILLIQUID_CONTRACT,
                f"Option liquidity check failed (oi={oi}, volume={volume})",
                instrument_token=instrument.instrument_token, oi=oi, volume=volume,
            )

    def validate_lot_size(self, quantity: int, lot_size: Optional[int]) -> None:
        lot = int(lot_size or 0)
        if lot <= 0 or quantity % lot != 0:
            self._soft_fail(
                ErrorCode.INVALID_LOT_SIZE,
                f"Quantity {quantity} is not a valid multiple of lot size {lot}",
                quantity=quantity, lot_size=lot,
            )

    def validate_leverage(self, notional: Decimal, available_balance: Decimal) -> None:
        ceiling = Decimal(available_balance) * self.config.max_leverage
        if notional > 0 and notional > ceiling:
            raise TradingError(
                ErrorCode.LEVERAGE_EXCEEDED,
                f"Order notional INR {notional:.2f} exceeds leverage ceiling INR {ceiling:.2f}",
                {"notional": str(notional), "ceiling": str(ceiling)},
            )

    async def validate_rapid_duplicate(
        self,
        uow: UnitOfWork,
        user_id: str,
        request: PlaceOrderRequest,
        instrument: Instrument,
        now: datetime,
    ) -> None:
        """Same shape order within the duplicate window. Keyed orders are handled upstream."""
        if request.idempotency_key:
            return

        since = to_utc(now) - timedelta(seconds=self.config.duplicate_window_seconds)
        recent = await uow.orders.find_recent_duplicate(
            user_id=user_id,
            instrument_token=instrument.instrument_token,
            side=request.side.value,
            quantity=request.quantity,
            order_type=request.order_type.value,
            since=since,
            limit_price=request.limit_price if request.order_type == OrderType.LIMIT else None,
        )
        if recent is None:
            return

        if self.config.soft_guards:
            logger.bind(
                event="HIGH_RISK_SIMULATION_TRADE",
                code="DUPLICATE_ORDER_SOFT",
                user_id=user_id,
                instrument_token=instrument.instrument_token,
            ).warning("Rapid duplicate order allowed in simulation mode")
            return
        raise DuplicateOrderError("Rapid duplicate order blocked")

    @staticmethod
    def resolve_reference_price(request: PlaceOrderRequest, quote: Optional[MarketQuote]) -> Decimal:
        if request.order_type == OrderType.LIMIT and request.limit_price:
            return Decimal(request.limit_price)
        if quote is not None:
            price = to_price(quote.price)
            if price is not None:
                return price
        return Decimal("0")
