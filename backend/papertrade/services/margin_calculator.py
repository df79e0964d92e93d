"""
Margin Calculator
PaperTrade Accounting Engine

Required collateral per instrument type:
- EQUITY:       price x quantity
- FUTURE:       notional x futures margin rate (SPAN proxy), divided by leverage
- OPTION BUY:   premium (price x quantity)
- OPTION SELL:  premium + premium x seller surcharge
- INDEX:        not tradable

Quantities are in units, always a multiple of the lot size, so the lot
factor is already part of the notional.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from loguru import logger

from papertrade.core.config import TradingSettings, get_settings
from papertrade.core.errors import ErrorCode, TradingError
from papertrade.db.models import Instrument, InstrumentType, OrderSide, OrderType
from papertrade.services.price_oracle import PriceOracle, to_price
from papertrade.utils.money import round_money, to_decimal


@dataclass
class MarginRequest:
    """The parts of an order that drive margin."""
    side: OrderSide
    quantity: int
    order_type: OrderType = OrderType.MARKET
    limit_price: Optional[Decimal] = None
    leverage: Optional[Decimal] = None

    @classmethod
    def from_order(cls, order) -> "MarginRequest":
        """Build from anything with side/quantity/order_type/limit_price (schema or ORM row)."""
        return cls(
            side=OrderSide(order.side),
            quantity=int(order.quantity),
            order_type=OrderType(order.order_type),
            limit_price=order.limit_price,
            leverage=getattr(order, "leverage", None),
        )


class MarginCalculator:
    """Collateral rules per instrument type."""

    def __init__(
        self,
        price_oracle: PriceOracle,
        config: Optional[TradingSettings] = None,
    ):
        self.price_oracle = price_oracle
        self.config = config or get_settings().trading

    # =========================================================================
    # Price resolution
    # =========================================================================

    async def resolve_execution_price(self, request: MarginRequest, instrument: Instrument) -> Decimal:
        """Positive LIMIT price if given, otherwise the oracle's best price."""
        if request.order_type == OrderType.LIMIT:
            limit_price = to_price(request.limit_price)
            if limit_price is not None:
                return limit_price
        return await self.price_oracle.get_instrument_price(instrument)

    # =========================================================================
    # Rules
    # =========================================================================

    @staticmethod
    def _effective_leverage(leverage: Optional[Decimal]) -> Decimal:
        value = to_price(leverage)
        if value is None:
            return Decimal("1")
        return max(Decimal("1"), value)

    def margin_at_price(
        self,
        instrument: Instrument,
        side: OrderSide,
        quantity: int,
        price: Decimal,
        leverage: Optional[Decimal] = None,
    ) -> Decimal:
        """Required margin for a known price. Non-decreasing in quantity."""
        qty = Decimal(max(0, int(quantity)))
        price = to_decimal(price)
        instrument_type = InstrumentType(instrument.instrument_type)

        if instrument_type == InstrumentType.EQUITY:
            margin = price * qty

        elif instrument_type == InstrumentType.FUTURE:
            notional = price * qty
            margin = notional * self.config.futures_margin_rate / self._effective_leverage(leverage)

        elif instrument_type == InstrumentType.OPTION:
            premium = price * qty
            if OrderSide(side) == OrderSide.BUY:
                margin = premium
            else:
                margin = premium + premium * self.config.option_seller_surcharge

        elif instrument_type == InstrumentType.INDEX:
            raise TradingError(
                ErrorCode.INVALID_INSTRUMENT_TYPE,
                "Indices cannot be traded directly",
                {"instrument_token": instrument.instrument_token},
            )

        else:  # pragma: no cover - closed enum
            raise TradingError(
                ErrorCode.INVALID_INSTRUMENT_TYPE,
                f"Unsupported instrument type: {instrument.instrument_type}",
            )

        return round_money(margin)

    async def calculate_required_margin(self, request, instrument: Instrument) -> Decimal:
        """
        Required margin for an order or order request.

        Args:
            request: MarginRequest, PlaceOrderRequest or Order row
            instrument: Resolved instrument

        Returns:
            Margin rounded to 2 decimals

        Raises:
            TradingError: INVALID_INSTRUMENT_TYPE, MARKET_PRICE_UNAVAILABLE
        """
        if not isinstance(request, MarginRequest):
            request = MarginRequest.from_order(request)

        if InstrumentType(instrument.instrument_type) == InstrumentType.INDEX:
            # Reject before spending a price lookup
            return self.margin_at_price(instrument, request.side, request.quantity, Decimal("0"))

        price = await self.resolve_execution_price(request, instrument)
        margin = self.margin_at_price(
            instrument, request.side, request.quantity, price, request.leverage
        )
        logger.bind(instrument_token=instrument.instrument_token).debug(
            f"Margin for {request.side.value} {request.quantity} {instrument.trading_symbol} @ {price}: {margin}"
        )
        return margin

    async def calculate_total_margin(self, items: Iterable) -> Decimal:
        """Sum of margins for (request, instrument) pairs."""
        total = Decimal("0.00")
        for request, instrument in items:
            total += await self.calculate_required_margin(request, instrument)
        return round_money(total)

    def validate_margin_requirement(
        self,
        margin: Decimal,
        max_allowed: Optional[Decimal] = None,
    ) -> bool:
        """
        Enforce 0 <= margin <= ceiling.

        Raises:
            TradingError: INVALID_MARGIN_CALCULATION for negative or non-finite
                values, MARGIN_TOO_HIGH above the ceiling
        """
        ceiling = max_allowed if max_allowed is not None else self.config.max_margin_per_order
        margin = to_decimal(margin)
        if not margin.is_finite():
            raise TradingError(ErrorCode.INVALID_MARGIN_CALCULATION, "Margin calculation overflow")
        if margin < 0:
            raise TradingError(ErrorCode.INVALID_MARGIN_CALCULATION, "Margin cannot be negative")
        if margin > ceiling:
            raise TradingError(
                ErrorCode.MARGIN_TOO_HIGH,
                f"Margin requirement (INR {margin}) exceeds maximum allowed (INR {ceiling})",
                {"margin": str(margin), "max_allowed": str(ceiling)},
            )
        return True
