"""
Typed Trading Errors
PaperTrade Accounting Engine

Every failure surfaced by the engine is a TradingError carrying:
- A machine code (ErrorCode)
- An HTTP-style status class
- A category and severity for routing and alerting

Guard failures are user-recoverable and surfaced verbatim. Infrastructure
failures are logged and surfaced as 5xx without in-core retry.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorSeverity(str, Enum):
    """Error severity levels."""
    LOW = "low"           # User-recoverable guard failures
    MEDIUM = "medium"     # Recoverable infrastructure errors
    HIGH = "high"         # Serious errors requiring attention
    CRITICAL = "critical" # Invariant violations


class ErrorCategory(str, Enum):
    """Error categories for routing and handling."""
    VALIDATION = "validation"         # Bad input / unknown identity
    RISK = "risk"                     # Pre-trade guard rejections
    MARKET_DATA = "market_data"       # Price feed exhausted or stale
    STATE = "state"                   # Illegal state transitions, duplicates
    INFRASTRUCTURE = "infrastructure" # Store / catalog / unexpected failures


class ErrorCode(str, Enum):
    """Machine-readable error codes."""
    MISSING_INSTRUMENT_TOKEN = "MISSING_INSTRUMENT_TOKEN"
    INVALID_INSTRUMENT_TOKEN = "INVALID_INSTRUMENT_TOKEN"
    INSTRUMENT_NOT_FOUND = "INSTRUMENT_NOT_FOUND"
    INSTRUMENT_INACTIVE = "INSTRUMENT_INACTIVE"
    INSTRUMENT_NOT_ALLOWED = "INSTRUMENT_NOT_ALLOWED"
    INVALID_INSTRUMENT_TYPE = "INVALID_INSTRUMENT_TYPE"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INVALID_AMOUNT = "INVALID_AMOUNT"

    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    EXPIRED_INSTRUMENT = "EXPIRED_INSTRUMENT"
    EXPIRY_POSITION_BLOCKED = "EXPIRY_POSITION_BLOCKED"
    STALE_PRICE = "STALE_PRICE"
    ILLIQUID_CONTRACT = "ILLIQUID_CONTRACT"
    INVALID_LOT_SIZE = "INVALID_LOT_SIZE"
    LEVERAGE_EXCEEDED = "LEVERAGE_EXCEEDED"
    MARGIN_TOO_HIGH = "MARGIN_TOO_HIGH"
    MARKET_CLOSED = "MARKET_CLOSED"

    MARKET_PRICE_UNAVAILABLE = "MARKET_PRICE_UNAVAILABLE"

    DUPLICATE_ORDER = "DUPLICATE_ORDER"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    NOT_FOUND = "NOT_FOUND"
    POSITION_NOT_FOUND = "POSITION_NOT_FOUND"

    INVALID_MARGIN_CALCULATION = "INVALID_MARGIN_CALCULATION"
    POSITION_INVARIANT_VIOLATION = "POSITION_INVARIANT_VIOLATION"
    CATALOG_NOT_READY = "CATALOG_NOT_READY"
    CATALOG_INIT_FAILED = "CATALOG_INIT_FAILED"
    ORDER_PLACEMENT_FAILED = "ORDER_PLACEMENT_FAILED"
    EXECUTION_FAILED = "EXECUTION_FAILED"


@dataclass(frozen=True)
class ErrorProfile:
    """Static status/category/severity for an error code."""
    status_code: int
    category: ErrorCategory
    severity: ErrorSeverity = ErrorSeverity.LOW


ERROR_PROFILES: Dict[ErrorCode, ErrorProfile] = {
    ErrorCode.MISSING_INSTRUMENT_TOKEN: ErrorProfile(400, ErrorCategory.VALIDATION),
    ErrorCode.INVALID_INSTRUMENT_TOKEN: ErrorProfile(400, ErrorCategory.VALIDATION),
    ErrorCode.INSTRUMENT_NOT_FOUND: ErrorProfile(404, ErrorCategory.VALIDATION),
    ErrorCode.INSTRUMENT_INACTIVE: ErrorProfile(400, ErrorCategory.VALIDATION),
    ErrorCode.INSTRUMENT_NOT_ALLOWED: ErrorProfile(403, ErrorCategory.VALIDATION),
    ErrorCode.INVALID_INSTRUMENT_TYPE: ErrorProfile(400, ErrorCategory.VALIDATION),
    ErrorCode.INVALID_QUANTITY: ErrorProfile(400, ErrorCategory.VALIDATION),
    ErrorCode.INVALID_AMOUNT: ErrorProfile(400, ErrorCategory.VALIDATION),

    ErrorCode.INSUFFICIENT_FUNDS: ErrorProfile(400, ErrorCategory.RISK),
    ErrorCode.EXPIRED_INSTRUMENT: ErrorProfile(400, ErrorCategory.RISK),
    ErrorCode.EXPIRY_POSITION_BLOCKED: ErrorProfile(400, ErrorCategory.RISK),
    ErrorCode.STALE_PRICE: ErrorProfile(400, ErrorCategory.RISK),
    ErrorCode.ILLIQUID_CONTRACT: ErrorProfile(400, ErrorCategory.RISK),
    ErrorCode.INVALID_LOT_SIZE: ErrorProfile(400, ErrorCategory.RISK),
    ErrorCode.LEVERAGE_EXCEEDED: ErrorProfile(400, ErrorCategory.RISK),
    ErrorCode.MARGIN_TOO_HIGH: ErrorProfile(400, ErrorCategory.RISK),
    ErrorCode.MARKET_CLOSED: ErrorProfile(400, ErrorCategory.RISK),

    ErrorCode.MARKET_PRICE_UNAVAILABLE: ErrorProfile(503, ErrorCategory.MARKET_DATA, ErrorSeverity.MEDIUM),

    ErrorCode.DUPLICATE_ORDER: ErrorProfile(409, ErrorCategory.STATE),
    ErrorCode.INVALID_STATE_TRANSITION: ErrorProfile(400, ErrorCategory.STATE),
    ErrorCode.NOT_FOUND: ErrorProfile(404, ErrorCategory.STATE),
    ErrorCode.POSITION_NOT_FOUND: ErrorProfile(404, ErrorCategory.STATE),

    ErrorCode.INVALID_MARGIN_CALCULATION: ErrorProfile(500, ErrorCategory.INFRASTRUCTURE, ErrorSeverity.HIGH),
    ErrorCode.POSITION_INVARIANT_VIOLATION: ErrorProfile(500, ErrorCategory.INFRASTRUCTURE, ErrorSeverity.CRITICAL),
    ErrorCode.CATALOG_NOT_READY: ErrorProfile(503, ErrorCategory.INFRASTRUCTURE, ErrorSeverity.MEDIUM),
    ErrorCode.CATALOG_INIT_FAILED: ErrorProfile(503, ErrorCategory.INFRASTRUCTURE, ErrorSeverity.HIGH),
    ErrorCode.ORDER_PLACEMENT_FAILED: ErrorProfile(500, ErrorCategory.INFRASTRUCTURE, ErrorSeverity.HIGH),
    ErrorCode.EXECUTION_FAILED: ErrorProfile(500, ErrorCategory.INFRASTRUCTURE, ErrorSeverity.HIGH),
}


class TradingError(Exception):
    """Base error for every engine failure."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        profile = ERROR_PROFILES[code]
        self.code = code
        self.message = message
        self.status_code = profile.status_code
        self.category = profile.category
        self.severity = profile.severity
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc)

    @property
    def is_client_error(self) -> bool:
        return self.status_code < 500

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "status_code": self.status_code,
            "category": self.category.value,
            "severity": self.severity.value,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    def __repr__(self) -> str:
        return f"<TradingError {self.code.value} ({self.status_code}): {self.message}>"


class DuplicateOrderError(TradingError):
    """
    Raised when a submission repeats an earlier one.

    When the duplicate was detected through an idempotency key, ``original``
    holds the order that was persisted the first time.
    """

    def __init__(self, message: str, original: Any = None):
        details = {"original_order_id": str(original.id)} if original is not None else {}
        super().__init__(ErrorCode.DUPLICATE_ORDER, message, details)
        self.original = original


class InsufficientFundsError(TradingError):
    """Available balance does not cover the requested amount."""

    def __init__(self, available, required):
        super().__init__(
            ErrorCode.INSUFFICIENT_FUNDS,
            f"Insufficient balance. Available: INR {available:.2f}, Required: INR {required:.2f}",
            {"available": str(available), "required": str(required)},
        )
        self.available = available
        self.required = required
