"""
Market Calendar - Session Hours & Expiry Arithmetic
PaperTrade Accounting Engine

Handles:
- NSE trading session test (Mon-Fri, 09:15-15:30 IST)
- Expiry-day arithmetic on IST calendar days
- Settlement window after the close

All timestamps written to the store are UTC. SQLite returns naive values,
which are read back as UTC.
"""

from datetime import date, datetime, time, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from papertrade.core.config import TradingSettings, get_settings


IST = ZoneInfo("Asia/Kolkata")

Clock = Callable[[], datetime]


def now_ist() -> datetime:
    return datetime.now(IST)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_utc(value: datetime) -> datetime:
    return ensure_aware(value).astimezone(timezone.utc)


class MarketCalendar:
    """
    Session and expiry helper bound to the configured exchange timezone.

    Sessions are inclusive of both the open and close minute.
    """

    def __init__(self, config: Optional[TradingSettings] = None):
        self.config = config or get_settings().trading
        self.tz = ZoneInfo(self.config.timezone)
        self.open_time: time = self.config.market_open
        self.close_time: time = self.config.market_close
        self.settlement_cutoff: time = self.config.settlement_cutoff

    def local(self, value: datetime) -> datetime:
        return ensure_aware(value).astimezone(self.tz)

    def local_date(self, value: datetime) -> date:
        return self.local(value).date()

    # =========================================================================
    # Sessions
    # =========================================================================

    def is_trading_day(self, value: datetime) -> bool:
        return self.local(value).weekday() < 5

    def is_session_open(self, value: datetime) -> bool:
        """True on weekdays between open and close, minute resolution."""
        local = self.local(value)
        if local.weekday() >= 5:
            return False
        clock = local.time().replace(second=0, microsecond=0)
        return self.open_time <= clock <= self.close_time

    def is_session_closed(self, value: datetime) -> bool:
        return not self.is_session_open(value)

    def is_settlement_window(self, value: datetime) -> bool:
        """Expiry settlement runs at or after the cutoff on the local day."""
        return self.local(value).time() >= self.settlement_cutoff

    # =========================================================================
    # Expiry
    # =========================================================================

    def days_to_expiry(self, expiry: datetime, now: datetime) -> int:
        """Whole local calendar days from today to the expiry day (0 on expiry day)."""
        return (self.local_date(expiry) - self.local_date(now)).days

    def is_expired(self, expiry: Optional[datetime], now: datetime) -> bool:
        if expiry is None:
            return False
        return ensure_aware(expiry) <= ensure_aware(now)

    def is_near_expiry(self, expiry: Optional[datetime], now: datetime, days: int = 7) -> bool:
        if expiry is None:
            return False
        remaining = self.days_to_expiry(expiry, now)
        return 0 <= remaining <= days

    def date_key(self, value: datetime) -> str:
        """Local date as YYYYMMDD."""
        return self.local_date(value).strftime("%Y%m%d")

    def format_expiry_label(self, expiry: Optional[datetime]) -> str:
        if expiry is None:
            return "-"
        return self.local(expiry).strftime("%d %b %Y").upper()
