"""
Test configuration and shared fixtures for PaperTrade engine tests.

Every engine test runs against a fresh in-memory SQLite store seeded with a
small NSE instrument master, a live quote book and a frozen IST clock.
"""

import pytest
import pytest_asyncio
from decimal import Decimal
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from papertrade.core.config import DatabaseSettings, TradingSettings
from papertrade.db.models import Instrument
from papertrade.db.session import DatabaseService
from papertrade.engine import TradingEngine
from papertrade.services.price_oracle import QuoteBook
from papertrade.services.wallet_ledger import WalletLedger


IST = ZoneInfo("Asia/Kolkata")

# Wednesday, inside market hours
MARKET_NOW = datetime(2025, 1, 15, 11, 0, tzinfo=IST)
# Thursday monthly expiry, 15:30 IST
EXPIRY = datetime(2025, 1, 30, 10, 0, tzinfo=timezone.utc)

RELIANCE = "NSE_EQ|INE002A01018"
TATASTEEL = "NSE_EQ|INE081A01020"
PENNY = "NSE_EQ|INE999Z01011"
NIFTY_FUT = "NSE_FO|35001"
NIFTY_CE = "NSE_FO|35002"
NIFTY_PE = "NSE_FO|35003"
NIFTY_INDEX = "NSE_INDEX|Nifty 50"


class FrozenClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class Market:
    """Quote book helper that stamps ticks with the frozen clock."""

    def __init__(self, quote_book: QuoteBook, clock: FrozenClock):
        self.quote_book = quote_book
        self.clock = clock

    def tick(self, token: str, price, volume: int = 5000, oi: int = 10000, age_seconds: float = 0):
        self.quote_book.update(
            token,
            Decimal(str(price)),
            volume=volume,
            open_interest=oi,
            timestamp=self.clock() - timedelta(seconds=age_seconds),
        )

    def seed(self) -> None:
        self.tick(RELIANCE, "2500.00")
        self.tick(TATASTEEL, "140.00")
        self.tick(PENNY, "12.00")
        self.tick(NIFTY_FUT, "22000.00")
        self.tick(NIFTY_CE, "100.00")
        self.tick(NIFTY_PE, "80.00")
        self.tick(NIFTY_INDEX, "22000.00")


def build_instruments():
    """Instrument master rows used by every engine test."""
    return [
        Instrument(
            instrument_token=RELIANCE, trading_symbol="RELIANCE", name="RELIANCE INDUSTRIES",
            exchange="NSE", segment="NSE_EQ", instrument_type="EQUITY", lot_size=1,
            last_price=Decimal("2490.00"),
        ),
        Instrument(
            instrument_token=TATASTEEL, trading_symbol="TATASTEEL", name="TATA STEEL",
            exchange="NSE", segment="NSE_EQ", instrument_type="EQUITY", lot_size=1,
            last_price=Decimal("139.50"), is_active=False,
        ),
        Instrument(
            instrument_token=PENNY, trading_symbol="PENNYCO", name="PENNY COMPANY",
            exchange="NSE", segment="NSE_EQ", instrument_type="EQUITY", lot_size=1,
        ),
        Instrument(
            instrument_token=NIFTY_FUT, trading_symbol="NIFTY25JANFUT", name="NIFTY",
            exchange="NSE", segment="NSE_FO", instrument_type="FUTURE", lot_size=50,
            expiry=EXPIRY, last_price=Decimal("21950.00"),
        ),
        Instrument(
            instrument_token=NIFTY_CE, trading_symbol="NIFTY25JAN22000CE", name="NIFTY",
            exchange="NSE", segment="NSE_FO", instrument_type="OPTION", option_type="CE",
            lot_size=50, strike=Decimal("22000"), expiry=EXPIRY,
        ),
        Instrument(
            instrument_token=NIFTY_PE, trading_symbol="NIFTY25JAN22000PE", name="NIFTY",
            exchange="NSE", segment="NSE_FO", instrument_type="OPTION", option_type="PE",
            lot_size=50, strike=Decimal("22000"), expiry=EXPIRY,
        ),
        Instrument(
            instrument_token=NIFTY_INDEX, trading_symbol="NIFTY 50", name="NIFTY",
            exchange="NSE", segment="NSE_INDEX", instrument_type="INDEX", lot_size=1,
            last_price=Decimal("21980.00"),
        ),
    ]


async def open_wallet(engine: TradingEngine, user_id: str, balance) -> None:
    """Create a wallet with a specific opening balance."""
    async with engine.uow_factory() as uow:
        await engine.wallet.get_wallet(uow, user_id, initial_balance=Decimal(str(balance)))
        await uow.commit()


async def wallet_state(engine: TradingEngine, user_id: str):
    """(balance, blocked) of a user's wallet."""
    async with engine.uow_factory() as uow:
        wallet = await engine.wallet.get_wallet(uow, user_id)
        await uow.commit()
    return Decimal(wallet.balance), Decimal(wallet.blocked_balance)


# =============================================================================
# Clock & Market Data
# =============================================================================

@pytest.fixture
def clock():
    """Frozen clock on a trading day inside market hours."""
    return FrozenClock(MARKET_NOW)


@pytest.fixture
def quote_book(clock):
    """Live quote book reading the frozen clock."""
    return QuoteBook(clock=clock)


@pytest.fixture
def market(quote_book, clock):
    """Quote book seeded with fresh ticks for every instrument."""
    helper = Market(quote_book, clock)
    helper.seed()
    return helper


# =============================================================================
# Database
# =============================================================================

@pytest_asyncio.fixture
async def db():
    """In-memory SQLite store with the instrument master loaded."""
    database = DatabaseService(DatabaseSettings(url="sqlite+aiosqlite:///:memory:"))
    await database.init_db()
    async with database.session() as session:
        session.add_all(build_instruments())
    yield database
    await database.close()


# =============================================================================
# Engine
# =============================================================================

@pytest_asyncio.fixture
async def engine_factory(db, quote_book, clock, market):
    """Build started engines with TradingSettings overrides."""
    engines = []

    async def factory(**overrides) -> TradingEngine:
        engine = TradingEngine(
            db,
            trading=TradingSettings(**overrides),
            live_source=quote_book,
            clock=clock,
        )
        await engine.start()
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        await engine.stop()


@pytest_asyncio.fixture
async def engine(engine_factory):
    """Started engine with default policy settings."""
    return await engine_factory()


@pytest.fixture
def ledger():
    """Standalone wallet ledger with a 1,000,000 default seed."""
    return WalletLedger(TradingSettings(default_wallet_balance=Decimal("1000000.00")))


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests that drive the full engine against the store"
    )
    config.addinivalue_line(
        "markers", "unit: marks pure unit tests"
    )
