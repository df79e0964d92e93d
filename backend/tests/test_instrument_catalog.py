"""
Tests for the in-memory instrument catalog.
"""

import asyncio
import pytest
import pytest_asyncio
from decimal import Decimal
from datetime import datetime, timezone

from papertrade.core.errors import ErrorCode, TradingError
from papertrade.db.models import Instrument
from papertrade.db.unit_of_work import create_uow_factory
from papertrade.services.instrument_catalog import InstrumentCatalog

from conftest import EXPIRY, NIFTY_CE, NIFTY_FUT, NIFTY_INDEX, NIFTY_PE, RELIANCE, TATASTEEL


@pytest.fixture
def uow_factory(db):
    return create_uow_factory(db.session_factory)


@pytest_asyncio.fixture
async def catalog(uow_factory, clock):
    """Create an initialized catalog."""
    catalog = InstrumentCatalog(uow_factory, clock=clock)
    await catalog.initialize()
    yield catalog
    await catalog.shutdown()


async def add_instruments(uow_factory, *instruments):
    async with uow_factory() as uow:
        await uow.instruments.add_all(list(instruments))
        await uow.commit()


class TestLifecycle:
    """Tests for init/ready/shutdown."""

    @pytest.mark.asyncio
    async def test_not_ready_before_initialize(self, uow_factory, clock):
        """Test lookups fail fast before the load."""
        catalog = InstrumentCatalog(uow_factory, clock=clock)
        assert not catalog.is_ready()
        with pytest.raises(TradingError) as exc:
            catalog.get(RELIANCE)
        assert exc.value.code == ErrorCode.CATALOG_NOT_READY

    @pytest.mark.asyncio
    async def test_concurrent_initialize_shares_one_load(self, uow_factory, clock):
        """Test cold-start callers await the same load."""
        catalog = InstrumentCatalog(uow_factory, clock=clock)
        await asyncio.gather(catalog.initialize(), catalog.ensure_initialized(), catalog.initialize())
        assert catalog.is_ready()
        assert catalog.get_stats().total_instruments == 7

    @pytest.mark.asyncio
    async def test_shutdown_clears_index(self, catalog):
        """Test shutdown drops readiness."""
        await catalog.shutdown()
        assert not catalog.is_ready()
        assert catalog.get_stats().total_instruments == 0

    @pytest.mark.asyncio
    async def test_failed_load_is_cached(self, clock):
        """Test a load failure is re-raised until refresh."""
        calls = []

        def broken_factory():
            calls.append(1)
            raise RuntimeError("store down")

        catalog = InstrumentCatalog(broken_factory, clock=clock)
        with pytest.raises(TradingError) as exc:
            await catalog.initialize()
        assert exc.value.code == ErrorCode.CATALOG_INIT_FAILED

        with pytest.raises(TradingError) as exc:
            await catalog.ensure_initialized()
        assert exc.value.code == ErrorCode.CATALOG_INIT_FAILED
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_refresh_picks_up_new_rows(self, catalog, uow_factory):
        """Test refresh reloads from the store."""
        await add_instruments(
            uow_factory,
            Instrument(
                instrument_token="NSE_EQ|INE467B01029", trading_symbol="TCS", name="TCS",
                exchange="NSE", segment="NSE_EQ", instrument_type="EQUITY", lot_size=1,
            ),
        )
        assert catalog.get("NSE_EQ|INE467B01029") is None

        await catalog.refresh()
        assert catalog.get("NSE_EQ|INE467B01029").trading_symbol == "TCS"


class TestLookups:
    """Tests for token and symbol lookups."""

    @pytest.mark.asyncio
    async def test_get_by_token(self, catalog):
        """Test exact token lookup."""
        assert catalog.get(NIFTY_FUT).trading_symbol == "NIFTY25JANFUT"
        assert catalog.get("NSE_FO|0") is None

    @pytest.mark.asyncio
    async def test_inactive_rows_are_loaded(self, catalog):
        """Test soft-deactivated instruments stay resolvable."""
        assert catalog.get(TATASTEEL).is_active is False

    @pytest.mark.asyncio
    async def test_get_by_symbol_case_insensitive(self, catalog):
        """Test symbol lookup ignores case."""
        assert catalog.get_by_symbol("reliance").instrument_token == RELIANCE

    @pytest.mark.asyncio
    async def test_expired_contracts_outside_window(self, uow_factory, clock):
        """Test contracts expired more than a day ago are not loaded."""
        await add_instruments(
            uow_factory,
            Instrument(
                instrument_token="NSE_FO|30001", trading_symbol="NIFTY24DECFUT", name="NIFTY",
                exchange="NSE", segment="NSE_FO", instrument_type="FUTURE", lot_size=50,
                expiry=datetime(2024, 12, 26, 10, 0, tzinfo=timezone.utc),
            ),
        )
        catalog = InstrumentCatalog(uow_factory, clock=clock)
        await catalog.initialize()
        assert catalog.get("NSE_FO|30001") is None
        await catalog.shutdown()


class TestSearch:
    """Tests for symbol search ordering."""

    @pytest.mark.asyncio
    async def test_exact_then_prefix(self, catalog):
        """Test exact symbol first, then prefix matches."""
        results = await catalog.search("NIFTY25JANFUT")
        assert results[0].instrument_token == NIFTY_FUT

    @pytest.mark.asyncio
    async def test_prefix_matches(self, catalog):
        """Test prefix scan covers derivatives and the index."""
        tokens = [inst.instrument_token for inst in await catalog.search("NIFTY")]
        assert NIFTY_CE in tokens
        assert NIFTY_PE in tokens
        assert NIFTY_FUT in tokens

    @pytest.mark.asyncio
    async def test_limit(self, catalog):
        """Test result count is capped."""
        assert len(await catalog.search("NIFTY", limit=2)) == 2

    @pytest.mark.asyncio
    async def test_empty_query(self, catalog):
        """Test empty query returns nothing."""
        assert await catalog.search("") == []


class TestDerivatives:
    """Tests for derivative grouping."""

    @pytest.mark.asyncio
    async def test_futures_by_alias(self, catalog):
        """Test index aliases resolve to the same group."""
        assert [f.instrument_token for f in catalog.get_futures("NIFTY 50")] == [NIFTY_FUT]

    @pytest.mark.asyncio
    async def test_options_sorted_by_strike(self, catalog, uow_factory):
        """Test options are ordered by (expiry, strike, symbol)."""
        await add_instruments(
            uow_factory,
            Instrument(
                instrument_token="NSE_FO|35010", trading_symbol="NIFTY25JAN21500CE", name="NIFTY",
                exchange="NSE", segment="NSE_FO", instrument_type="OPTION", option_type="CE",
                lot_size=50, strike=Decimal("21500"), expiry=EXPIRY,
            ),
        )
        await catalog.refresh()
        options = catalog.get_options("NIFTY")
        assert options[0].instrument_token == "NSE_FO|35010"
        assert [o.instrument_token for o in options[1:]] == [NIFTY_CE, NIFTY_PE]

    @pytest.mark.asyncio
    async def test_options_for_expiry(self, catalog):
        """Test filtering to one expiry instant."""
        assert len(catalog.get_options("NIFTY", expiry=EXPIRY)) == 2
        assert catalog.get_options("NIFTY", expiry=datetime(2025, 2, 27, 10, 0, tzinfo=timezone.utc)) == []

    @pytest.mark.asyncio
    async def test_expiries(self, catalog):
        """Test distinct expiries across the group."""
        assert catalog.get_expiries("NIFTY") == [EXPIRY]

    @pytest.mark.asyncio
    async def test_underlying_instrument(self, catalog):
        """Test the index a NIFTY derivative settles against."""
        assert catalog.get_underlying_instrument("NIFTY").instrument_token == NIFTY_INDEX

    @pytest.mark.asyncio
    async def test_stats(self, catalog):
        """Test catalog stats."""
        stats = catalog.get_stats()
        assert stats.is_ready
        assert stats.underlying_assets == 1
        assert stats.last_sync is not None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
