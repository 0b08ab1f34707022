"""
Pytest configuration and shared fixtures.

Everything runs against SimBroker + SimClock: sleeps advance simulated time,
so no test waits in real time.
"""
import pytest
from decimal import Decimal

from stopguard.config.config import Config
from stopguard.domain.models import MarketContext
from stopguard.protection.book import ProtectionBook
from stopguard.protection.liquidator import EmergencyLiquidator
from stopguard.protection.placer import ProtectiveOrderPlacer
from stopguard.protection.pricing import MarketContextCache
from stopguard.sim.broker import SimBroker
from stopguard.sim.sim_clock import SimClock


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture
def sim_clock():
    return SimClock(start=1000.0)


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def instrument(config):
    return config.instrument.to_instrument()


@pytest.fixture
def broker(instrument):
    return SimBroker(instrument, last_price=Decimal("100.00"))


@pytest.fixture
def book():
    return ProtectionBook()


@pytest.fixture
def cache(config):
    return MarketContextCache(config.pricing.default_atr_ticks)


@pytest.fixture
def placer(broker, instrument, config, sim_clock, book):
    return ProtectiveOrderPlacer(broker, instrument, config.placement, sim_clock, book=book)


@pytest.fixture
def liquidator(broker, instrument, config, sim_clock):
    return EmergencyLiquidator(broker, instrument, config.liquidation, sim_clock)


@pytest.fixture
def market_context():
    return MarketContext(
        price=Decimal("100.00"),
        previous_high=Decimal("102.00"),
        previous_low=Decimal("98.00"),
        volatility_in_ticks=Decimal("8"),
    )

