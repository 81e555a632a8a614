"""
Shared fixtures: a fresh temporary database per test and a controllable clock.
"""

import os
import shutil
import tempfile
import time

import pytest

from sparkmarket.core import dao
from sparkmarket.core.config import EconomyConfig, invalidate_economy_config
from sparkmarket.core.market import MarketEngine

# San Francisco, Market St.
HOME = (37.7749, -122.4194)


class FakeClock:
    """Callable clock that only moves when told to.

    Starts at noon UTC today so stored TTLs agree with wall-clock reads and
    short test sequences never cross a UTC day boundary.
    """

    def __init__(self, start: float = None):
        if start is None:
            start = float(int(time.time()) // 86400 * 86400 + 43200)
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def test_db():
    """Create a temporary database for testing."""
    test_dir = tempfile.mkdtemp()
    db_path = os.path.join(test_dir, "test_market.db")

    original_db_path = os.environ.get('DB_PATH')
    os.environ['DB_PATH'] = db_path

    from sparkmarket.core import db
    db.init_db()
    invalidate_economy_config()

    yield db_path

    invalidate_economy_config()
    if original_db_path:
        os.environ['DB_PATH'] = original_db_path
    else:
        del os.environ['DB_PATH']

    shutil.rmtree(test_dir)


@pytest.fixture
def maintenance_on():
    original = os.environ.get('MAINTENANCE_ENABLED')
    os.environ['MAINTENANCE_ENABLED'] = 'true'
    yield
    if original is None:
        del os.environ['MAINTENANCE_ENABLED']
    else:
        os.environ['MAINTENANCE_ENABLED'] = original


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def economy():
    """Default economy without the daily top-up, so balances move only by charges."""
    return EconomyConfig(ubi_daily_amount=0)


@pytest.fixture
def market(test_db, clock, economy):
    return MarketEngine(clock=clock, config_provider=lambda: economy)


@pytest.fixture
def fund(clock):
    """Open an account (if needed) and top it up by amount."""
    def _fund(user_id: str, amount: int = 0):
        if dao.get_account(user_id) is None:
            dao.create_account(user_id, 100, clock())
        if amount:
            dao.credit_energy({user_id: amount})
        return dao.get_account(user_id)
    return _fund
