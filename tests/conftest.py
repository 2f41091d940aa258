# tests/conftest.py
import pytest

from marketsync.core.config import Settings
from marketsync.integrations.stores.memory import MemoryStoreHub
from marketsync.services.query_cache import QueryCache
from marketsync.services.sync.coordinator import CrossTabCoordinator
from tests.mocks.mock_store import FakeClock


@pytest.fixture(scope="session")
def settings():
    """Provide test settings"""
    return Settings(
        MARKETPLACE_API_URL="http://marketplace.test",
        MARKETPLACE_AUTH_TOKEN="test_token",
        PURCHASE_TIMEOUT_SECONDS=5.0,
    )

@pytest.fixture
def hub():
    """One shared store, as seen by every tab of one browser profile"""
    return MemoryStoreHub()

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
async def make_tab(hub, clock):
    """Factory for started coordinators sharing `hub`; all of them are stopped after the test"""
    tabs = []

    async def _make(tab_id=None, cache=None):
        tab = CrossTabCoordinator(
            hub.connect(),
            cache=cache if cache is not None else QueryCache(),
            tab_id=tab_id,
            clock=clock,
        )
        await tab.start()
        tabs.append(tab)
        return tab

    yield _make

    for tab in tabs:
        await tab.stop()

@pytest.fixture
def sample_product_data():
    """Provide sample product data for tests"""
    return {
        "id": "prod-1",
        "name": "Netflix Premium 1 Month",
        "price": 65000.0,
        "quantity": 5,
        "status": "approved",
        "seller_id": "seller-1",
    }
