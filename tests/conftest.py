"""
Pytest configuration and shared fixtures.
"""
import pytest
from httpx import AsyncClient, ASGITransport

from src.api.main import app
from src.core.services import TradeFeedService
from src.core.use_cases.broadcaster import Broadcaster, SubscriberRegistry
from src.core.use_cases.trade_history import TradeHistory


@pytest.fixture
def history():
    return TradeHistory(capacity=30)


@pytest.fixture
def feed(history):
    return TradeFeedService(history, Broadcaster(SubscriberRegistry(min_interval=0)))


@pytest.fixture
async def client(feed):
    """Async HTTP client for testing FastAPI endpoints."""
    app.state.feed = feed
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.feed = None
