import pytest
import pytest_asyncio

from messaging.bootstrap import build_messaging
from messaging.broker import InMemoryBroker
from messaging.config import Settings
from messaging.scheduler import ManualScheduler


@pytest.fixture
def no_jitter(monkeypatch):
    monkeypatch.setattr("messaging.retry.random.random", lambda: 0.0)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest_asyncio.fixture
async def broker():
    b = InMemoryBroker()
    yield b
    await b.close()


@pytest_asyncio.fixture
async def system(broker, scheduler, monkeypatch):
    monkeypatch.delenv("RETRY_MAX_RETRIES", raising=False)
    monkeypatch.delenv("RETRY_BASE_DELAY_MS", raising=False)
    s = build_messaging(broker, Settings(), scheduler=scheduler)
    await s.start()
    yield s
    await s.close()
