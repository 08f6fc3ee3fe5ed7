import asyncio

import pytest

from jobqueue.providers.memory import MemoryQueueProvider
from jobqueue.settings import Settings


async def _wait_until(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Polls predicate (sync or async) until it is truthy."""
    async with asyncio.timeout(timeout):
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            await asyncio.sleep(interval)


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def make_settings():
    """Settings isolated from .env, with timings short enough for tests."""
    def _make(**overrides) -> Settings:
        values = {
            "QUEUE_ENABLED": True,
            "QUEUE_PROVIDER": "memory",
            "QUEUE_CONCURRENCY": 2,
            "QUEUE_POLL_INTERVAL": 50,
            "QUEUE_SHUTDOWN_TIMEOUT": 1000,
            "QUEUE_BACKOFF_BASE_MS": 10,
            "QUEUE_BACKOFF_MAX_MS": 50,
            "SCHEDULER_POLL_INTERVAL": 50,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)
    return _make


@pytest.fixture
async def provider():
    provider = MemoryQueueProvider(backoff_base_ms=10, backoff_max_ms=50)
    yield provider
    await provider.close()
