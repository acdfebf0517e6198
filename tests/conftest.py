"""
Shared fixtures for graphlink tests.
"""

import pytest

from graphlink import (
    ConnectionPool,
    Driver,
    DriverConfig,
    RetryPolicy,
    TransactionRunner,
)
from graphlink.testing import InMemoryCluster


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    """Monotonic clock advanced only by its own sleep."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.now += delay


@pytest.fixture
def cluster():
    return InMemoryCluster(
        writer="core-1:7687",
        readers=["replica-1:7687"],
        databases=["neo4j", "foo"],
    )


@pytest.fixture
def router(cluster):
    return cluster.router()


@pytest.fixture
async def pool(cluster):
    pool = ConnectionPool(cluster.open, max_size=5, acquisition_timeout=1.0)
    yield pool
    await pool.close()


@pytest.fixture
def sleeps():
    return RecordingSleep()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def runner(router, pool, sleeps):
    return TransactionRunner(
        router,
        pool,
        RetryPolicy(max_retry_time=5.0, initial_delay=0.01, jitter=0.0),
        sleep=sleeps,
    )


@pytest.fixture
def driver_config():
    return DriverConfig(
        database="foo",
        max_connection_pool_size=5,
        connection_acquisition_timeout=1.0,
        max_transaction_retry_time=2.0,
        retry_initial_delay=0.0,
        retry_delay_jitter=0.0,
    )


@pytest.fixture
async def driver(cluster, driver_config):
    driver = Driver(cluster.open, cluster.router(), driver_config)
    yield driver
    await driver.close()
