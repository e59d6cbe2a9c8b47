import pytest

from siorg_sync.worker import Worker, WorkerConfig
from tests.support.fakes import FakeClock, FakeRegistry, InMemoryQueueStore


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryQueueStore(clock)


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def worker_config():
    return WorkerConfig(
        batch_size=10,
        poll_interval=0.01,
        retry_base_delay=1.0,
        retry_max_delay=60.0,
        retry_jitter=0.0,
        lease_seconds=300,
        concurrency=4,
        worker_id="test-worker",
    )


@pytest.fixture
def worker(store, registry, worker_config, clock):
    return Worker(store, registry, worker_config, clock=clock)
