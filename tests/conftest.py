# File: tests/conftest.py
from collections.abc import AsyncIterator

import fakeredis
import pytest
import pytest_asyncio

from escargot.crawler import Decision, Subscriber
from escargot.storage import InMemoryQueue, LazyQueue, QueueInterface, RedisQueue, SqliteQueue
from escargot.utils import MockClock


@pytest_asyncio.fixture
async def sqlite_queue() -> AsyncIterator[SqliteQueue]:
    """SQLite queue on an in-memory database with a fixed job ID."""
    queue = SqliteQueue(':memory:', job_id_generator=lambda: 'foobar')
    await queue.initialize()
    yield queue
    await queue.close()


@pytest_asyncio.fixture
async def redis_queue() -> AsyncIterator[RedisQueue]:
    client = fakeredis.FakeAsyncRedis()
    yield RedisQueue(client, job_id_generator=lambda: 'foobar')
    await client.flushall()


@pytest.fixture(params=['memory', 'sqlite', 'redis', 'lazy'])
def queue(request, sqlite_queue, redis_queue) -> QueueInterface:
    """Every queue backend, all of them must behave the same."""
    if request.param == 'memory':
        return InMemoryQueue()
    if request.param == 'sqlite':
        return sqlite_queue
    if request.param == 'redis':
        return redis_queue
    return LazyQueue(InMemoryQueue(), sqlite_queue)


@pytest.fixture()
def mock_clock() -> MockClock:
    return MockClock()


class CollectingSubscriber(Subscriber):
    """Requests and downloads everything, remembers what it got."""

    def __init__(self, should_request=Decision.POSITIVE, needs_content=Decision.POSITIVE):
        self.should_request_decision = should_request
        self.needs_content_decision = needs_content
        self.requested = []
        self.first_chunks = []
        self.last_chunks = []

    async def should_request(self, crawl_uri):
        self.requested.append(crawl_uri.uri)
        return self.should_request_decision

    async def needs_content(self, crawl_uri, response, chunk):
        self.first_chunks.append(crawl_uri.uri)
        return self.needs_content_decision

    async def on_last_chunk(self, crawl_uri, response, chunk):
        self.last_chunks.append(crawl_uri.uri)


@pytest.fixture()
def collecting_subscriber() -> CollectingSubscriber:
    return CollectingSubscriber()
