# File: tests/test_queues.py
import pytest

from escargot.crawler import BaseUriCollection, CrawlUri
from escargot.storage import InMemoryQueue, LazyQueue, QueueError, SqliteQueue
from escargot.storage.queue import get_uri_hash


async def collect(queue, job_id):
    return [crawl_uri async for crawl_uri in queue.get_all(job_id)]


async def test_can_create_a_job_id(queue):
    job_id = await queue.create_job_id(BaseUriCollection(['https://www.terminal42.ch']))

    assert job_id
    assert await queue.is_job_id_valid(job_id)
    assert (await queue.get_base_uris(job_id)).contains('https://www.terminal42.ch')


async def test_queue_handling(queue):
    base_uri = 'https://www.terminal42.ch'
    base_uri2 = 'https://github.com/'
    base_crawl_uri = CrawlUri(base_uri, 0)
    base_crawl_uri2 = CrawlUri(base_uri2, 0)

    job_id = await queue.create_job_id(BaseUriCollection([base_uri, base_uri2]))

    assert await queue.get(job_id, base_crawl_uri.uri) is not None
    assert await queue.get_next(job_id) is not None
    assert await queue.count_all(job_id) == 2
    assert await queue.count_pending(job_id) == 2

    assert str(await queue.get_next(job_id)) == str(base_crawl_uri)

    base_crawl_uri.mark_processed()
    base_crawl_uri.add_tag('test-1')
    base_crawl_uri.add_tag('test-2')
    await queue.add(job_id, base_crawl_uri)

    assert str(await queue.get_next(job_id)) == str(base_crawl_uri2)

    base_crawl_uri2.mark_processed()
    await queue.add(job_id, base_crawl_uri2)

    from_queue = await queue.get(job_id, base_crawl_uri.uri)
    assert from_queue is not None
    assert from_queue.processed
    assert from_queue.has_tag('test-1')
    assert from_queue.has_tag('test-2')

    assert await queue.get_next(job_id) is None
    assert await queue.count_all(job_id) == 2
    assert await queue.count_pending(job_id) == 0
    assert await queue.get_next(job_id) is None

    # adding the same URI several times keeps a single entry
    foobar = CrawlUri('https://www.terminal42.ch/foobar', 1, False, base_crawl_uri.uri)
    for _ in range(4):
        await queue.add(job_id, foobar)

    assert await queue.count_all(job_id) == 3
    assert await queue.count_pending(job_id) == 1
    assert str(await queue.get_next(job_id)) == str(foobar)

    foobar2 = CrawlUri('https://www.terminal42.ch/foobar2', 2, False, base_crawl_uri.uri)
    await queue.add(job_id, foobar2)

    assert (await queue.get_base_uris(job_id)).contains(base_uri)

    all_uris = await collect(queue, job_id)
    assert [str(crawl_uri) for crawl_uri in all_uris] == [
        str(base_crawl_uri),
        str(base_crawl_uri2),
        str(foobar),
        str(foobar2),
    ]

    # get_all() can be restarted
    assert len(await collect(queue, job_id)) == 4

    assert str(await queue.get_next(job_id)) == str(foobar)
    assert str(await queue.get_next(job_id, 1)) == str(foobar2)
    assert await queue.get_next(job_id, 2) is None
    assert await queue.get_next(job_id, 50) is None

    await queue.delete_job_id(job_id)
    assert not await queue.is_job_id_valid(job_id)


async def test_get_all_on_empty_queue(queue):
    job_id = await queue.create_job_id(BaseUriCollection())

    assert await collect(queue, job_id) == []


async def test_first_insertion_fixes_level_and_found_on(queue):
    job_id = await queue.create_job_id(BaseUriCollection(['https://example.com']))

    await queue.add(job_id, CrawlUri('https://example.com/page', 1, False, 'https://example.com/'))

    later = CrawlUri('https://example.com/page', 5, True, 'https://example.com/other')
    later.add_tag('seen')
    await queue.add(job_id, later)

    stored = await queue.get(job_id, 'https://example.com/page')
    assert stored.level == 1
    assert stored.found_on == 'https://example.com/'
    assert stored.processed
    assert stored.tags == ['seen']


async def test_lookup_uses_normalized_uri(queue):
    job_id = await queue.create_job_id(BaseUriCollection(['https://example.com']))

    assert await queue.get(job_id, 'https://example.com/#top') is not None
    assert await queue.get(job_id, 'https://example.com/other') is None


async def test_unknown_job_id_is_invalid(queue):
    assert not await queue.is_job_id_valid('does-not-exist')


def test_uri_hash_is_sha1_of_normalized_uri():
    assert get_uri_hash('https://example.com') == get_uri_hash('https://example.com/#fragment')
    assert len(get_uri_hash('https://example.com')) == 40


def test_sqlite_queue_rejects_invalid_table_name():
    with pytest.raises(ValueError):
        SqliteQueue(':memory:', table_name='escargot; DROP TABLE x')


async def test_sqlite_queue_persists_across_connections(tmp_path):
    path = str(tmp_path / 'queue.sqlite')

    queue = SqliteQueue(path)
    await queue.initialize()
    job_id = await queue.create_job_id(BaseUriCollection(['https://example.com']))
    crawl_uri = await queue.get_next(job_id)
    crawl_uri.mark_processed().add_tag('done')
    await queue.add(job_id, crawl_uri)
    await queue.close()

    reopened = SqliteQueue(path)
    await reopened.initialize()
    try:
        assert await reopened.is_job_id_valid(job_id)
        stored = await reopened.get(job_id, 'https://example.com/')
        assert stored.processed
        assert stored.tags == ['done']
        assert await reopened.count_pending(job_id) == 0
    finally:
        await reopened.close()


async def test_sqlite_queue_wraps_driver_errors(sqlite_queue):
    await sqlite_queue._execute('DROP TABLE escargot', commit=True)

    with pytest.raises(QueueError):
        await sqlite_queue.count_all('foobar')


class TestLazyQueue:

    async def _secondary_with_pending(self, sqlite_queue):
        job_id = await sqlite_queue.create_job_id(BaseUriCollection(['https://example.com/a']))
        for path in ('b', 'c'):
            await sqlite_queue.add(job_id, CrawlUri(f'https://example.com/{path}', 1, False, 'https://example.com/a'))
        return job_id

    async def _drain(self, queue, job_id):
        handed_out = []
        while True:
            crawl_uri = await queue.get_next(job_id)
            if crawl_uri is None:
                return handed_out
            handed_out.append(crawl_uri.uri)
            await queue.add(job_id, crawl_uri.mark_processed())

    async def test_hands_out_every_pending_entry_once(self, sqlite_queue):
        job_id = await self._secondary_with_pending(sqlite_queue)
        queue = LazyQueue(InMemoryQueue(), sqlite_queue)

        assert await self._drain(queue, job_id) == [
            'https://example.com/a',
            'https://example.com/b',
            'https://example.com/c',
        ]
        assert await queue.count_pending(job_id) == 0

    async def test_resumed_run_continues_with_remaining_entries(self, sqlite_queue):
        job_id = await self._secondary_with_pending(sqlite_queue)

        first_run = LazyQueue(InMemoryQueue(), sqlite_queue)
        crawl_uri = await first_run.get_next(job_id)
        await first_run.add(job_id, crawl_uri.mark_processed())
        crawl_uri = await first_run.get_next(job_id)
        await first_run.add(job_id, crawl_uri.mark_processed())
        await first_run.commit(job_id)

        second_run = LazyQueue(InMemoryQueue(), sqlite_queue)
        assert await self._drain(second_run, job_id) == ['https://example.com/c']

    async def test_writes_reach_the_secondary_on_commit_only(self, sqlite_queue):
        job_id = await self._secondary_with_pending(sqlite_queue)
        queue = LazyQueue(InMemoryQueue(), sqlite_queue)

        await queue.add(job_id, CrawlUri('https://example.com/d', 1, False, 'https://example.com/a'))
        assert await sqlite_queue.count_all(job_id) == 3

        await queue.commit(job_id)
        assert await sqlite_queue.count_all(job_id) == 4

    async def test_skip_counts_primary_then_secondary_entries(self, sqlite_queue):
        job_id = await self._secondary_with_pending(sqlite_queue)
        queue = LazyQueue(InMemoryQueue(), sqlite_queue)

        assert (await queue.get_next(job_id, 0)).uri == 'https://example.com/a'
        assert (await queue.get_next(job_id, 1)).uri == 'https://example.com/b'
        assert (await queue.get_next(job_id, 2)).uri == 'https://example.com/c'
        assert await queue.get_next(job_id, 3) is None

    async def test_commit_reconciles_the_secondary_with_the_primary(self, sqlite_queue):
        job_id = await self._secondary_with_pending(sqlite_queue)
        queue = LazyQueue(InMemoryQueue(), sqlite_queue)

        await self._drain(queue, job_id)
        tagged = await queue.get(job_id, 'https://example.com/b')
        tagged.add_tag('seen-twice')
        await queue.add(job_id, tagged)
        found = CrawlUri('https://example.com/d', 1, False, 'https://example.com/c')
        found.add_tag('rel-nofollow')
        await queue.add(job_id, found)

        await queue.commit(job_id)

        primary_job_id = queue._job_id_mapper[job_id]
        assert await sqlite_queue.count_all(job_id) == await queue.primary.count_all(primary_job_id)
        async for crawl_uri in queue.primary.get_all(primary_job_id):
            stored = await sqlite_queue.get(job_id, crawl_uri.uri)
            assert stored is not None
            assert stored.processed == crawl_uri.processed
            assert stored.tags == crawl_uri.tags
        assert (await sqlite_queue.get(job_id, 'https://example.com/d')).tags == ['rel-nofollow']

    async def test_processed_base_uris_are_mirrored(self, sqlite_queue):
        job_id = await self._secondary_with_pending(sqlite_queue)
        base = await sqlite_queue.get(job_id, 'https://example.com/a')
        await sqlite_queue.add(job_id, base.mark_processed())

        queue = LazyQueue(InMemoryQueue(), sqlite_queue)
        assert (await queue.get_next(job_id)).uri == 'https://example.com/b'

    async def test_validity_and_deletion_go_through_the_secondary(self, sqlite_queue):
        job_id = await self._secondary_with_pending(sqlite_queue)
        queue = LazyQueue(InMemoryQueue(), sqlite_queue)

        assert await queue.is_job_id_valid(job_id)
        await queue.get_next(job_id)

        await queue.delete_job_id(job_id)
        assert not await sqlite_queue.is_job_id_valid(job_id)
