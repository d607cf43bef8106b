"""
Redis queue backend.

Per job it keeps:
    <prefix>:<job_id>:base_uris   JSON list of the base URIs (marks the job as valid)
    <prefix>:<job_id>:entries     hash uri_hash -> JSON record
    <prefix>:<job_id>:order       sorted set uri_hash -> insertion sequence
    <prefix>:<job_id>:pending     sorted set of the unprocessed uri_hashes
    <prefix>:<job_id>:sequence    insertion counter
"""

import json
import logging
import uuid
from contextlib import contextmanager
from typing import AsyncIterator, Callable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..crawler.uri import BaseUriCollection, CrawlUri, create_http_uri
from .queue import QueueError, QueueInterface, get_uri_hash


class RedisQueue(QueueInterface):
    """Queue persisted in Redis, shareable between crawler processes."""

    def __init__(self, redis_client: redis.Redis, key_prefix: str = 'escargot',
                 job_id_generator: Optional[Callable[[], str]] = None,
                 batch_size: int = 500):
        self.redis_client = redis_client
        self.key_prefix = key_prefix
        self.job_id_generator = job_id_generator or (lambda: str(uuid.uuid4()))
        self.batch_size = batch_size
        self.logger = logging.getLogger(__name__)
        self._owns_client = False

    @classmethod
    def from_url(cls, url: str, **kwargs) -> 'RedisQueue':
        queue = cls(redis.from_url(url), **kwargs)
        queue._owns_client = True
        return queue

    def _key(self, job_id: str, name: str) -> str:
        return f"{self.key_prefix}:{job_id}:{name}"

    @contextmanager
    def _wrap_errors(self, operation: str):
        try:
            yield
        except RedisError as e:
            self.logger.error(f"Redis error during {operation}: {e}")
            raise QueueError(f"Redis error during {operation}: {e}") from e

    async def create_job_id(self, base_uris: BaseUriCollection) -> str:
        job_id = self.job_id_generator()

        with self._wrap_errors('create_job_id'):
            await self.redis_client.set(self._key(job_id, 'base_uris'), json.dumps(base_uris.all()))

        for base_uri in base_uris:
            await self.add(job_id, CrawlUri(base_uri, 0))

        return job_id

    async def is_job_id_valid(self, job_id: str) -> bool:
        with self._wrap_errors('is_job_id_valid'):
            return bool(await self.redis_client.exists(self._key(job_id, 'base_uris')))

    async def delete_job_id(self, job_id: str) -> None:
        with self._wrap_errors('delete_job_id'):
            await self.redis_client.delete(
                *(self._key(job_id, name) for name in ('base_uris', 'entries', 'order', 'pending', 'sequence'))
            )

    async def get_base_uris(self, job_id: str) -> BaseUriCollection:
        with self._wrap_errors('get_base_uris'):
            data = await self.redis_client.get(self._key(job_id, 'base_uris'))

        if data is None:
            return BaseUriCollection()
        return BaseUriCollection(create_http_uri(uri) for uri in json.loads(data))

    async def _get_record(self, job_id: str, uri_hash) -> Optional[dict]:
        with self._wrap_errors('get'):
            data = await self.redis_client.hget(self._key(job_id, 'entries'), uri_hash)
        if data is None:
            return None
        return json.loads(data)

    async def get(self, job_id: str, uri: str) -> Optional[CrawlUri]:
        record = await self._get_record(job_id, get_uri_hash(uri))
        if record is None:
            return None
        return self._create_crawl_uri_from_record(record)

    async def add(self, job_id: str, crawl_uri: CrawlUri) -> None:
        uri_hash = get_uri_hash(crawl_uri.uri)
        record = await self._get_record(job_id, uri_hash)

        with self._wrap_errors('add'):
            if record is None:
                sequence = await self.redis_client.incr(self._key(job_id, 'sequence'))
                record = {
                    'uri': crawl_uri.uri,
                    'level': crawl_uri.level,
                    'found_on': crawl_uri.found_on,
                    'sequence': sequence,
                }

            record['processed'] = crawl_uri.processed
            record['tags'] = crawl_uri.tags

            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.hset(self._key(job_id, 'entries'), uri_hash, json.dumps(record))
                pipe.zadd(self._key(job_id, 'order'), {uri_hash: record['sequence']})
                if crawl_uri.processed:
                    pipe.zrem(self._key(job_id, 'pending'), uri_hash)
                else:
                    pipe.zadd(self._key(job_id, 'pending'), {uri_hash: record['sequence']})
                await pipe.execute()

    async def get_next(self, job_id: str, skip: int = 0) -> Optional[CrawlUri]:
        skip = max(0, skip)
        with self._wrap_errors('get_next'):
            hashes = await self.redis_client.zrange(self._key(job_id, 'pending'), skip, skip)

        if not hashes:
            return None

        record = await self._get_record(job_id, hashes[0])
        if record is None:
            return None
        return self._create_crawl_uri_from_record(record)

    async def count_all(self, job_id: str) -> int:
        with self._wrap_errors('count_all'):
            return int(await self.redis_client.hlen(self._key(job_id, 'entries')))

    async def count_pending(self, job_id: str) -> int:
        with self._wrap_errors('count_pending'):
            return int(await self.redis_client.zcard(self._key(job_id, 'pending')))

    async def get_all(self, job_id: str) -> AsyncIterator[CrawlUri]:
        start = 0
        while True:
            with self._wrap_errors('get_all'):
                hashes = await self.redis_client.zrange(
                    self._key(job_id, 'order'), start, start + self.batch_size - 1
                )
                if not hashes:
                    return
                records = await self.redis_client.hmget(self._key(job_id, 'entries'), hashes)

            for data in records:
                if data is not None:
                    yield self._create_crawl_uri_from_record(json.loads(data))

            start += len(hashes)

    async def close(self):
        if self._owns_client:
            await self.redis_client.aclose()
            self.logger.info("Redis queue connection closed")

    @staticmethod
    def _create_crawl_uri_from_record(record: dict) -> CrawlUri:
        found_on = create_http_uri(record['found_on']) if record.get('found_on') else None
        crawl_uri = CrawlUri(create_http_uri(record['uri']), int(record['level']),
                             bool(record.get('processed')), found_on)

        for tag in record.get('tags') or []:
            crawl_uri.add_tag(tag)

        return crawl_uri
